"""
brain/assistant.py — Assistant Definition + Provisioning

Builds the assistant definition (instructions, tool schema, model) and
provisions it together with a fresh, empty conversation thread. One-shot:
AgentSession calls provision() once during initialize() and treats the
returned identifiers as immutable.
"""

from __future__ import annotations

from typing import Any, NamedTuple

from pydantic import BaseModel, Field

from chatpilot.brain.backend import AssistantBackend
from chatpilot.brain.tools import ToolSchema
from chatpilot.observability.logger import get_logger

log = get_logger(__name__)


DEFAULT_INSTRUCTIONS = """
You are a helpful, professional support assistant for a company that provides
scalable APIs and SDKs for in-app chat, video and activity feeds. Answer user
questions clearly and accurately.

If users ask about any of the following, respond with the matching resource:
- Support or contacting a human: direct them to the support contact page.
- Help Center or documentation lookup: point them to the help center.
- Pricing details: guide them to the pricing page.
- Configuring the product, API keys, users, teams or billing: direct them to
  the dashboard.

If you're unsure or the topic is not covered, say: "I'm not certain about
that, but I recommend reaching out to our support team." Keep responses
friendly, accurate and focused on helping users get things done.
""".strip()


GET_CURRENT_TEMPERATURE = ToolSchema(
    name="getCurrentTemperature",
    description="Get the current temperature for a specific location",
    parameters={
        "type": "object",
        "properties": {
            "location": {
                "type": "string",
                "description": "The city and state, e.g., San Francisco, CA",
            },
            "unit": {
                "type": "string",
                "enum": ["Celsius", "Fahrenheit"],
                "description": "The temperature unit to use. Infer this from the user's location.",
            },
        },
        "required": ["location", "unit"],
    },
)


class AssistantDefinition(BaseModel):
    name: str
    instructions: str
    model: str
    tools: list[ToolSchema] = Field(default_factory=list)
    code_interpreter: bool = True

    def to_openai_tools(self) -> list[dict[str, Any]]:
        tools: list[dict[str, Any]] = []
        if self.code_interpreter:
            tools.append({"type": "code_interpreter"})
        tools.extend(t.to_openai() for t in self.tools)
        return tools


class ProvisionedAssistant(NamedTuple):
    assistant_id: str
    thread_id: str


def default_definition(settings) -> AssistantDefinition:
    """Assistant definition from the `assistant:` config section."""
    cfg = settings.assistant
    return AssistantDefinition(
        name=cfg.name,
        instructions=cfg.instructions or DEFAULT_INSTRUCTIONS,
        model=cfg.model,
        tools=[GET_CURRENT_TEMPERATURE],
        code_interpreter=cfg.code_interpreter,
    )


class AssistantProvisioner:
    def __init__(self, backend: AssistantBackend, definition: AssistantDefinition) -> None:
        self._backend = backend
        self._definition = definition

    @property
    def definition(self) -> AssistantDefinition:
        return self._definition

    async def provision(self) -> ProvisionedAssistant:
        d = self._definition
        assistant_id = await self._backend.create_assistant(
            name=d.name,
            instructions=d.instructions,
            tools=d.to_openai_tools(),
            model=d.model,
        )
        thread_id = await self._backend.create_thread()
        log.info("assistant.provisioned", assistant_id=assistant_id, thread_id=thread_id)
        return ProvisionedAssistant(assistant_id=assistant_id, thread_id=thread_id)
