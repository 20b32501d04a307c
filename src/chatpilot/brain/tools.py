"""
brain/tools.py — Function Tool Schemas + Dispatch

ToolSchema is the provider-agnostic function definition declared on the
assistant. ToolRegistry maps function names to async callables and turns a
`requires_action` tool call from a run into the output the run is waiting
for.

Every requested call must receive an output or the run stalls, so dispatch()
never raises: unknown tools, bad arguments and tool failures are reported
back to the model as a JSON error payload.
"""

from __future__ import annotations

import json
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, Field

from chatpilot.observability.logger import get_logger

log = get_logger(__name__)

ToolFunc = Callable[..., Awaitable[Any]]


class ToolSchema(BaseModel):
    """Function tool definition (name, description, JSON-schema parameters)."""
    name: str
    description: str
    parameters: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )

    def to_openai(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class ToolOutput(BaseModel):
    """One entry of the tool_outputs list submitted back to a run."""
    tool_call_id: str
    output: str


class ToolRegistry:
    """Name → async callable. Callables receive the parsed arguments as kwargs."""

    def __init__(self) -> None:
        self._funcs: dict[str, ToolFunc] = {}

    def register(self, name: str, func: ToolFunc) -> None:
        self._funcs[name] = func
        log.debug("tools.registered", tool=name)

    def __contains__(self, name: str) -> bool:
        return name in self._funcs

    def __len__(self) -> int:
        return len(self._funcs)

    async def dispatch(self, call: Any) -> ToolOutput:
        """Run one requested function call; `call` is an OpenAI RequiredActionFunctionToolCall."""
        name = call.function.name
        func = self._funcs.get(name)
        if func is None:
            log.warning("tools.unknown", tool=name, tool_call_id=call.id)
            return _error_output(call.id, f"Tool '{name}' is not available.")

        try:
            args = json.loads(call.function.arguments or "{}")
        except json.JSONDecodeError as e:
            log.warning("tools.bad_arguments", tool=name, error=str(e))
            return _error_output(call.id, f"Arguments for '{name}' are not valid JSON.")

        try:
            result = await func(**args)
        except Exception as e:  # tool bodies are user code; the run still needs an answer
            log.error("tools.failed", tool=name, error=str(e), error_type=type(e).__name__)
            return _error_output(call.id, f"Tool '{name}' failed: {e}")

        output = result if isinstance(result, str) else json.dumps(result)
        log.info("tools.dispatched", tool=name, tool_call_id=call.id)
        return ToolOutput(tool_call_id=call.id, output=output)


def _error_output(tool_call_id: str, message: str) -> ToolOutput:
    return ToolOutput(tool_call_id=tool_call_id, output=json.dumps({"error": message}))
