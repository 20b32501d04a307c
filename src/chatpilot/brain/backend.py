"""
brain/backend.py — OpenAI Assistants Backend

Thin async adapter over the OpenAI Assistants (beta threads/runs) API:
create an assistant, create a thread, append user messages, start and
resume streaming runs, cancel runs.

Every OpenAI exception is normalised into the ChatPilot hierarchy:
  - AuthenticationError / PermissionDeniedError → ConfigurationError
  - any other OpenAIError (rate limit, connection, timeout, 5xx, stream
    errors)                                       → TransientBackendError
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, AsyncIterator, Iterator, Optional

import openai
from openai import AsyncOpenAI

from chatpilot.brain.tools import ToolOutput
from chatpilot.exceptions import ConfigurationError, TransientBackendError
from chatpilot.observability.logger import get_logger

log = get_logger(__name__)


@contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except (openai.AuthenticationError, openai.PermissionDeniedError) as e:
        raise ConfigurationError(f"OpenAI rejected the API key during {operation}: {e}") from e
    except openai.APIStatusError as e:
        raise TransientBackendError(f"{operation} failed: {e}", status_code=e.status_code) from e
    except openai.OpenAIError as e:
        raise TransientBackendError(f"{operation} failed: {e}") from e


class AssistantBackend:
    """
    AI backend contract used by AgentSession and ResponseStreamer.

    Run handles returned by stream_run() / submit_tool_outputs() are OpenAI
    AsyncAssistantStreamManager objects. They are lazy: no request is sent
    until iter_events() enters them.
    """

    def __init__(self, client: AsyncOpenAI) -> None:
        self._client = client

    @classmethod
    def from_settings(cls, settings, api_key: str) -> "AssistantBackend":
        return cls(AsyncOpenAI(api_key=api_key, base_url=settings.openai_base_url))

    @property
    def client(self) -> AsyncOpenAI:
        return self._client

    # ── Provisioning ──────────────────────────────────────────────────────────

    async def create_assistant(
        self,
        name: str,
        instructions: str,
        tools: list[dict[str, Any]],
        model: str,
    ) -> str:
        with _translate_errors("assistant creation"):
            assistant = await self._client.beta.assistants.create(
                name=name,
                instructions=instructions,
                tools=tools,
                model=model,
            )
        log.info("backend.assistant_created", assistant_id=assistant.id, model=model, tools=len(tools))
        return assistant.id

    async def create_thread(self) -> str:
        with _translate_errors("thread creation"):
            thread = await self._client.beta.threads.create()
        log.info("backend.thread_created", thread_id=thread.id)
        return thread.id

    # ── Conversation ──────────────────────────────────────────────────────────

    async def add_user_message(self, thread_id: str, text: str) -> None:
        with _translate_errors("thread message append"):
            await self._client.beta.threads.messages.create(
                thread_id,
                role="user",
                content=text,
            )
        log.debug("backend.message_appended", thread_id=thread_id, chars=len(text))

    def stream_run(self, thread_id: str, assistant_id: str):
        with _translate_errors("run start"):
            return self._client.beta.threads.runs.stream(
                thread_id=thread_id,
                assistant_id=assistant_id,
            )

    def submit_tool_outputs(self, thread_id: str, run_id: str, outputs: list[ToolOutput]):
        with _translate_errors("tool output submission"):
            return self._client.beta.threads.runs.submit_tool_outputs_stream(
                thread_id=thread_id,
                run_id=run_id,
                tool_outputs=[o.model_dump() for o in outputs],
            )

    async def iter_events(self, run) -> AsyncIterator[Any]:
        """Enter a run handle and yield its AssistantStreamEvents in order."""
        with _translate_errors("run stream"):
            async with run as stream:
                async for event in stream:
                    yield event

    async def cancel_run(self, thread_id: str, run_id: Optional[str]) -> None:
        if not run_id:
            return
        with _translate_errors("run cancel"):
            await self._client.beta.threads.runs.cancel(run_id, thread_id=thread_id)
        log.info("backend.run_cancelled", thread_id=thread_id, run_id=run_id)

    async def close(self) -> None:
        await self._client.close()

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}>"
