"""
agent/streamer.py — Response Streamer

One ResponseStreamer per accepted inbound message. It consumes a single
streaming run from the AI backend and turns it into edits of one placeholder
message plus progress-indicator events on the channel.

Lifecycle:
  run()      subscribe to `ai_indicator.stop`, start consumption as an
             asyncio.Task, return immediately
  (natural)  when the task ends — completed, failed or cancelled — the stop
             subscription is released and on_done(self) fires once, so the
             owning session can drop its reference
  dispose()  idempotent; cancel consumption if still running and wait for it

Stream events handled:
  thread.run.created          remember the run id (needed to cancel / resume)
  thread.run.step.created     tool-call step → AI_STATE_EXTERNAL_SOURCES
  thread.message.delta        accumulate text; first chunk → AI_STATE_GENERATING;
                              every `update_every` chunks → partial edit
  thread.message.completed    final edit + ai_indicator.clear
  thread.run.requires_action  run tools, submit outputs, consume the resumed stream
  thread.run.failed / error   TransientBackendError → error text + AI_STATE_ERROR
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

from chatpilot.brain.backend import AssistantBackend
from chatpilot.brain.tools import ToolRegistry
from chatpilot.exceptions import ChatPilotError, SessionStateError, TransientBackendError, TransportError
from chatpilot.interfaces.transport import (
    AI_INDICATOR_STOP,
    AIState,
    ChatChannel,
    ChatMessageRef,
    ChatTransport,
    InboundEvent,
    IndicatorEvent,
)
from chatpilot.observability.logger import get_logger

log = get_logger(__name__)

ERROR_TEXT = "Error generating the message"


class ResponseStreamer:
    """Streams one assistant run into one placeholder message."""

    def __init__(
        self,
        backend: AssistantBackend,
        thread_id: str,
        run: Any,
        transport: ChatTransport,
        channel: ChatChannel,
        message: ChatMessageRef,
        *,
        tools: Optional[ToolRegistry] = None,
        update_every: int = 15,
        on_done: Optional[Callable[["ResponseStreamer"], None]] = None,
    ):
        self._backend = backend
        self._thread_id = thread_id
        self._run = run
        self._transport = transport
        self._channel = channel
        self._message = message
        self._tools = tools or ToolRegistry()
        self._update_every = max(1, update_every)
        self._on_done = on_done

        self._run_id: Optional[str] = None
        self._text = ""
        self._chunks = 0
        self._task: Optional[asyncio.Task] = None
        self._disposed = False

        self._log = log.bind(message_id=message.message_id, thread_id=thread_id)

    # ── Properties ────────────────────────────────────────────────────────────

    @property
    def message(self) -> ChatMessageRef:
        return self._message

    @property
    def text(self) -> str:
        return self._text

    @property
    def run_id(self) -> Optional[str]:
        return self._run_id

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    @property
    def is_done(self) -> bool:
        return self._task is not None and self._task.done()

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def run(self) -> asyncio.Task:
        """Start consuming the stream in the background and return the task."""
        if self._disposed:
            raise SessionStateError("ResponseStreamer.run() called after dispose()")
        if self._task is not None:
            raise SessionStateError("ResponseStreamer.run() called twice")

        self._transport.on(AI_INDICATOR_STOP, self._handle_stop)
        self._task = asyncio.create_task(
            self._consume(), name=f"streamer:{self._message.message_id}"
        )
        self._task.add_done_callback(self._on_task_done)
        return self._task

    async def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._transport.off(AI_INDICATOR_STOP, self._handle_stop)

        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            # asyncio.wait neither re-raises the task's CancelledError nor
            # hides a cancellation of the caller.
            await asyncio.wait({task})
        self._log.debug("streamer.disposed", chars=len(self._text))

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._transport.off(AI_INDICATOR_STOP, self._handle_stop)
        if task.cancelled():
            self._log.info("streamer.cancelled", chars=len(self._text))
        elif task.exception() is not None:
            exc = task.exception()
            self._log.error("streamer.crashed", error=str(exc), error_type=type(exc).__name__)
        if self._on_done is not None:
            self._on_done(self)

    # ── Stream consumption ────────────────────────────────────────────────────

    async def _consume(self) -> None:
        self._log.info("streamer.started")
        try:
            await self._drain(self._run)
        except ChatPilotError as e:
            await self._fail(e)
            return
        self._log.info("streamer.completed", chars=len(self._text), chunks=self._chunks)

    async def _drain(self, run: Any) -> None:
        async for event in self._backend.iter_events(run):
            kind = event.event
            data = event.data

            if kind == "thread.run.created":
                self._run_id = data.id

            elif kind == "thread.run.step.created":
                if getattr(data.step_details, "type", None) == "tool_calls":
                    await self._indicate(AIState.EXTERNAL_SOURCES)

            elif kind == "thread.message.delta":
                await self._on_delta(data)

            elif kind == "thread.message.completed":
                await self._channel.update_message(self._message, self._text)
                await self._channel.send_event(IndicatorEvent.clear(self._message))

            elif kind == "thread.run.requires_action":
                await self._on_requires_action(data)

            elif kind == "thread.run.failed":
                last_error = getattr(data, "last_error", None)
                raise TransientBackendError(
                    last_error.message if last_error is not None else "Run failed"
                )

            elif kind == "error":
                raise TransientBackendError(getattr(data, "message", None) or "Stream error")

    async def _on_delta(self, data: Any) -> None:
        for part in data.delta.content or []:
            if part.type != "text" or part.text is None or not part.text.value:
                continue
            self._text += part.text.value
            self._chunks += 1
            if self._chunks == 1:
                await self._indicate(AIState.GENERATING)
            if self._chunks % self._update_every == 0:
                await self._channel.update_message(self._message, self._text)

    async def _on_requires_action(self, run: Any) -> None:
        self._run_id = run.id
        calls = run.required_action.submit_tool_outputs.tool_calls
        self._log.info("streamer.tool_calls", count=len(calls), tools=[c.function.name for c in calls])
        outputs = [await self._tools.dispatch(call) for call in calls]
        resumed = self._backend.submit_tool_outputs(self._thread_id, run.id, outputs)
        await self._drain(resumed)

    async def _indicate(self, state: AIState) -> None:
        await self._channel.send_event(IndicatorEvent.update(self._message, state))

    async def _fail(self, error: ChatPilotError) -> None:
        self._log.error("streamer.failed", error=str(error), error_type=type(error).__name__)
        try:
            await self._channel.update_message(self._message, ERROR_TEXT)
            await self._indicate(AIState.ERROR)
        except TransportError as e:
            self._log.warning("streamer.error_report_failed", error=str(e))

    # ── Stop generating ───────────────────────────────────────────────────────

    async def _handle_stop(self, event: InboundEvent) -> None:
        if event.message_id != self._message.message_id:
            return
        self._log.info("streamer.stop_requested", run_id=self._run_id)

        await self.dispose()
        try:
            await self._backend.cancel_run(self._thread_id, self._run_id)
        except TransientBackendError as e:
            # The run may already have finished server-side
            self._log.warning("streamer.cancel_failed", error=str(e))
        if self._text:
            await self._channel.update_message(self._message, self._text)
        await self._channel.send_event(IndicatorEvent.clear(self._message))

    def __repr__(self) -> str:
        state = "disposed" if self._disposed else ("done" if self.is_done else "live")
        return f"<ResponseStreamer message={self._message.message_id} {state}>"
