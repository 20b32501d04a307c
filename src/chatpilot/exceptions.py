"""
exceptions.py — ChatPilot Unified Error Hierarchy

All ChatPilot-specific exceptions live here. Every layer of the stack
raises typed subclasses of ChatPilotError — never bare Exception.

Import from here, not from individual modules:
    from chatpilot.exceptions import ConfigurationError, TransientBackendError

Hierarchy:
    ChatPilotError
    ├── ConfigurationError
    ├── SessionStateError
    ├── TransientBackendError
    └── TransportError

Events with no text, or authored by the assistant itself, are filtered by
the session and never raised.
"""

from __future__ import annotations

from typing import Optional


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class ChatPilotError(Exception):
    """Base class for all ChatPilot exceptions."""


# ─────────────────────────────────────────────────────────────────────────────
# Lifecycle / configuration
# ─────────────────────────────────────────────────────────────────────────────

class ConfigurationError(ChatPilotError):
    """A required credential or setting is missing. Fatal to the session being initialised."""


class SessionStateError(ChatPilotError):
    """An operation was attempted in the wrong lifecycle state (e.g. initialize() twice)."""


# ─────────────────────────────────────────────────────────────────────────────
# External collaborators
# ─────────────────────────────────────────────────────────────────────────────

class TransientBackendError(ChatPilotError):
    """The AI backend failed during a thread append, run start, or stream."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class TransportError(ChatPilotError):
    """The chat transport rejected or failed an outbound call."""


__all__ = [
    "ChatPilotError",
    "ConfigurationError",
    "SessionStateError",
    "TransientBackendError",
    "TransportError",
]
