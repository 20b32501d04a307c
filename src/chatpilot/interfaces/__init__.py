from chatpilot.interfaces.transport import (
    AI_INDICATOR_CLEAR,
    AI_INDICATOR_STOP,
    AI_INDICATOR_UPDATE,
    MESSAGE_NEW,
    AIState,
    ChatChannel,
    ChatMessageRef,
    ChatTransport,
    InboundEvent,
    IndicatorEvent,
)

__all__ = [
    "AI_INDICATOR_CLEAR",
    "AI_INDICATOR_STOP",
    "AI_INDICATOR_UPDATE",
    "MESSAGE_NEW",
    "AIState",
    "ChatChannel",
    "ChatMessageRef",
    "ChatTransport",
    "InboundEvent",
    "IndicatorEvent",
]
