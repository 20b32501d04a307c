from chatpilot.observability.logger import bind_channel, clear_channel, get_logger, setup_logging

__all__ = ["bind_channel", "clear_channel", "get_logger", "setup_logging"]
