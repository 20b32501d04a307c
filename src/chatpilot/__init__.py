"""ChatPilot — streams an AI assistant into real-time chat channels."""

__version__ = "0.1.0"
