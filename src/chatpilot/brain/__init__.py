"""
brain/__init__.py — ChatPilot AI Backend
"""

from chatpilot.brain.assistant import (
    AssistantDefinition,
    AssistantProvisioner,
    ProvisionedAssistant,
    default_definition,
)
from chatpilot.brain.backend import AssistantBackend
from chatpilot.brain.tools import ToolOutput, ToolRegistry, ToolSchema

__all__ = [
    "AssistantBackend",
    "AssistantDefinition",
    "AssistantProvisioner",
    "ProvisionedAssistant",
    "ToolOutput",
    "ToolRegistry",
    "ToolSchema",
    "default_definition",
]
