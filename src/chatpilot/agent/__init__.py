from chatpilot.agent.manager import AgentManager
from chatpilot.agent.session import AgentSession, SessionState
from chatpilot.agent.streamer import ResponseStreamer

__all__ = ["AgentManager", "AgentSession", "ResponseStreamer", "SessionState"]
