from .agent import AgentState, PersonaReasoningAgent, ReplyStream

__all__ = ["AgentState", "PersonaReasoningAgent", "ReplyStream"]
