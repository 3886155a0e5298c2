"""Agent loop package: model actions, run control and the loop itself."""

from .actions import AGENT_SYSTEM_PROMPT, AGENT_TOOLS, ModelTurn, parse_model_parts
from .control import RunControl, RunPhase
from .executor import CommandExecutor, SessionExecutor
from .loop import AgentLoop, AgentRunState, AgentStep, ChatMessage, RunOutcome, StepStatus, StepType

__all__ = [
    "AGENT_SYSTEM_PROMPT",
    "AGENT_TOOLS",
    "AgentLoop",
    "AgentRunState",
    "AgentStep",
    "ChatMessage",
    "CommandExecutor",
    "ModelTurn",
    "parse_model_parts",
    "RunControl",
    "RunOutcome",
    "RunPhase",
    "SessionExecutor",
    "StepStatus",
    "StepType",
]
