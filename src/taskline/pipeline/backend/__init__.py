"""Agent backend implementations."""

from taskline.pipeline.backend.base import AgentBackend
from taskline.pipeline.backend.claude_backend import ClaudeAgentBackend

__all__ = [
    "AgentBackend",
    "ClaudeAgentBackend",
]
