"""Coding agent execution and output parsing."""

from .base import AgentExecutor, AgentProgressEvent, AgentRequest, AgentResult
from .claude_cli_executor import ClaudeCLIExecutor
from .output_parser import OutputParser

__all__ = [
    "AgentExecutor",
    "AgentProgressEvent",
    "AgentRequest",
    "AgentResult",
    "ClaudeCLIExecutor",
    "OutputParser",
]
