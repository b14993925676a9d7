"""Base coding-agent executor interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from ..core.clock import CancelToken


@dataclass
class AgentRequest:
    """One agent invocation."""
    prompt: str
    json_schema: Optional[str] = None  # Structured output schema (compact JSON)
    working_dir: Optional[Path] = None  # Subprocess cwd, usually the workflow worktree
    env: Dict[str, str] = field(default_factory=dict)  # Merged into the inherited environment
    timeout: Optional[float] = None  # Seconds; None = executor default
    skip_permissions: bool = True  # Pass --dangerously-skip-permissions
    session_id: Optional[str] = None  # Continue this agent session (--resume)
    cancel: Optional[CancelToken] = None


@dataclass
class AgentResult:
    """Final output of an agent run."""
    output: str
    exit_code: int
    duration: float  # Seconds
    session_id: Optional[str] = None  # Session the agent reported, if any


@dataclass
class AgentProgressEvent:
    """Display-only progress from a streaming run."""
    type: str  # "tool_use", "tool_result", "text", "thinking"
    tool_name: str = ""
    tool_input: Optional[Dict[str, Any]] = None
    summary: Optional[str] = None  # Short description of tool_input for display
    text: str = ""
    is_error: bool = False


ProgressCallback = Callable[[AgentProgressEvent], None]


class AgentExecutor(ABC):
    """Abstract base class for coding-agent executors."""

    @abstractmethod
    def execute(self, request: AgentRequest) -> AgentResult:
        """
        Run the agent to completion and return its output.

        Raises:
            AgentTimeoutError: The run exceeded ``request.timeout``
            PromptTooLongError: The agent rejected the prompt as too long
            AgentExecutionError: The agent exited non-zero
            AgentNotFoundError: The agent executable is missing
            WorkflowCancelledError: ``request.cancel`` fired
        """
        pass

    @abstractmethod
    def execute_streaming(
        self,
        request: AgentRequest,
        on_progress: Optional[ProgressCallback] = None,
    ) -> AgentResult:
        """Like ``execute``, reporting tool use and text as it happens."""
        pass
