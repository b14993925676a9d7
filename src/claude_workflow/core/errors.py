"""Exception taxonomy for the workflow engine.

The families map onto how a failure is handled:

- validation errors are fatal and never retried
- state errors stop the current call and need operator action
- agent, parse and CI errors are recoverable through ``resume``
- PR split errors are raised after a compensating rollback
"""

from typing import List, Optional


class WorkflowRuntimeError(Exception):
    """Base class for every error raised by the workflow engine."""


# Validation


class ValidationError(WorkflowRuntimeError, ValueError):
    """Invalid operator input."""


class InvalidNameError(ValidationError):
    pass


class InvalidTypeError(ValidationError):
    pass


class InvalidDescriptionError(ValidationError):
    pass


class InvalidPhaseError(ValidationError):
    pass


class SkipNotAllowedError(ValidationError):
    """A requested skip-to phase is not reachable from the current state."""


class InvalidPlanError(ValidationError):
    pass


# State


class StateError(WorkflowRuntimeError):
    """Problem with the persisted workflow state."""


class WorkflowNotFoundError(StateError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"workflow not found: {name}")


class WorkflowExistsError(StateError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"workflow already exists: {name}")


class StateCorruptedError(StateError):
    def __init__(self, name: str, reason: str):
        self.name = name
        super().__init__(f"workflow state file is corrupted: {name}: {reason}")


class WorkflowLockedError(StateError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"workflow is locked by another process: {name}")


class WorkflowCompletedError(StateError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"workflow already completed: {name}")


class NonRecoverableError(StateError):
    def __init__(self, name: str, message: str):
        self.name = name
        super().__init__(f"workflow {name} failed with a non-recoverable error: {message}")


# Agent execution


class AgentError(WorkflowRuntimeError):
    """The coding agent subprocess did not produce a usable result."""


class AgentTimeoutError(AgentError):
    pass


class PromptTooLongError(AgentError):
    pass


class AgentExecutionError(AgentError):
    def __init__(self, message: str, exit_code: int = -1, stderr: str = ""):
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(message)


class AgentNotFoundError(AgentError):
    pass


# Parsing


class ParseError(WorkflowRuntimeError):
    """Agent output was not valid or schema-conformant JSON."""


# CI


class CIError(WorkflowRuntimeError):
    """The CI status check itself failed (as opposed to CI jobs failing)."""


class CICheckTimeoutError(CIError):
    """A single status command exceeded its command timeout. Retryable."""


class CICommandError(CIError):
    pass


class CITimeoutError(CIError):
    """CI did not reach a terminal state within the polling ceiling."""


# PR split


class PRSplitError(WorkflowRuntimeError):
    pass


class RollbackError(PRSplitError):
    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__(f"rollback encountered errors: {'; '.join(self.errors)}")


# Control flow


class WorkflowCancelledError(WorkflowRuntimeError):
    """Cancellation was requested through the cancel token."""

    def __init__(self, message: str = "workflow cancelled"):
        super().__init__(message)


class UserCancelledError(WorkflowRuntimeError):
    def __init__(self, message: str = "workflow cancelled by user"):
        super().__init__(message)


class PhaseFailedError(WorkflowRuntimeError):
    """Raised after a phase failure has been recorded in the persisted state."""

    def __init__(self, phase: str, message: str, recoverable: bool, failure_type: str,
                 cause: Optional[BaseException] = None):
        self.phase = phase
        self.recoverable = recoverable
        self.failure_type = failure_type
        self.cause = cause
        super().__init__(f"{phase} failed: {message}")
