"""Durable, lockable persistence for workflow state and phase artifacts.

Layout per workflow::

    <base_dir>/<name>/
        state.json
        plan.json
        plan.md
        .lock/                       held while a process writes
        phases/<phase>.json          structured agent output
        phases/<phase>_raw.txt       raw output kept when parsing failed
        prompts/<phase>_attempt_<n>.txt
"""

import json
import logging
import shutil
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ..utils.atomic_io import atomic_write_model, atomic_write_text
from ..utils.file_lock import FileLock
from ..utils.validators import (
    validate_description,
    validate_workflow_name,
    validate_workflow_type,
)
from .clock import Clock, RealClock
from .errors import (
    StateCorruptedError,
    ValidationError,
    WorkflowExistsError,
    WorkflowLockedError,
    WorkflowNotFoundError,
)
from .models import (
    WORK_PHASES,
    Phase,
    PhaseState,
    PhaseStatus,
    Plan,
    WorkflowInfo,
    WorkflowState,
    phase_slug,
)

logger = logging.getLogger(__name__)

STATE_FILE = "state.json"
PLAN_FILE = "plan.json"
PLAN_MARKDOWN_FILE = "plan.md"
LOCK_DIR = ".lock"
PHASES_DIR = "phases"
PROMPTS_DIR = "prompts"

M = TypeVar("M", bound=BaseModel)


class StateStore:
    """File-backed workflow state under ``base_dir``.

    Writes are atomic and serialized by a per-workflow lock. A store
    instance that already holds a workflow's lock writes without
    re-acquiring it, so an orchestrator can keep the lock for a whole run.
    """

    def __init__(self, base_dir: Path, clock: Optional[Clock] = None):
        self.base_dir = Path(base_dir)
        self.clock = clock or RealClock()
        self._locks: Dict[str, FileLock] = {}

    # ------------------------------------------------------------------
    # Directories
    # ------------------------------------------------------------------

    def workflow_dir(self, name: str) -> Path:
        return self.base_dir / name

    def ensure_workflow_dir(self, name: str) -> Path:
        validate_workflow_name(name)
        workflow_dir = self.workflow_dir(name)
        (workflow_dir / PHASES_DIR).mkdir(parents=True, exist_ok=True)
        (workflow_dir / PROMPTS_DIR).mkdir(parents=True, exist_ok=True)
        return workflow_dir

    def workflow_exists(self, name: str) -> bool:
        try:
            validate_workflow_name(name)
        except ValidationError:
            return False
        return (self.workflow_dir(name) / STATE_FILE).exists()

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def lock(self, name: str) -> None:
        """Take the workflow's write lock or fail immediately.

        Raises:
            WorkflowLockedError: Another holder (process or store) owns the lock
        """
        validate_workflow_name(name)
        if name in self._locks:
            raise WorkflowLockedError(name)

        self.workflow_dir(name).mkdir(parents=True, exist_ok=True)
        file_lock = FileLock(self.workflow_dir(name) / LOCK_DIR, owner=name)
        if not file_lock.acquire():
            raise WorkflowLockedError(name)
        self._locks[name] = file_lock

    def unlock(self, name: str) -> None:
        """Release the workflow's lock; a no-op when not held."""
        file_lock = self._locks.pop(name, None)
        if file_lock is not None:
            file_lock.release()

    def holds_lock(self, name: str) -> bool:
        return name in self._locks

    @contextmanager
    def locked(self, name: str):
        """Hold the workflow lock for the duration of the block."""
        self.lock(name)
        try:
            yield
        finally:
            self.unlock(name)

    @contextmanager
    def _write_lock(self, name: str):
        if self.holds_lock(name):
            yield
            return
        with self.locked(name):
            yield

    # ------------------------------------------------------------------
    # Workflow state
    # ------------------------------------------------------------------

    def new_state(self, name: str, description: str, workflow_type: str) -> WorkflowState:
        """A fresh workflow in the PLANNING phase, not yet persisted.

        Raises:
            ValidationError: Invalid name, type or description
        """
        validate_workflow_name(name)
        validate_workflow_type(workflow_type)
        validate_description(description)

        now = self.clock.now()
        phases = {phase.value: PhaseState() for phase in WORK_PHASES}
        phases[Phase.PLANNING.value].status = PhaseStatus.IN_PROGRESS

        return WorkflowState(
            name=name,
            type=workflow_type,
            description=description,
            current_phase=Phase.PLANNING,
            created_at=now,
            updated_at=now,
            phases=phases,
        )

    def init_state(self, name: str, description: str, workflow_type: str) -> WorkflowState:
        """Create and persist a fresh workflow in the PLANNING phase.

        Raises:
            ValidationError: Invalid name, type or description
            WorkflowExistsError: A workflow with this name already exists
        """
        state = self.new_state(name, description, workflow_type)
        if self.workflow_exists(name):
            raise WorkflowExistsError(name)

        self.save_state(name, state)
        logger.info(f"Initialized workflow {name} ({workflow_type})")
        return state

    def save_state(self, name: str, state: WorkflowState) -> None:
        """Stamp ``updated_at`` and atomically write the state file."""
        validate_workflow_name(name)
        self.ensure_workflow_dir(name)
        with self._write_lock(name):
            state.updated_at = self.clock.now()
            atomic_write_model(self.workflow_dir(name) / STATE_FILE, state)

    def load_state(self, name: str) -> WorkflowState:
        """
        Raises:
            WorkflowNotFoundError: No state file for ``name``
            StateCorruptedError: The state file is not valid state JSON
        """
        validate_workflow_name(name)
        return self._load_model(name, self.workflow_dir(name) / STATE_FILE, WorkflowState)

    def list_workflows(self) -> List[WorkflowInfo]:
        """Summaries of every readable workflow, sorted by name."""
        self.base_dir.mkdir(parents=True, exist_ok=True)
        workflows = []

        for entry in sorted(self.base_dir.iterdir()):
            if not entry.is_dir():
                continue
            try:
                state = self.load_state(entry.name)
            except Exception as e:
                logger.debug(f"Skipping {entry.name}: {e}")
                continue

            if state.current_phase == Phase.COMPLETED:
                status = "completed"
            elif state.current_phase == Phase.FAILED or state.error is not None:
                status = "failed"
            else:
                status = "in_progress"

            workflows.append(WorkflowInfo(
                name=state.name,
                type=state.type,
                current_phase=state.current_phase,
                created_at=state.created_at,
                updated_at=state.updated_at,
                status=status,
            ))

        return workflows

    def delete_workflow(self, name: str, keep_lock: bool = False) -> None:
        """Remove a workflow's files while holding its lock.

        With ``keep_lock`` the lock directory is left in place, so a caller
        that holds the lock can re-create the workflow without releasing it.

        Raises:
            WorkflowNotFoundError: No directory for ``name``
            WorkflowLockedError: Another holder owns the lock
        """
        validate_workflow_name(name)
        workflow_dir = self.workflow_dir(name)
        if not workflow_dir.exists():
            raise WorkflowNotFoundError(name)

        with self._write_lock(name):
            if keep_lock:
                for entry in workflow_dir.iterdir():
                    if entry.name == LOCK_DIR:
                        continue
                    if entry.is_dir():
                        shutil.rmtree(entry)
                    else:
                        entry.unlink()
            else:
                shutil.rmtree(workflow_dir)
        logger.info(f"Deleted workflow {name}")

    # ------------------------------------------------------------------
    # Artifacts
    # ------------------------------------------------------------------

    def save_plan(self, name: str, plan: Plan) -> None:
        self.ensure_workflow_dir(name)
        atomic_write_model(self.workflow_dir(name) / PLAN_FILE, plan)

    def plan_exists(self, name: str) -> bool:
        return (self.workflow_dir(name) / PLAN_FILE).exists()

    def load_plan(self, name: str) -> Plan:
        validate_workflow_name(name)
        return self._load_model(name, self.workflow_dir(name) / PLAN_FILE, Plan)

    def save_plan_markdown(self, name: str, markdown: str) -> None:
        self.ensure_workflow_dir(name)
        atomic_write_text(self.workflow_dir(name) / PLAN_MARKDOWN_FILE, markdown)

    def phase_output_path(self, name: str, phase: str) -> Path:
        return self.workflow_dir(name) / PHASES_DIR / f"{phase_slug(phase)}.json"

    def raw_output_path(self, name: str, phase: str) -> Path:
        return self.workflow_dir(name) / PHASES_DIR / f"{phase_slug(phase)}_raw.txt"

    def prompt_path(self, name: str, phase: str, attempt: int) -> Path:
        return self.workflow_dir(name) / PROMPTS_DIR / f"{phase_slug(phase)}_attempt_{attempt}.txt"

    def save_phase_output(self, name: str, phase: str, output: BaseModel) -> None:
        self.ensure_workflow_dir(name)
        atomic_write_model(self.phase_output_path(name, phase), output)

    def load_phase_output(self, name: str, phase: str, model: Type[M]) -> M:
        validate_workflow_name(name)
        return self._load_model(name, self.phase_output_path(name, phase), model)

    def save_raw_output(self, name: str, phase: str, output: str) -> Path:
        """Keep unparseable agent output for offline inspection."""
        self.ensure_workflow_dir(name)
        path = self.raw_output_path(name, phase)
        atomic_write_text(path, output)
        return path

    def save_prompt(self, name: str, phase: str, attempt: int, prompt: str) -> Path:
        """Write the prompt for (phase, attempt), replacing any earlier copy."""
        if not prompt:
            raise ValueError("prompt cannot be empty")
        if attempt < 1:
            raise ValueError(f"attempt must be positive, got {attempt}")
        self.ensure_workflow_dir(name)
        path = self.prompt_path(name, phase, attempt)
        atomic_write_text(path, prompt)
        return path

    def _load_model(self, name: str, path: Path, model: Type[M]) -> M:
        if not path.exists():
            if path.name == STATE_FILE or not self.workflow_dir(name).exists():
                raise WorkflowNotFoundError(name)
            raise FileNotFoundError(f"{path.name} not found for workflow {name}")
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return model.model_validate(data)
        except (json.JSONDecodeError, PydanticValidationError) as e:
            raise StateCorruptedError(name, f"{path.name}: {e}") from e
