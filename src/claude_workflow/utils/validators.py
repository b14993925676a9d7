"""Validation utilities for workflow names, types, descriptions, and branch names."""

import os
import re

from ..core.errors import (
    InvalidDescriptionError,
    InvalidNameError,
    InvalidTypeError,
)

MAX_WORKFLOW_NAME_LENGTH = 64
DEFAULT_MAX_DESCRIPTION_LENGTH = 32768
MAX_DESCRIPTION_LENGTH_ENV = "CLAUDE_WORKFLOW_MAX_DESCRIPTION_LENGTH"

VALID_WORKFLOW_TYPES = ("feature", "fix")

_WORKFLOW_NAME_RE = re.compile(r'^[a-zA-Z0-9]([a-zA-Z0-9-]*[a-zA-Z0-9])?$')


def validate_workflow_name(name: str) -> str:
    """
    Validate a workflow name before it is used as a directory name.

    Path traversal is checked before the character whitelist so the error
    message names the real problem.

    Raises:
        InvalidNameError: If the name is empty, too long, or malformed
    """
    if not name:
        raise InvalidNameError("invalid workflow name: name cannot be empty")

    if '..' in name or '/' in name or '\\' in name:
        raise InvalidNameError(
            f"invalid workflow name: {name!r} contains path traversal characters"
        )

    if len(name) > MAX_WORKFLOW_NAME_LENGTH:
        raise InvalidNameError(
            f"invalid workflow name: exceeds {MAX_WORKFLOW_NAME_LENGTH} characters"
        )

    if not _WORKFLOW_NAME_RE.match(name):
        raise InvalidNameError(
            f"invalid workflow name: {name!r} must contain only alphanumeric "
            "characters and hyphens, and cannot start or end with a hyphen"
        )

    return name


def validate_workflow_type(workflow_type: str) -> str:
    """Validate workflow type is one of feature/fix."""
    if workflow_type not in VALID_WORKFLOW_TYPES:
        raise InvalidTypeError(
            f"invalid workflow type: {workflow_type!r} (must be 'feature' or 'fix')"
        )
    return workflow_type


def max_description_length() -> int:
    """Description limit, overridable through the environment."""
    raw = os.environ.get(MAX_DESCRIPTION_LENGTH_ENV)
    if raw:
        try:
            value = int(raw)
            if value > 0:
                return value
        except ValueError:
            pass
    return DEFAULT_MAX_DESCRIPTION_LENGTH


def validate_description(description: str) -> str:
    """Validate that the description is non-empty and within the length limit."""
    if not description or not description.strip():
        raise InvalidDescriptionError("invalid description: description cannot be empty")

    limit = max_description_length()
    if len(description) > limit:
        raise InvalidDescriptionError(
            f"invalid description: exceeds {limit} characters (got {len(description)})"
        )
    return description


def validate_branch_name(branch_name: str) -> str:
    """
    Validate git branch name.

    Raises:
        ValueError: If branch name is invalid
    """
    if not branch_name:
        raise ValueError("Branch name cannot be empty")

    # Strict whitelist
    if not re.match(r'^[a-zA-Z0-9/._-]+$', branch_name):
        raise ValueError(f"Invalid branch name: {branch_name}")

    if branch_name.startswith('/') or branch_name.endswith('/'):
        raise ValueError("Branch name cannot start or end with /")

    if '..' in branch_name or '@{' in branch_name:
        raise ValueError("Branch name contains invalid sequence")

    if len(branch_name) > 255:
        raise ValueError("Branch name too long")

    return branch_name
