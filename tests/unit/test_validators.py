"""Tests for input validators."""

import pytest

from claude_workflow.core.errors import (
    InvalidDescriptionError,
    InvalidNameError,
    InvalidTypeError,
    ValidationError,
)
from claude_workflow.utils.validators import (
    MAX_DESCRIPTION_LENGTH_ENV,
    MAX_WORKFLOW_NAME_LENGTH,
    max_description_length,
    validate_branch_name,
    validate_description,
    validate_workflow_name,
    validate_workflow_type,
)


class TestValidateWorkflowName:
    @pytest.mark.parametrize("name", ["widget", "add-auth-2", "A", "a1-b2-c3"])
    def test_valid_names(self, name):
        assert validate_workflow_name(name) == name

    def test_empty(self):
        with pytest.raises(InvalidNameError, match="cannot be empty"):
            validate_workflow_name("")

    @pytest.mark.parametrize("name", ["../etc", "a/b", "a\\b", "..hidden"])
    def test_path_traversal_reported_first(self, name):
        with pytest.raises(InvalidNameError, match="path traversal"):
            validate_workflow_name(name)

    def test_too_long(self):
        with pytest.raises(InvalidNameError, match="exceeds"):
            validate_workflow_name("a" * (MAX_WORKFLOW_NAME_LENGTH + 1))

    def test_max_length_allowed(self):
        name = "a" * MAX_WORKFLOW_NAME_LENGTH
        assert validate_workflow_name(name) == name

    @pytest.mark.parametrize("name", ["-start", "end-", "under_score", "sp ace", "dot.name"])
    def test_malformed(self, name):
        with pytest.raises(InvalidNameError, match="alphanumeric"):
            validate_workflow_name(name)

    def test_is_a_value_error(self):
        with pytest.raises(ValueError):
            validate_workflow_name("")
        assert issubclass(InvalidNameError, ValidationError)


class TestValidateWorkflowType:
    @pytest.mark.parametrize("workflow_type", ["feature", "fix"])
    def test_valid(self, workflow_type):
        assert validate_workflow_type(workflow_type) == workflow_type

    @pytest.mark.parametrize("workflow_type", ["", "chore", "Feature"])
    def test_invalid(self, workflow_type):
        with pytest.raises(InvalidTypeError):
            validate_workflow_type(workflow_type)


class TestValidateDescription:
    def test_valid(self):
        assert validate_description("Add a widget") == "Add a widget"

    @pytest.mark.parametrize("description", ["", "   ", "\n\t"])
    def test_blank(self, description):
        with pytest.raises(InvalidDescriptionError, match="cannot be empty"):
            validate_description(description)

    def test_limit_from_environment(self, monkeypatch):
        monkeypatch.setenv(MAX_DESCRIPTION_LENGTH_ENV, "10")
        assert validate_description("a" * 10)
        with pytest.raises(InvalidDescriptionError, match="exceeds 10 characters"):
            validate_description("a" * 11)

    @pytest.mark.parametrize("raw", ["abc", "0", "-5", ""])
    def test_bad_environment_value_uses_default(self, monkeypatch, raw):
        monkeypatch.setenv(MAX_DESCRIPTION_LENGTH_ENV, raw)
        assert max_description_length() == 32768


class TestValidateBranchName:
    def test_valid(self):
        assert validate_branch_name("split/widget/child-1") == "split/widget/child-1"

    @pytest.mark.parametrize("branch", ["", "/lead", "trail/", "a..b", "a@{b", "sp ace"])
    def test_invalid(self, branch):
        with pytest.raises(ValueError):
            validate_branch_name(branch)
