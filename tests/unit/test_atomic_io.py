"""Tests for atomic file writes."""

from unittest.mock import patch

import pytest

from claude_workflow.core.models import PhaseState, PRMetrics
from claude_workflow.utils.atomic_io import atomic_write_model, atomic_write_text


class TestAtomicWriteText:
    def test_writes_content(self, tmp_path):
        target = tmp_path / "state.json"
        atomic_write_text(target, "hello")
        assert target.read_text() == "hello"

    def test_replaces_existing_content(self, tmp_path):
        target = tmp_path / "state.json"
        target.write_text("old")
        atomic_write_text(target, "new")
        assert target.read_text() == "new"

    def test_leaves_no_temp_files(self, tmp_path):
        target = tmp_path / "state.json"
        atomic_write_text(target, "one")
        atomic_write_text(target, "two")
        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]

    def test_raises_after_retries_and_keeps_previous_content(self, tmp_path):
        target = tmp_path / "state.json"
        target.write_text("previous")

        with patch("claude_workflow.utils.atomic_io.os.replace", side_effect=OSError("disk full")) as mock_replace:
            with pytest.raises(OSError, match="disk full"):
                atomic_write_text(target, "new", max_retries=2)

        assert mock_replace.call_count == 2
        assert target.read_text() == "previous"
        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]


class TestAtomicWriteModel:
    def test_writes_camel_case_without_nulls(self, tmp_path):
        target = tmp_path / "phase.json"
        state = PhaseState(attempts=2, metrics=PRMetrics(lines_changed=5))

        atomic_write_model(target, state)

        text = target.read_text()
        assert '"attempts": 2' in text
        assert '"linesChanged": 5' in text
        assert "startedAt" not in text
        assert "resumeAttempt" not in text
