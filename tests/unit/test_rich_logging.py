"""Tests for workflow logging setup and formatting."""

import logging

import pytest

from claude_workflow.utils.rich_logging import (
    PACKAGE_LOGGER,
    WorkflowLogFormatter,
    WorkflowLogger,
    setup_rich_logging,
)


@pytest.fixture(autouse=True)
def _reset_package_logger():
    yield
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in package_logger.handlers[:]:
        handler.close()
        package_logger.removeHandler(handler)
    package_logger.setLevel(logging.NOTSET)


def _record(message="hello", **extra):
    record = logging.LogRecord("claude_workflow.test", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestWorkflowLogFormatter:
    def test_plain_format_includes_context(self):
        text = WorkflowLogFormatter(use_colors=False).format(
            _record("Agent finished", workflow="widget", phase="PLANNING")
        )
        assert "INFO" in text
        assert "[widget] [PLANNING] Agent finished" in text
        assert "\033[" not in text

    def test_colors(self):
        text = WorkflowLogFormatter(use_colors=True).format(_record())
        assert "\033[32m" in text

    def test_without_context(self):
        text = WorkflowLogFormatter(use_colors=False).format(_record("bare"))
        assert text.endswith("bare")
        assert "[" not in text


class TestWorkflowLogger:
    def test_tags_workflow_and_phase(self, caplog):
        log = WorkflowLogger(logging.getLogger("claude_workflow.test"), "widget")
        with caplog.at_level(logging.INFO, logger="claude_workflow.test"):
            log.phase_change("IMPLEMENTATION")
            log.attempt(2, 10, "CI errors")

        phase_record, attempt_record = caplog.records[-2:]
        assert phase_record.workflow == "widget"
        assert phase_record.phase == "IMPLEMENTATION"
        assert phase_record.getMessage() == "Phase: IMPLEMENTATION"
        assert attempt_record.levelno == logging.WARNING
        assert attempt_record.getMessage() == "Attempt 2/10 to fix CI errors"

    def test_completion_clears_phase(self, caplog):
        log = WorkflowLogger(logging.getLogger("claude_workflow.test"), "widget")
        log.phase_change("REFACTORING")
        with caplog.at_level(logging.INFO, logger="claude_workflow.test"):
            log.workflow_completed(12.345)

        record = caplog.records[-1]
        assert record.getMessage() == "Workflow completed in 12.3s"
        assert not hasattr(record, "phase")

    def test_failure_hint(self, caplog):
        log = WorkflowLogger(logging.getLogger("claude_workflow.test"), "widget")
        with caplog.at_level(logging.ERROR, logger="claude_workflow.test"):
            log.workflow_failed("boom", recoverable=False)
        assert "Workflow failed (not recoverable): boom" in caplog.text


class TestSetupRichLogging:
    def test_file_handler_writes_under_logs(self, tmp_path):
        log = setup_rich_logging("widget", tmp_path, log_level="DEBUG", use_console=False)
        logging.getLogger("claude_workflow.core.orchestrator").info("written to file")
        for handler in logging.getLogger(PACKAGE_LOGGER).handlers:
            handler.flush()

        assert isinstance(log, WorkflowLogger)
        assert log.workflow == "widget"
        assert "written to file" in (tmp_path / "logs" / "widget.log").read_text()

    def test_repeated_setup_replaces_handlers(self, tmp_path):
        setup_rich_logging("widget", tmp_path, use_file=False)
        setup_rich_logging("widget", tmp_path, use_file=False)

        package_logger = logging.getLogger(PACKAGE_LOGGER)
        assert len(package_logger.handlers) == 1
        assert package_logger.level == logging.INFO

    def test_no_file_when_disabled(self, tmp_path):
        setup_rich_logging("widget", tmp_path, use_file=False, use_console=False)
        assert not (tmp_path / "logs").exists()
