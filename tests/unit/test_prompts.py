"""Tests for phase prompt rendering."""

import pytest

from claude_workflow.core.models import Plan, PRMetrics
from claude_workflow.core.prompts import MAX_COMMITS_IN_PROMPT, PromptGenerator
from claude_workflow.workspace.git_runner import Commit


@pytest.fixture
def prompts():
    return PromptGenerator()


@pytest.fixture
def plan():
    return Plan(summary="Add a widget endpoint", complexity="small")


class TestPlanning:
    def test_includes_type_and_description(self, prompts):
        text = prompts.planning("fix", "Crash on empty input")
        assert text.startswith("You are planning a fix for an existing codebase.")
        assert "Crash on empty input" in text
        assert "Feedback on previous plans" not in text

    def test_feedback_listed(self, prompts):
        text = prompts.planning("feature", "Add widgets", ["Use SQLite", "Fewer phases"])
        assert "## Feedback on previous plans" in text
        assert "- Use SQLite\n- Fewer phases" in text

    def test_requires_description(self, prompts):
        with pytest.raises(ValueError):
            prompts.planning("feature", "")

    def test_literal_braces_survive_formatting(self, prompts):
        assert "{x}" in prompts.planning("feature", "Support {x} placeholders")


class TestImplementationAndRefactoring:
    def test_implementation_embeds_plan(self, prompts, plan):
        text = prompts.implementation(plan)
        assert text.startswith("Implement the following approved plan.")
        assert "# Implementation Plan" in text
        assert '"prNumber"' in text

    def test_refactoring_embeds_plan(self, prompts, plan):
        text = prompts.refactoring(plan)
        assert "Add a widget endpoint" in text
        assert '"improvementsMade"' in text

    @pytest.mark.parametrize("method", ["implementation", "refactoring"])
    def test_requires_plan(self, prompts, method):
        with pytest.raises(ValueError):
            getattr(prompts, method)(None)


class TestPRSplit:
    def test_metrics_and_commits(self, prompts):
        metrics = PRMetrics(lines_changed=420, files_changed=14, files_added=["a.py"])
        commits = [Commit("aaa111", "Add model"), Commit("bbb222", "Add handler")]

        text = prompts.pr_split(metrics, commits)

        assert "- Lines changed: 420" in text
        assert "- Files added: a.py" in text
        assert "- Files deleted: (none)" in text
        assert "- aaa111 Add model\n- bbb222 Add handler" in text

    def test_commit_list_is_bounded(self, prompts):
        commits = [Commit(f"{i:06x}", f"c{i}") for i in range(MAX_COMMITS_IN_PROMPT + 5)]
        text = prompts.pr_split(PRMetrics(), commits)
        assert "- ... and 5 more" in text

    def test_no_commits(self, prompts):
        assert "## Commits since main\n\n(none)" in prompts.pr_split(PRMetrics(), [])

    def test_feedback(self, prompts):
        text = prompts.pr_split(PRMetrics(), [], ["Child PR #101 (Model) failed CI."])
        assert "Child PR #101 (Model) failed CI." in text

    def test_requires_metrics(self, prompts):
        with pytest.raises(ValueError):
            prompts.pr_split(None, [])


class TestFixCI:
    def test_includes_failures(self, prompts):
        text = prompts.fix_ci("\nCI checks failed with the following errors:\n- unit-tests\n")
        assert text.startswith("CI failed on the pull request for this branch.\n\nCI checks failed")
        assert "- unit-tests" in text

    @pytest.mark.parametrize("failures", ["", "   "])
    def test_requires_failures(self, prompts, failures):
        with pytest.raises(ValueError):
            prompts.fix_ci(failures)
