"""Extracting and validating structured agent output."""

import json
import logging
import re
from typing import List, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ..core.errors import ParseError
from ..core.models import ImplementationSummary, Plan, PRSplitPlan, RefactoringSummary

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 500

_JSON_BLOCK_RE = re.compile(r"```json\s*\n(.*?)```", re.DOTALL)

# Phrases the agent uses when it answers in prose instead of JSON
_REFUSAL_PATTERNS = ("i cannot", "i apologize", "i'm unable", "unfortunately,")

M = TypeVar("M", bound=BaseModel)


def preview(output: str, max_len: int = PREVIEW_LENGTH) -> str:
    """First ``max_len`` characters of ``output`` for error messages."""
    if not output:
        return "(empty output)"
    if len(output) <= max_len:
        return output
    return f"{output[:max_len]}...\n(truncated, showing first {max_len} chars)"


def is_text_only_response(output: str) -> bool:
    """Heuristic: the agent ignored the schema and replied in prose or markdown."""
    lowered = output.lower()
    if any(pattern in lowered for pattern in _REFUSAL_PATTERNS):
        return True

    if "{" in output or "[" in output:
        return False

    has_headers = "#" in output
    has_sentences = "." in output and len(output) > 50
    has_lines = output.count("\n") > 2
    return (has_headers or has_sentences) and has_lines


class OutputParser:
    """Pulls the JSON payload out of agent output and validates it against a model."""

    def extract_json(self, output: str) -> str:
        """Return the JSON document carried by ``output``.

        Accepted forms, tried in order: the CLI result envelope with
        ``structured_output``, a bare JSON document, a fenced json block.

        Raises:
            ParseError: Text-only output, or no valid JSON anywhere in it
        """
        trimmed = (output or "").strip()

        # A JSON document may quote prose, so only sniff output that is not one
        if not trimmed.startswith(("{", "[")) and is_text_only_response(trimmed):
            raise ParseError(
                "failed to parse agent output: text-only response detected, the agent "
                "returned text instead of the required JSON.\n\n"
                f"Output preview:\n{preview(output)}"
            )

        try:
            data = json.loads(trimmed)
        except json.JSONDecodeError:
            data = None
        else:
            if (
                isinstance(data, dict)
                and data.get("type") == "result"
                and data.get("structured_output") is not None
            ):
                return json.dumps(data["structured_output"])
            return trimmed

        blocks = self._find_json_blocks(output)
        if not blocks:
            raise ParseError(
                "failed to parse agent output: no JSON found.\n\n"
                f"Output preview:\n{preview(output)}"
            )

        for block in blocks:
            candidate = block.strip()
            if not candidate:
                continue
            try:
                json.loads(candidate)
            except json.JSONDecodeError:
                continue
            return candidate

        raise ParseError(
            "failed to parse agent output: no valid JSON found.\n\n"
            f"Output preview:\n{preview(output)}"
        )

    def parse_plan(self, json_str: str) -> Plan:
        return self._parse(json_str, Plan, "plan")

    def parse_implementation_summary(self, json_str: str) -> ImplementationSummary:
        return self._parse(json_str, ImplementationSummary, "implementation summary")

    def parse_refactoring_summary(self, json_str: str) -> RefactoringSummary:
        return self._parse(json_str, RefactoringSummary, "refactoring summary")

    def parse_pr_split_plan(self, json_str: str) -> PRSplitPlan:
        return self._parse(json_str, PRSplitPlan, "PR split plan")

    @staticmethod
    def _find_json_blocks(output: str) -> List[str]:
        return _JSON_BLOCK_RE.findall(output or "")

    @staticmethod
    def _parse(json_str: str, model: Type[M], what: str) -> M:
        try:
            data = json.loads(json_str)
        except (json.JSONDecodeError, TypeError) as e:
            raise ParseError(f"failed to parse {what}: invalid JSON: {e}") from e

        if not isinstance(data, dict):
            raise ParseError(f"failed to parse {what}: expected a JSON object")
        if not data.get("summary"):
            raise ParseError(f"failed to parse {what}: missing required field 'summary'")

        try:
            return model.model_validate(data)
        except PydanticValidationError as e:
            raise ParseError(f"failed to parse {what}: {e}") from e
