"""JSON schemas the agent's structured output must follow.

Field names are camelCase to match the persisted models in
``core.models``.
"""

import json
from typing import Any, Dict

Schema = Dict[str, Any]


def _string_list(description: str) -> Schema:
    return {"type": "array", "items": {"type": "string"}, "description": description}


PLAN_SCHEMA: Schema = {
    "type": "object",
    "properties": {
        "summary": {
            "type": "string",
            "description": "A one paragraph summary of what will be implemented",
        },
        "contextType": {
            "type": "string",
            "description": "The type of workflow (feature, fix)",
        },
        "architecture": {
            "type": "object",
            "properties": {
                "overview": {
                    "type": "string",
                    "description": "High-level architectural approach and design decisions",
                },
                "components": _string_list("Key components touched by the change"),
            },
            "required": ["overview", "components"],
        },
        "phases": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "name": {"type": "string"},
                    "description": {"type": "string"},
                    "estimatedFiles": {"type": "integer"},
                    "estimatedLines": {"type": "integer"},
                },
                "required": ["name", "description", "estimatedFiles", "estimatedLines"],
            },
        },
        "workStreams": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "name": {"type": "string"},
                    "tasks": _string_list("Tasks in this work stream"),
                    "dependsOn": _string_list("Names of work streams this one depends on"),
                },
                "required": ["name", "tasks"],
            },
        },
        "risks": _string_list("Risks of the change"),
        "complexity": {"type": "string", "enum": ["small", "medium", "large"]},
        "estimatedTotalLines": {"type": "integer"},
        "estimatedTotalFiles": {"type": "integer"},
    },
    "required": ["summary", "contextType", "phases", "complexity"],
}

IMPLEMENTATION_SUMMARY_SCHEMA: Schema = {
    "type": "object",
    "properties": {
        "filesChanged": _string_list("Files that were changed"),
        "linesAdded": {"type": "integer"},
        "linesRemoved": {"type": "integer"},
        "testsAdded": {"type": "integer"},
        "prNumber": {"type": "integer", "description": "Number of the pull request"},
        "prUrl": {"type": "string", "description": "URL of the pull request"},
        "summary": {"type": "string"},
        "nextSteps": _string_list("Follow-up work"),
    },
    "required": [
        "filesChanged", "linesAdded", "linesRemoved", "testsAdded",
        "prNumber", "prUrl", "summary",
    ],
}

REFACTORING_SUMMARY_SCHEMA: Schema = {
    "type": "object",
    "properties": {
        "filesChanged": _string_list("Files that were changed"),
        "improvementsMade": _string_list("Improvements made"),
        "summary": {"type": "string"},
    },
    "required": ["filesChanged", "improvementsMade", "summary"],
}

PR_SPLIT_PLAN_SCHEMA: Schema = {
    "type": "object",
    "properties": {
        "strategy": {"type": "string", "enum": ["commits", "files"]},
        "parentTitle": {"type": "string"},
        "parentDescription": {"type": "string"},
        "childPRs": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "title": {"type": "string"},
                    "description": {"type": "string"},
                    "commits": _string_list("Commit hashes, in order (commits strategy)"),
                    "files": _string_list("File paths (files strategy)"),
                },
                "required": ["title", "description"],
            },
        },
        "summary": {"type": "string"},
    },
    "required": ["strategy", "parentTitle", "parentDescription", "childPRs", "summary"],
}


def schema_json(schema: Schema) -> str:
    """Compact JSON form passed to ``claude --json-schema``."""
    return json.dumps(schema, separators=(",", ":"))
