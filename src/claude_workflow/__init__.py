"""Claude Workflow - AI-assisted plan, implement, refactor and PR-split workflows."""

__version__ = "0.1.0"
