"""Workflow state machine, persistence and CI polling."""
