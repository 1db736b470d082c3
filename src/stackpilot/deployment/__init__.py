"""Changeset lifecycle, stack polling, event streaming and execution."""
