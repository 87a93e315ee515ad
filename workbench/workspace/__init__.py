"""Workspace conventions and preparation for QA Workbench."""

from .layout import ResolvedSpec, WorkspaceLayout, slugify

__all__ = ["ResolvedSpec", "WorkspaceLayout", "slugify"]
