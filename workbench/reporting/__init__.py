"""Static report generation for QA Workbench."""

from .generator import ReportGenerator, CIEnvironment, detect_ci_environment

__all__ = ["ReportGenerator", "CIEnvironment", "detect_ci_environment"]
