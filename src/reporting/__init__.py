"""Apply reporting."""

from reporting.report import ApplyReport

__all__ = ["ApplyReport"]
