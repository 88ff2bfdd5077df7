"""site_diff.report: Классификация ошибок, итог запуска и отчёты (JSON и HTML)."""

from site_diff.report.html_report import render_html
from site_diff.report.json_report import render_json
from site_diff.report.reporter import FailureRecord, Outcome, RunReporter, RunSummary, classify_error

__all__ = [
    "FailureRecord",
    "Outcome",
    "RunReporter",
    "RunSummary",
    "classify_error",
    "render_html",
    "render_json",
]
