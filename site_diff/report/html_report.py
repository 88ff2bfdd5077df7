"""site_diff.report.html_report: Генерация HTML-отчёта с помощью Jinja2."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Union

from jinja2 import Environment, FileSystemLoader, PackageLoader, select_autoescape

from site_diff.report.reporter import RunSummary
from site_diff.utils import url_to_filename

TEMPLATE_NAME = "report.html.j2"


def render_html(
    summary: RunSummary,
    template_dir: Union[Path, str, None],
    output_path: Union[Path, str],
) -> Path:
    """Рендерит HTML-отчёт о запуске и сохраняет его по указанному пути.

    Args:
        summary: объект RunSummary.
        template_dir: директория с Jinja2-шаблонами; при None берётся шаблон из пакета.
        output_path: путь к итоговому HTML-файлу.

    Returns:
        Path до сохранённого HTML-файла.
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    loader = (
        FileSystemLoader(str(template_dir))
        if template_dir is not None
        else PackageLoader("site_diff", "templates")
    )
    env = Environment(loader=loader, autoescape=select_autoescape(["html", "xml", "j2"]))
    env.filters["artifact_key"] = url_to_filename
    template = env.get_template(TEMPLATE_NAME)

    context: dict[str, Any] = {
        "summary": summary,
        "failures": [f.to_dict() for f in summary.failures],
        "changed_urls": summary.changed_urls,
        "by_kind": sorted(summary.by_kind.items()),
    }

    output_path.write_text(template.render(**context), encoding="utf-8")
    return output_path
