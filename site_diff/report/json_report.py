# site_diff/report/json_report.py

"""
Генерация JSON-отчёта для проекта SiteDiff.

Сериализация объекта RunSummary в файл.
"""
import json
from pathlib import Path

from site_diff.report.reporter import RunSummary


def render_json(summary: RunSummary, output_path: Path | str) -> Path:
    """
    Сохраняет итог запуска summary в формате JSON по указанному пути.

    :param summary: объект RunSummary с результатами запуска
    :param output_path: путь к JSON-файлу
    :return: Path сохранённого файла

    Пример:
    ```python
    from site_diff.report.json_report import render_json
    report_path = render_json(summary, 'visual-testing/run/summary.json')
    print(f"JSON report saved to: {report_path}")
    ```
    """
    output = Path(output_path)
    output.parent.mkdir(parents=True, exist_ok=True)

    with output.open('w', encoding='utf-8') as f:
        json.dump(summary.to_dict(), f, ensure_ascii=False, indent=2)

    return output
