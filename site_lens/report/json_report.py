# site_lens/report/json_report.py

"""
Генерация JSON-отчёта для проекта SiteLens.

Сериализация объекта ScanReport в файл.
"""
from __future__ import annotations

import json
from pathlib import Path

from site_lens.models import ScanReport


def render_json(report: ScanReport, output_path: Path | str, *, pretty: bool = True) -> Path:
    """
    Сохраняет отчёт report в формате JSON по указанному пути.

    :param report: объект ScanReport с результатами сканирования
    :param output_path: путь к JSON-файлу
    :param pretty: отступ 2 пробела (иначе одна строка)
    :return: Path сохранённого файла

    Пример:
    ```python
    from site_lens.report.json_report import render_json
    report_path = render_json(report, 'reports/report.json')
    print(f"JSON report saved to: {report_path}")
    ```
    """
    output = Path(output_path)
    output.parent.mkdir(parents=True, exist_ok=True)

    with output.open('w', encoding='utf-8') as f:
        json.dump(report.to_dict(), f, ensure_ascii=False, indent=2 if pretty else None)

    return output
