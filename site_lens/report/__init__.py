# site_lens/report/__init__.py
from site_lens.report.json_report import render_json

__all__ = ["render_json"]
