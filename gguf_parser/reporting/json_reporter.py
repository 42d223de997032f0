# gguf_parser/reporting/json_reporter.py
"""
JSON reporting utilities (optional).
"""

from __future__ import annotations

import json
from typing import Any, Dict

from gguf_parser.observability import to_dict


def to_json_dict(report: Dict[str, Any]) -> Dict[str, Any]:
    """Convert an ``inspect`` report (views and estimates) to plain JSON types."""
    return to_dict(report)


def write_json(report: Dict[str, Any], path: str) -> None:
    """Write report to a file as pretty JSON."""
    with open(path, "w", encoding="utf-8") as f:
        json.dump(to_json_dict(report), f, indent=2)
