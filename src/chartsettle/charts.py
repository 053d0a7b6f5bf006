from __future__ import annotations

import json
from pathlib import Path

# OFC2 per-element key that drives the entry animation
ANIMATION_KEY = "on-show"


class ChartFormatError(ValueError):
    pass


def output_path_for(source: str | Path, directory: Path | None = None) -> Path:
    source_path = Path(source)
    if directory is None:
        return source_path.with_name(source_path.name + ".png")
    return directory / (source_path.name + ".png")


def strip_animation(raw: bytes) -> bytes:
    try:
        chart = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ChartFormatError(f"chart is not valid JSON: {exc}") from exc
    if not isinstance(chart, dict):
        raise ChartFormatError("chart root must be a JSON object")

    elements = chart.get("elements", [])
    if not isinstance(elements, list):
        raise ChartFormatError("`elements` must be a list")
    for element in elements:
        if isinstance(element, dict):
            element.pop(ANIMATION_KEY, None)
    return json.dumps(chart).encode("utf-8")


def read_chart(path: str | Path, *, strip: bool = False) -> bytes:
    raw = Path(path).read_bytes()
    if strip:
        return strip_animation(raw)
    return raw
