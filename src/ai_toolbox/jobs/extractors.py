# src/ai_toolbox/jobs/extractors.py

"""
Result-shape extraction.

Providers return the finished payload in several shapes. Each extractor looks
for one shape and returns the string it found, or None. Extractors are tried
in order and the first match wins, so the order of the tuples below is the
tie-break policy.
"""

from __future__ import annotations

import copy
import re
from collections.abc import Callable, Iterable
from typing import Any

from .job_models import JobResult

Extractor = Callable[[Any], "str | None"]
Decoder = Callable[[str], JobResult]

_DATA_URI_RE = re.compile(r"^data:[^;,]+;base64,", re.IGNORECASE)
_IMAGE_DATA_URI_RE = re.compile(r"^data:image/[a-z0-9.+-]+;base64,", re.IGNORECASE)

INPUT_PLACEHOLDER = "{{input}}"


def _first_str(items: Any) -> str | None:
    if isinstance(items, list) and items and isinstance(items[0], str) and items[0]:
        return items[0]
    return None


def _output(doc: Any) -> Any:
    return doc.get("output") if isinstance(doc, dict) else None


# ---- status-document extractors (submit/poll providers) ----


def output_images_first(doc: Any) -> str | None:
    out = _output(doc)
    return _first_str(out.get("images")) if isinstance(out, dict) else None


def output_list_first(doc: Any) -> str | None:
    return _first_str(_output(doc))


def output_string(doc: Any) -> str | None:
    out = _output(doc)
    return out if isinstance(out, str) and out else None


def output_data_first(doc: Any) -> str | None:
    out = _output(doc)
    return _first_str(out.get("data")) if isinstance(out, dict) else None


def root_images_first(doc: Any) -> str | None:
    return _first_str(doc.get("images")) if isinstance(doc, dict) else None


STATUS_EXTRACTORS: tuple[Extractor, ...] = (
    output_images_first,
    output_list_first,
    output_string,
    output_data_first,
    root_images_first,
)


# ---- single-request extractors (client libraries that return the result) ----


def _nested(doc: Any, *path: str) -> Any:
    cur = doc
    for key in path:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _as_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


URL_EXTRACTORS: tuple[Extractor, ...] = (
    lambda doc: _as_str(_nested(doc, "data", "image", "url")),
    lambda doc: _as_str(_nested(doc, "data", "url")),
    lambda doc: _as_str(_nested(doc, "data")),
    lambda doc: _as_str(_nested(doc, "image", "url")),
    lambda doc: _as_str(_nested(doc, "url")),
)


def extract_result(doc: Any, extractors: Iterable[Extractor] = STATUS_EXTRACTORS) -> str | None:
    for extractor in extractors:
        found = extractor(doc)
        if found is not None:
            return found
    return None


# ---- decoders ----


def strip_data_uri(value: str) -> str:
    return _DATA_URI_RE.sub("", value, count=1)


def decode_passthrough(raw: str) -> JobResult:
    """Use the output as the result URL; keep base64 only for data: URIs."""
    b64 = strip_data_uri(raw) if _DATA_URI_RE.match(raw) else None
    return JobResult(raw=raw, url=raw, base64=b64)


def decode_image_base64(raw: str) -> JobResult:
    """Output is inline image data (bare base64 or a data:image URI); expose it as a PNG data URL."""
    clean = _IMAGE_DATA_URI_RE.sub("", raw, count=1)
    return JobResult(raw=raw, url=f"data:image/png;base64,{clean}", base64=clean)


DECODERS: dict[str, Decoder] = {
    "passthrough": decode_passthrough,
    "image": decode_image_base64,
}


# ---- chained payloads ----


def substitute_input(template: Any, value: str, placeholder: str = INPUT_PLACEHOLDER) -> Any:
    """Deep copy `template` replacing every string equal to `placeholder` with `value`."""
    if isinstance(template, str):
        return value if template == placeholder else template
    if isinstance(template, dict):
        return {k: substitute_input(v, value, placeholder) for k, v in template.items()}
    if isinstance(template, list):
        return [substitute_input(v, value, placeholder) for v in template]
    return copy.deepcopy(template)


def template_payload(
    template: dict[str, Any], placeholder: str = INPUT_PLACEHOLDER
) -> Callable[[str, int], dict[str, Any]]:
    """Build a chain payload builder from a JSON template containing the input placeholder."""

    def build(current_input: str, iteration: int) -> dict[str, Any]:
        return substitute_input(template, current_input, placeholder)

    return build
