"""Correlate injected anchors with positions reported by the compiled document.

The rendered positions come from the document compiler's query mode, whose
JSON layout varies between compiler versions. Labels and locations are found
with a generic depth-first walk instead of fixed field paths.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Iterator

from .errors import SourceMapError
from .models import Anchor, RenderedPosition
from .preprocessor import ANCHOR_ID_PREFIX

_log = logging.getLogger(__name__)

LABEL_KEY = "label"
LABEL_WRAPPER_KEYS = ("value", "target", "node", "fields")
LOCATION_KEY = "location"
POSITION_KEYS = ("position", "point", "pos")
RECT_KEY = "rect"
DEFAULT_PAGE = 1


def iter_nodes(value: Any) -> Iterator[Any]:
    """Yield ``value`` and every nested value, depth first, parents before children."""
    stack = [value]
    while stack:
        node = stack.pop()
        yield node
        if isinstance(node, dict):
            stack.extend(reversed(list(node.values())))
        elif isinstance(node, list):
            stack.extend(reversed(node))


def find_first(value: Any, probe: Callable[[Any], Any]) -> Any:
    """Return the first non-``None`` ``probe(node)`` over a depth-first walk."""
    for node in iter_nodes(value):
        result = probe(node)
        if result is not None:
            return result
    return None


def _normalize_label(raw: str) -> str:
    label = raw.strip()
    # Typst prints labels as `<name>`.
    if len(label) >= 2 and label.startswith("<") and label.endswith(">"):
        label = label[1:-1].strip()
    return label


def label_of(node: Any) -> str | None:
    """Return the label carried by ``node`` directly or one wrapper key down."""
    if not isinstance(node, dict):
        return None
    direct = node.get(LABEL_KEY)
    if isinstance(direct, str):
        return _normalize_label(direct)
    for key in LABEL_WRAPPER_KEYS:
        child = node.get(key)
        if isinstance(child, dict) and isinstance(child.get(LABEL_KEY), str):
            return _normalize_label(child[LABEL_KEY])
    return None


def _coerce_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("pt"):
            text = text[:-2].strip()
        try:
            return float(text)
        except ValueError:
            return None
    return None


def _coerce_page(value: Any) -> int:
    number = _coerce_number(value)
    if number is None or number < 1:
        return DEFAULT_PAGE
    return int(number)


def position_of(node: Any) -> RenderedPosition | None:
    """Read page/x/y from one location-shaped object, if it is one."""
    if not isinstance(node, dict):
        return None
    page = _coerce_page(node.get("page"))

    for key in POSITION_KEYS:
        point = node.get(key)
        if isinstance(point, dict):
            x = _coerce_number(point.get("x"))
            y = _coerce_number(point.get("y"))
            return RenderedPosition(page=page, x=x or 0.0, y=y or 0.0)

    rect = node.get(RECT_KEY)
    if isinstance(rect, list) and len(rect) >= 2:
        # [x0, y0, x1, y1]; the top-left corner is the scroll target.
        x = _coerce_number(rect[0])
        y = _coerce_number(rect[1])
        return RenderedPosition(page=page, x=x or 0.0, y=y or 0.0)
    return None


def _location_probe(node: Any) -> RenderedPosition | None:
    if not isinstance(node, dict):
        return None
    nested = node.get(LOCATION_KEY)
    if nested is not None:
        found = position_of(nested)
        if found is not None:
            return found
    return position_of(node)


def find_location(node: Any) -> RenderedPosition | None:
    return find_first(node, _location_probe)


def positions_from_query(tree: Any) -> dict[str, RenderedPosition]:
    """Map anchor ids to the first rendered position found under their label node."""
    positions: dict[str, RenderedPosition] = {}
    for node in iter_nodes(tree):
        label = label_of(node)
        if label is None or not label.startswith(ANCHOR_ID_PREFIX) or label in positions:
            continue
        location = find_location(node)
        if location is not None:
            positions[label] = location
    return positions


@dataclass
class SourceMap:
    """Anchors in document order, optionally enriched with rendered positions."""

    anchors: list[Anchor] = field(default_factory=list)

    def to_dict(self) -> dict[str, list[dict[str, object]]]:
        return {"anchors": [anchor.to_dict() for anchor in self.anchors]}

    def to_json(self, indent: int | None = None) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    def find_by_id(self, anchor_id: str) -> Anchor | None:
        for anchor in self.anchors:
            if anchor.id == anchor_id:
                return anchor
        return None

    def nearest_to_offset(self, offset: int) -> Anchor | None:
        """Last anchor at or before an editor byte offset."""
        best: Anchor | None = None
        for anchor in self.anchors:
            if anchor.editor.offset > offset:
                break
            best = anchor
        return best

    def nearest_to_rendered(self, page: int, y: float) -> Anchor | None:
        """Last rendered anchor at or above ``y`` on ``page`` (or an earlier page)."""
        best: Anchor | None = None
        for anchor in self.anchors:
            rendered = anchor.rendered
            if rendered is None:
                continue
            if (rendered.page, rendered.y) <= (page, y):
                if best is None or (rendered.page, rendered.y) >= (best.rendered.page, best.rendered.y):
                    best = anchor
        return best


def merge(anchors: list[Anchor], tree: Any) -> SourceMap:
    """Attach rendered positions from a query result tree to ``anchors``.

    Anchors without a match keep ``rendered=None``.
    """
    positions = positions_from_query(tree)
    merged = [replace(anchor, rendered=positions.get(anchor.id)) for anchor in anchors]
    matched = sum(1 for anchor in merged if anchor.rendered is not None)
    _log.debug("source map: %d of %d anchor(s) matched a rendered position", matched, len(merged))
    return SourceMap(anchors=merged)


def load_query_json(source: str | bytes | Path) -> Any:
    """Parse query output from a path or raw JSON text."""
    try:
        if isinstance(source, Path):
            raw: str | bytes = source.read_bytes()
        else:
            raw = source
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise SourceMapError(f"Invalid position query JSON: {exc}") from exc


def load_anchors(path: Path) -> list[Anchor]:
    """Read an anchors file written by the prepare step."""
    payload = load_query_json(path)
    entries = payload.get("anchors", []) if isinstance(payload, dict) else payload
    if not isinstance(entries, list):
        raise SourceMapError(f"Anchors file has no anchor list: {path}")
    try:
        return [Anchor.from_dict(entry) for entry in entries]
    except (KeyError, TypeError, ValueError) as exc:
        raise SourceMapError(f"Malformed anchor entry in {path}: {exc}") from exc
