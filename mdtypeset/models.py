"""Data carried between the preprocessing, diagram, and source-map stages."""

from __future__ import annotations

from dataclasses import dataclass

from .fence_options import DiagramOptions

DIAGRAM_OUTPUT_DIR = "tikz"
DEFAULT_DIAGRAM_EXTENSION = "png"
# Requested `format=` values mapped to the artifact extension written to disk.
FORMAT_EXTENSIONS = {
    "png": "png",
    "jpg": "jpg",
    "jpeg": "jpg",
    "webp": "webp",
    "svg": "svg",
    "vector": "svg",
}


def requested_extension(format_value: str | None) -> str:
    """Map a fence ``format`` option to an artifact extension, defaulting to PNG."""
    normalized = (format_value or "").strip().casefold()
    return FORMAT_EXTENSIONS.get(normalized, DEFAULT_DIAGRAM_EXTENSION)


@dataclass(frozen=True)
class EditorPosition:
    """Location in the authored markdown: UTF-8 byte offset, 0-based line and column."""

    offset: int
    line: int
    column: int

    def to_dict(self) -> dict[str, int]:
        return {"offset": self.offset, "line": self.line, "column": self.column}


@dataclass(frozen=True)
class RenderedPosition:
    """Location in the compiled document: 1-based page and page coordinates."""

    page: int
    x: float
    y: float

    def to_dict(self) -> dict[str, float | int]:
        return {"page": self.page, "x": self.x, "y": self.y}


@dataclass(frozen=True)
class Anchor:
    id: str
    editor: EditorPosition
    rendered: RenderedPosition | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"id": self.id, "editor": self.editor.to_dict()}
        if self.rendered is not None:
            payload["pdf"] = self.rendered.to_dict()
        return payload

    @classmethod
    def from_dict(cls, payload: dict) -> Anchor:
        editor = payload["editor"]
        rendered = payload.get("pdf")
        return cls(
            id=str(payload["id"]),
            editor=EditorPosition(int(editor["offset"]), int(editor["line"]), int(editor["column"])),
            rendered=(
                RenderedPosition(int(rendered["page"]), float(rendered["x"]), float(rendered["y"]))
                if isinstance(rendered, dict)
                else None
            ),
        )


@dataclass(frozen=True)
class DiagramBlock:
    """One TikZ fence lifted out of the markdown, in document order."""

    id: str
    source: str
    options: DiagramOptions

    @property
    def extension(self) -> str:
        return requested_extension(self.options.format)

    @property
    def asset_path(self) -> str:
        """Build-directory relative path the document template embeds."""
        return f"{DIAGRAM_OUTPUT_DIR}/{self.id}.{self.extension}"
