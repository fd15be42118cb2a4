"""Rewrite authored markdown for the Typst template.

Two passes run over the text, each collecting edits first and splicing them
in descending offset order so pending offsets stay valid:

1. TikZ fences become ``#tikz_render(...)`` embed directives.
2. Invisible ``#label(...)`` anchors are inserted before block constructs so
   editor offsets can be correlated with positions in the compiled PDF.
"""

from __future__ import annotations

import logging
import math
import re
from bisect import bisect_right
from dataclasses import dataclass, field
from functools import lru_cache
from operator import itemgetter
from typing import Callable

from markdown_it import MarkdownIt
from mdit_py_plugins.dollarmath import dollarmath_plugin
from mdit_py_plugins.footnote import footnote_plugin
from mdit_py_plugins.tasklists import tasklists_plugin

from .fence_options import DiagramOptions, parse_fence_info
from .models import Anchor, DiagramBlock, EditorPosition

_log = logging.getLogger(__name__)

DIRECTIVE_PREFIX = "<!--raw-typst "
DIRECTIVE_SUFFIX = " -->\n"
DIAGRAM_FUNCTION = "tikz_render"
LABEL_FUNCTION = "label"
ANCHOR_ID_PREFIX = "tf-"
DOC_START_ANCHOR_ID = "tf-doc-start"

# markdown-it token types that open a block construct worth anchoring.
# Footnote definitions have no line map; their first paragraph starts on the
# definition line and anchors it.
ANCHORED_TOKEN_TYPES = frozenset(
    {
        "paragraph_open",
        "heading_open",
        "blockquote_open",
        "fence",
        "code_block",
        "bullet_list_open",
        "ordered_list_open",
        "list_item_open",
        "table_open",
        "thead_open",
        "tbody_open",
        "tr_open",
        "th_open",
        "td_open",
    }
)
# Blockquotes are anchored through their inner paragraphs instead, and tables
# must stay contiguous for the table syntax to survive.
SKIPPED_TOKEN_TYPES = frozenset(
    {
        "blockquote_open",
        "table_open",
        "thead_open",
        "tbody_open",
        "tr_open",
        "th_open",
        "td_open",
    }
)

_LINE_BREAK_RE = re.compile(r"\r\n?|\n")

Edit = tuple[int, int, str]


@lru_cache(maxsize=1)
def _block_parser() -> MarkdownIt:
    md = MarkdownIt("commonmark").enable("table").enable("strikethrough")
    md.use(footnote_plugin)
    md.use(tasklists_plugin)
    # Keep $...$ / $$...$$ as math tokens so TeX never reads as emphasis.
    md.use(dollarmath_plugin)
    return md


class LineIndex:
    """Line-start table for offset/line/column conversions over one text."""

    def __init__(self, text: str) -> None:
        self.text = text
        # Same line-break rules as markdown-it's normalizer, so token maps line up.
        self.starts = [0] + [match.end() for match in _LINE_BREAK_RE.finditer(text)]
        self._byte_starts: list[int] = []
        running = 0
        previous = 0
        for start in self.starts:
            running += len(text[previous:start].encode("utf-8"))
            self._byte_starts.append(running)
            previous = start

    def line_start(self, line: int) -> int:
        if line < 0:
            return 0
        if line >= len(self.starts):
            return len(self.text)
        return self.starts[line]

    def line_end(self, line: int) -> int:
        """Offset of the line break ending ``line`` (or end of text)."""
        start = self.line_start(line)
        match = _LINE_BREAK_RE.search(self.text, start)
        return match.start() if match else len(self.text)

    def first_non_blank(self, line: int) -> int:
        pos = self.line_start(line)
        end = self.line_end(line)
        while pos < end and self.text[pos] in " \t":
            pos += 1
        return pos

    def line_column(self, offset: int) -> tuple[int, int]:
        line = bisect_right(self.starts, offset) - 1
        return line, offset - self.starts[line]

    def byte_offset(self, offset: int) -> int:
        line = bisect_right(self.starts, offset) - 1
        start = self.starts[line]
        return self._byte_starts[line] + len(self.text[start:offset].encode("utf-8"))

    def editor_position(self, offset: int) -> EditorPosition:
        line, column = self.line_column(offset)
        return EditorPosition(offset=self.byte_offset(offset), line=line, column=column)


def apply_edits(text: str, edits: list[Edit]) -> str:
    """Splice ``(start, end, replacement)`` edits, latest start first.

    Edits sharing a start offset land in the order they were listed.
    """
    output = text
    for start, end, replacement in reversed(sorted(edits, key=itemgetter(0))):
        if 0 <= start <= end <= len(output):
            output = output[:start] + replacement + output[end:]
        else:
            _log.debug("dropping out-of-range edit %d..%d", start, end)
    return output


def escape_typst_string(value: str) -> str:
    return (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
    )


def format_scale_value(raw: str) -> str:
    """Render a scale option as a Typst argument value."""
    trimmed = raw.strip()
    if not trimmed or trimmed.casefold() == "none":
        return "none"
    if trimmed.casefold() == "auto":
        return "auto"
    try:
        number = float(trimmed)
    except ValueError:
        number = None
    if number is None or not math.isfinite(number):
        return f'"{escape_typst_string(trimmed)}"'

    # Integral values print without a decimal point.
    if number.is_integer() and abs(number) < 1e16:
        return str(int(number))
    formatted = repr(number)
    if "." in formatted and "e" not in formatted:
        formatted = formatted.rstrip("0")
        if formatted.endswith("."):
            formatted += "0"
    return formatted


def build_diagram_directive(source: str, options: DiagramOptions) -> str:
    args = [f'diagram: "{escape_typst_string(source)}"']
    if options.scale is not None and options.scale.strip():
        args.append(f"scale: {format_scale_value(options.scale)}")
    if options.preamble is not None:
        args.append(f'preamble: "{escape_typst_string(options.preamble)}"')
    if options.format:
        args.append(f'format: "{escape_typst_string(options.format)}"')
    return f"{DIRECTIVE_PREFIX}#{DIAGRAM_FUNCTION}({', '.join(args)}){DIRECTIVE_SUFFIX}"


def _fence_opening(text: str, index: LineIndex, token) -> tuple[int, str]:
    """Return the offset of a fence's opening marker and its raw info string."""
    line = token.map[0]
    line_start = index.line_start(line)
    line_end = index.line_end(line)
    marker_pos = text.find(token.markup, line_start, line_end) if token.markup else -1
    if marker_pos < 0:
        marker_pos = index.first_non_blank(line)
        return marker_pos, token.info or ""
    # Read the info string raw so backslash escapes inside quotes survive.
    return marker_pos, text[marker_pos + len(token.markup) : line_end]


class OffsetMap:
    """Map offsets in spliced text back to the text the edits were applied to.

    Offsets that fall inside a replacement map to the start of the span it
    replaced.
    """

    def __init__(self, edits: list[Edit]) -> None:
        self._edits = sorted(((start, end, len(replacement)) for start, end, replacement in edits), key=itemgetter(0))

    def to_source(self, offset: int) -> int:
        shift = 0
        for start, end, replacement_length in self._edits:
            spliced_start = start + shift
            if offset < spliced_start:
                break
            if offset < spliced_start + replacement_length:
                return start
            shift += replacement_length - (end - start)
        return offset - shift


def _collect_diagram_edits(markdown: str) -> tuple[list[Edit], list[DiagramBlock]]:
    tokens = _block_parser().parse(markdown)
    fences = sorted(
        (token for token in tokens if token.type == "fence" and token.map),
        key=lambda token: token.map[0],
    )
    if not fences:
        return [], []

    index = LineIndex(markdown)
    edits: list[Edit] = []
    blocks: list[DiagramBlock] = []
    for token in fences:
        start, info = _fence_opening(markdown, index, token)
        parsed = parse_fence_info(info)
        if parsed is None:
            continue
        _marker, options = parsed
        end = index.line_start(token.map[1])
        block = DiagramBlock(id=f"tikz-{len(blocks)}", source=token.content, options=options)
        blocks.append(block)
        edits.append((start, end, build_diagram_directive(block.source, options)))
    return edits, blocks


def extract_diagram_blocks(markdown: str) -> tuple[str, list[DiagramBlock]]:
    """Replace every TikZ fence with an embed directive.

    Returns the rewritten markdown and the diagram blocks in document order.
    """
    edits, blocks = _collect_diagram_edits(markdown)
    if not edits:
        return markdown, []
    _log.debug("extracted %d TikZ block(s)", len(blocks))
    return apply_edits(markdown, edits), blocks


def _is_quoted_line(index: LineIndex, offset: int) -> bool:
    line, _column = index.line_column(offset)
    return index.text[index.line_start(line) : index.line_end(line)].lstrip().startswith(">")


def build_anchor_markup(text: str, offset: int, anchor_id: str, index: LineIndex | None = None) -> str:
    directive = f'{DIRECTIVE_PREFIX}#{LABEL_FUNCTION}("{anchor_id}"){DIRECTIVE_SUFFIX}'
    if index is None:
        index = LineIndex(text)
    line, column = index.line_column(offset)
    if column == 0:
        return directive
    indent = text[index.line_start(line) : offset]
    if not indent.strip(" \t"):
        # Indented construct (nested list item, list continuation): repeat the
        # indentation after the label so the construct keeps its container.
        return directive + indent
    return "\n" + directive


def _insertion_offset(index: LineIndex, token) -> int:
    if token.type == "code_block":
        # Indented code owns its leading whitespace; anchor before the line.
        return index.line_start(token.map[0])
    return index.first_non_blank(token.map[0])


def inject_anchors(
    markdown: str,
    locate: Callable[[int], EditorPosition] | None = None,
) -> tuple[str, list[Anchor]]:
    """Insert label anchors before block constructs.

    A document-start anchor is always emitted at offset 0. Block anchors are
    deduplicated by offset; quoted lines and tables never receive one.
    ``locate`` turns an offset in ``markdown`` into the editor position
    recorded on the anchor; by default positions refer to ``markdown`` itself.
    """
    index = LineIndex(markdown)
    if locate is None:
        locate = index.editor_position
    anchors = [Anchor(id=DOC_START_ANCHOR_ID, editor=EditorPosition(0, 0, 0))]
    insertions: list[Edit] = [(0, 0, build_anchor_markup(markdown, 0, DOC_START_ANCHOR_ID, index))]

    candidates: list[int] = []
    for token in _block_parser().parse(markdown):
        if token.type not in ANCHORED_TOKEN_TYPES or token.type in SKIPPED_TOKEN_TYPES:
            continue
        if not token.map:
            continue
        offset = _insertion_offset(index, token)
        if _is_quoted_line(index, offset):
            continue
        candidates.append(offset)

    # Plugins may reorder tokens (footnotes move to the end); anchors are
    # numbered in document order.
    candidates.sort()
    seen_offsets: set[int] = set()
    for offset in candidates:
        if offset in seen_offsets:
            continue
        seen_offsets.add(offset)
        editor = locate(offset)
        anchor_id = f"{ANCHOR_ID_PREFIX}{editor.offset}-{len(anchors)}"
        anchors.append(Anchor(id=anchor_id, editor=editor))
        insertions.append((offset, offset, build_anchor_markup(markdown, offset, anchor_id, index)))

    _log.debug("injected %d anchor(s)", len(anchors))
    return apply_edits(markdown, insertions), anchors


@dataclass
class PreprocessResult:
    markdown: str
    anchors: list[Anchor] = field(default_factory=list)
    diagram_blocks: list[DiagramBlock] = field(default_factory=list)


def preprocess_markdown(markdown: str) -> PreprocessResult:
    """Run diagram extraction then anchor injection.

    Anchor editor positions refer to ``markdown`` as authored, not to the
    diagram-substituted intermediate text.
    """
    edits, blocks = _collect_diagram_edits(markdown)
    if not edits:
        final_markdown, anchors = inject_anchors(markdown)
        return PreprocessResult(markdown=final_markdown, anchors=anchors, diagram_blocks=[])

    transformed = apply_edits(markdown, edits)
    source_index = LineIndex(markdown)
    offset_map = OffsetMap(edits)

    def locate(offset: int) -> EditorPosition:
        return source_index.editor_position(offset_map.to_source(offset))

    final_markdown, anchors = inject_anchors(transformed, locate)
    _log.debug("preprocessed markdown: %d anchor(s), %d diagram(s)", len(anchors), len(blocks))
    return PreprocessResult(markdown=final_markdown, anchors=anchors, diagram_blocks=blocks)
