from __future__ import annotations

import pytest

from mdtypeset.fence_options import DiagramOptions
from mdtypeset.models import EditorPosition
from mdtypeset.preprocessor import (
    DOC_START_ANCHOR_ID,
    LineIndex,
    OffsetMap,
    apply_edits,
    build_anchor_markup,
    build_diagram_directive,
    escape_typst_string,
    extract_diagram_blocks,
    format_scale_value,
    inject_anchors,
    preprocess_markdown,
)


def label(anchor_id: str) -> str:
    return f'<!--raw-typst #label("{anchor_id}") -->\n'


DIAGRAM_DOC = "Before\n\n```tikz scale=2.50 format=svg\n\\draw (0,0) -- (1,1);\n```\n\nAfter\n"


class TestExtraction:
    def test_fence_becomes_directive(self):
        output, blocks = extract_diagram_blocks(DIAGRAM_DOC)
        directive = '<!--raw-typst #tikz_render(diagram: "\\\\draw (0,0) -- (1,1);\\n", scale: 2.5, format: "svg") -->\n'
        assert output == "Before\n\n" + directive + "\nAfter\n"
        assert len(blocks) == 1
        block = blocks[0]
        assert block.id == "tikz-0"
        assert block.source == "\\draw (0,0) -- (1,1);\n"
        assert block.options == DiagramOptions(scale="2.50", format="svg")
        assert block.asset_path == "tikz/tikz-0.svg"

    def test_length_accounts_for_replacement(self):
        output, _ = extract_diagram_blocks(DIAGRAM_DOC)
        fence = "```tikz scale=2.50 format=svg\n\\draw (0,0) -- (1,1);\n```\n"
        directive = output[len("Before\n\n") : -len("\nAfter\n")]
        assert len(output) == len(DIAGRAM_DOC) - len(fence) + len(directive)

    def test_rewriting_twice_changes_nothing(self):
        once, _ = extract_diagram_blocks(DIAGRAM_DOC)
        twice, blocks = extract_diagram_blocks(once)
        assert twice == once
        assert blocks == []

    def test_other_fences_are_untouched(self):
        text = "```python\nx = 1\n```\n\n    indented tikz\n"
        assert extract_diagram_blocks(text) == (text, [])

    def test_blocks_numbered_in_document_order(self):
        text = "~~~tikz\n\\draw (0,0);\n~~~\n\n```python\npass\n```\n\n```tikz\n\\fill (1,1);\n```\n"
        output, blocks = extract_diagram_blocks(text)
        assert [block.id for block in blocks] == ["tikz-0", "tikz-1"]
        assert [block.source for block in blocks] == ["\\draw (0,0);\n", "\\fill (1,1);\n"]
        assert "```python\npass\n```\n" in output
        assert output.count("#tikz_render(") == 2

    def test_defaults_omit_optional_arguments(self):
        output, blocks = extract_diagram_blocks("```tikz\n\\draw;\n```\n")
        assert output == '<!--raw-typst #tikz_render(diagram: "\\\\draw;\\n") -->\n'
        assert blocks[0].extension == "png"

    def test_preamble_is_passed_through_escaped(self):
        output, blocks = extract_diagram_blocks('```tikz preamble="\\usetikzlibrary{calc}"\n\\draw;\n```\n')
        assert blocks[0].options.preamble == "\\usetikzlibrary{calc}"
        assert 'preamble: "\\\\usetikzlibrary{calc}"' in output

    def test_fence_inside_list_keeps_indentation_before_directive(self):
        text = "- item\n\n  ```tikz\n  \\draw;\n  ```\n"
        output, blocks = extract_diagram_blocks(text)
        assert len(blocks) == 1
        assert output.startswith("- item\n\n  <!--raw-typst #tikz_render(")


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("2.50", "2.5"),
        ("1", "1"),
        ("3.0", "3"),
        ("-2", "-2"),
        ("1e3", "1000"),
        ("0.75", "0.75"),
        ("auto", "auto"),
        ("AUTO", "auto"),
        ("none", "none"),
        ("", "none"),
        ("big", '"big"'),
        ("inf", '"inf"'),
    ],
)
def test_format_scale_value(raw, expected):
    assert format_scale_value(raw) == expected


def test_escape_typst_string():
    assert escape_typst_string('a\\b"c\nd\te\r') == 'a\\\\b\\"c\\nd\\te\\r'


def test_blank_scale_is_omitted():
    directive = build_diagram_directive("x", DiagramOptions(scale="  "))
    assert "scale" not in directive


def test_apply_edits_keeps_listing_order_for_shared_offsets():
    assert apply_edits("xy", [(1, 1, "A"), (1, 1, "B")]) == "xABy"
    assert apply_edits("abcdef", [(0, 1, "Z"), (4, 6, "")]) == "Zbcd"


def test_offset_map_to_source():
    offset_map = OffsetMap([(2, 5, "abcdefg")])
    assert offset_map.to_source(1) == 1
    assert offset_map.to_source(3) == 2
    assert offset_map.to_source(9) == 5
    assert offset_map.to_source(12) == 8


def test_line_index_handles_crlf_and_utf8():
    index = LineIndex("é\r\nb\rc")
    assert index.starts == [0, 3, 5]
    assert index.line_column(4) == (1, 1)
    assert index.byte_offset(3) == 4
    assert index.editor_position(5) == EditorPosition(offset=6, line=2, column=0)


class TestAnchors:
    def test_heading_and_paragraph(self):
        output, anchors = inject_anchors("# Title\n\nHello")
        assert [anchor.id for anchor in anchors] == [DOC_START_ANCHOR_ID, "tf-0-1", "tf-9-2"]
        assert output == label("tf-doc-start") + label("tf-0-1") + "# Title\n\n" + label("tf-9-2") + "Hello"
        assert anchors[2].editor == EditorPosition(offset=9, line=2, column=0)

    def test_length_grows_by_inserted_markup(self):
        text = "Intro\n\n- a\n  - b\n\n1. one\n\n    code\n"
        output, anchors = inject_anchors(text)
        inserted = sum(len(build_anchor_markup(text, anchor.editor.offset, anchor.id)) for anchor in anchors)
        assert len(output) == len(text) + inserted

    def test_ids_are_unique_and_ordered(self):
        _, anchors = inject_anchors("# A\n\ntext\n\n- x\n- y\n\n> quote\n\nend\n")
        ids = [anchor.id for anchor in anchors]
        assert len(ids) == len(set(ids))
        offsets = [anchor.editor.offset for anchor in anchors]
        assert offsets == sorted(offsets)

    def test_quoted_lines_get_no_anchor(self):
        output, anchors = inject_anchors("> quoted text")
        assert [anchor.id for anchor in anchors] == [DOC_START_ANCHOR_ID]
        assert output == label(DOC_START_ANCHOR_ID) + "> quoted text"

    def test_paragraph_after_quote_is_anchored(self):
        _, anchors = inject_anchors("> Para\n\nInner")
        assert [anchor.id for anchor in anchors] == [DOC_START_ANCHOR_ID, "tf-8-1"]

    def test_tables_stay_contiguous(self):
        table = "| a | b |\n| --- | --- |\n| 1 | 2 |\n"
        text = "Intro\n\n" + table + "\nAfter\n"
        output, anchors = inject_anchors(text)
        assert table in output
        table_start = text.index(table)
        table_end = table_start + len(table)
        assert not [a for a in anchors if table_start <= a.editor.offset < table_end]
        before = [a for a in anchors if a.id != DOC_START_ANCHOR_ID and a.editor.offset < table_start]
        assert [a.id for a in before] == ["tf-0-1"]
        assert anchors[-1].editor.offset == table_end + 1

    def test_table_at_document_start(self):
        table = "| a | b |\n| --- | --- |\n| 1 | 2 |\n"
        output, anchors = inject_anchors(table + "\nAfter\n")
        assert [a.id for a in anchors if a.editor.offset <= 0] == [DOC_START_ANCHOR_ID]
        assert output.startswith(label(DOC_START_ANCHOR_ID) + table)
        assert [a.editor.offset for a in anchors] == [0, len(table) + 1]

    def test_footnote_definition_is_anchored(self):
        text = "Text[^1]\n\n[^1]: Note\n"
        output, anchors = inject_anchors(text)
        assert [a.editor.offset for a in anchors] == [0, 0, 10]
        assert "\n\n" + label(anchors[-1].id) + "[^1]: Note\n" in output

    def test_carriage_return_line_endings(self):
        output, anchors = inject_anchors("> quote\r\rNext")
        assert [a.editor.offset for a in anchors] == [0, 9]
        assert anchors[1].editor == EditorPosition(offset=9, line=2, column=0)
        assert output == label(DOC_START_ANCHOR_ID) + "> quote\r\r" + label(anchors[1].id) + "Next"

    def test_crlf_indented_list_item(self):
        output, anchors = inject_anchors("- a\r\n  - b\r\n")
        assert [a.editor.offset for a in anchors] == [0, 0, 7]
        assert "- a\r\n  " + label("tf-7-2") + "  - b\r\n" in output

    def test_nested_list_keeps_its_indentation(self):
        output, anchors = inject_anchors("- a\n  - b\n")
        assert [anchor.editor.offset for anchor in anchors] == [0, 0, 6]
        assert "- a\n  " + label("tf-6-2") + "  - b\n" in output

    def test_indented_code_anchor_sits_before_the_line(self):
        text = "Para\n\n    code\n"
        output, anchors = inject_anchors(text)
        assert anchors[-1].editor.offset == 6
        assert output.endswith(label(anchors[-1].id) + "    code\n")

    def test_offsets_are_utf8_bytes(self):
        _, anchors = inject_anchors("é\n\nNext")
        assert [anchor.id for anchor in anchors] == [DOC_START_ANCHOR_ID, "tf-0-1", "tf-4-2"]
        assert anchors[2].editor == EditorPosition(offset=4, line=2, column=0)

    def test_empty_document_has_only_doc_start(self):
        output, anchors = inject_anchors("")
        assert output == label(DOC_START_ANCHOR_ID)
        assert len(anchors) == 1


def test_preprocess_reports_offsets_in_authored_text():
    text = "```tikz\n\\draw;\n```\n\nAfter\n"
    result = preprocess_markdown(text)
    assert len(result.diagram_blocks) == 1
    assert [anchor.id for anchor in result.anchors] == [DOC_START_ANCHOR_ID, "tf-20-1"]
    assert result.anchors[1].editor == EditorPosition(offset=20, line=4, column=0)
    assert "#tikz_render(" in result.markdown
    assert result.markdown.startswith(label(DOC_START_ANCHOR_ID))


def test_preprocess_without_diagrams_matches_anchor_pass():
    text = "# Title\n\nHello"
    result = preprocess_markdown(text)
    assert (result.markdown, result.anchors) == inject_anchors(text)
    assert result.diagram_blocks == []
