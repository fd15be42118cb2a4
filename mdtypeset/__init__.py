"""mdtypeset: markdown preprocessing for Typst with TikZ diagrams and source maps."""

from .fence_options import DiagramOptions, parse_fence_info
from .models import Anchor, DiagramBlock, EditorPosition, RenderedPosition
from .preprocessor import PreprocessResult, extract_diagram_blocks, inject_anchors, preprocess_markdown
from .sourcemap import SourceMap, merge

__version__ = "0.1.0"

__all__ = [
    "Anchor",
    "DiagramBlock",
    "DiagramOptions",
    "EditorPosition",
    "PreprocessResult",
    "RenderedPosition",
    "SourceMap",
    "extract_diagram_blocks",
    "inject_anchors",
    "merge",
    "parse_fence_info",
    "preprocess_markdown",
]
