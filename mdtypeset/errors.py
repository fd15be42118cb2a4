"""Exception types raised by the preprocessing and diagram stages."""

from __future__ import annotations


class MdTypesetError(RuntimeError):
    """Base class for mdtypeset failures."""


class DiagramCompileError(MdTypesetError):
    """A diagram could not be compiled or rasterized.

    Raised for non-zero compiler exits, timeouts, missing PDF output and
    rasterization errors. The cache converts it into a fallback artifact.
    """


class FallbackRenderError(MdTypesetError):
    """The error artifact for a failed diagram could not be produced either."""

    def __init__(self, block_id: str, message: str):
        super().__init__(f"diagram {block_id}: {message}")
        self.block_id = block_id
        self.message = message


class SourceMapError(MdTypesetError):
    """Rendered-position query output could not be read."""
