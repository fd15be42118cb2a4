"""Compile TikZ blocks into cached image artifacts.

Each block is wrapped in a minimal standalone LaTeX document, compiled with
an external compiler (tectonic by default), and page one of the resulting PDF
is rasterized (or exported as SVG). Artifacts are stored by content hash and
never rewritten. A block that fails to compile is cached as an error image
instead, so the document can still be typeset.
"""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
import subprocess
import tempfile
from io import BytesIO
from pathlib import Path

import pymupdf
from PIL import Image
from pypdf import PdfReader

from .config import Settings
from .errors import DiagramCompileError, FallbackRenderError
from .models import DiagramBlock

_log = logging.getLogger(__name__)

BASE_PREAMBLE = "\\documentclass[border=2pt]{standalone}\n\\usepackage{tikz}\n"
DIAGRAM_ENVIRONMENT = "tikzpicture"
# Lines containing any of these belong in the preamble wherever they appear.
HOISTED_PREAMBLE_DIRECTIVES = (
    "\\usepackage",
    "\\RequirePackage",
    "\\PassOptionsToPackage",
    "\\usetikzlibrary",
)
DOCUMENT_CLASS_DIRECTIVE = "\\documentclass"
DOCUMENT_DELIMITERS = ("\\begin{document}", "\\end{document}")

FALLBACK_MESSAGE_MAX_CHARS = 240
FALLBACK_TRUNCATION_MARKER = "…"
LATEX_SPECIAL_CHARS = {
    "\\": "\\textbackslash{}",
    "{": "\\{",
    "}": "\\}",
    "%": "\\%",
    "$": "\\$",
    "#": "\\#",
    "_": "\\_",
    "&": "\\&",
    "^": "\\^{}",
    "~": "\\~{}",
}

CACHE_DIR_NAME = "tikz-cache"
WORK_DIR_NAME = "tikz-work"
POINTS_PER_INCH = 72.0
PIL_FORMATS = {"png": "PNG", "jpg": "JPEG", "webp": "WEBP"}


def cache_key(block: DiagramBlock) -> str:
    """Content hash over the diagram source, its preamble, and the output format.

    ``scale`` is left out: it is applied when the template places the image
    and does not change the artifact bytes.
    """
    hasher = hashlib.sha256()
    hasher.update(block.source.encode("utf-8"))
    if block.options.preamble is not None:
        hasher.update(b"\x00preamble\x00")
        hasher.update(block.options.preamble.encode("utf-8"))
    hasher.update(b"\x00format\x00")
    hasher.update((block.options.format or "").encode("utf-8"))
    return hasher.hexdigest()


def split_preamble_from_body(diagram: str) -> tuple[str, str]:
    """Move preamble-only lines out of a diagram body and wrap bare drawing code."""
    preamble_lines: list[str] = []
    body_lines: list[str] = []
    for line in diagram.splitlines():
        stripped = line.strip()
        if not stripped:
            body_lines.append(line)
            continue
        if stripped.startswith(DOCUMENT_DELIMITERS):
            continue
        if DOCUMENT_CLASS_DIRECTIVE in stripped:
            # The standalone class comes from the base preamble.
            _log.debug("dropping user document class line: %s", stripped)
            continue
        if any(directive in stripped for directive in HOISTED_PREAMBLE_DIRECTIVES):
            preamble_lines.append(line)
        else:
            body_lines.append(line)

    preamble = "\n".join(preamble_lines)
    if preamble and not preamble.endswith("\n"):
        preamble += "\n"
    body = "\n".join(body_lines)

    begin = f"\\begin{{{DIAGRAM_ENVIRONMENT}}}"
    end = f"\\end{{{DIAGRAM_ENVIRONMENT}}}"
    if begin not in body and end not in body and body.strip():
        body = f"{begin}\n{body}\n{end}\n"
    return preamble, body


def build_diagram_document(block: DiagramBlock) -> str:
    extracted_preamble, body = split_preamble_from_body(block.source)
    parts = [BASE_PREAMBLE]
    for extra in (block.options.preamble, extracted_preamble):
        if extra:
            parts.append(extra if extra.endswith("\n") else extra + "\n")
    parts.append("\\begin{document}\n")
    parts.append(body if body.endswith("\n") else body + "\n")
    parts.append("\\end{document}\n")
    return "".join(parts)


def truncate_message(message: str) -> str:
    flattened = message.strip().replace("\r\n", " ").replace("\n", " ").replace("\r", " ")
    if len(flattened) > FALLBACK_MESSAGE_MAX_CHARS:
        return flattened[:FALLBACK_MESSAGE_MAX_CHARS] + FALLBACK_TRUNCATION_MARKER
    return flattened


def escape_latex_text(text: str) -> str:
    return "".join(LATEX_SPECIAL_CHARS.get(ch, ch) for ch in text)


def build_fallback_document(message: str) -> str:
    escaped = escape_latex_text(truncate_message(message))
    return (
        "\\documentclass[border=6pt,varwidth=14cm]{standalone}\n"
        "\\usepackage{xcolor}\n"
        "\\begin{document}\n"
        f"\\color{{red}}\\ttfamily TikZ render failed:\\par {escaped}\n"
        "\\end{document}\n"
    )


def _summarize_output(text: str, limit: int = 12) -> str:
    lines = [line.rstrip() for line in (text or "").replace("\r\n", "\n").split("\n") if line.strip()]
    return "\n".join(lines[-limit:])


class DiagramCompiler:
    """Run LaTeX on one diagram document and turn page one into image bytes."""

    def __init__(self, settings: Settings, work_root: Path) -> None:
        self.settings = settings
        self.work_root = work_root

    def compile_block(self, block: DiagramBlock, key: str) -> bytes:
        pdf_bytes = self.compile_tex(build_diagram_document(block), key)
        return self.rasterize(pdf_bytes, block.extension)

    def compile_fallback(self, message: str, key: str, extension: str) -> bytes:
        pdf_bytes = self.compile_tex(build_fallback_document(message), f"{key}-error")
        return self.rasterize(pdf_bytes, extension)

    def compile_tex(self, tex_source: str, base_name: str) -> bytes:
        """Compile ``tex_source`` in a scratch directory and return the PDF bytes."""
        self.work_root.mkdir(parents=True, exist_ok=True)
        # Namespaced per cache key and unique per attempt, so concurrent
        # compiles never share files.
        scratch = Path(tempfile.mkdtemp(prefix=f"{base_name[:24]}-", dir=self.work_root))
        try:
            tex_path = scratch / "diagram.tex"
            tex_path.write_text(tex_source, encoding="utf-8")
            out_dir = scratch / "out"
            out_dir.mkdir()
            command = [*self.settings.latex_command, "--outdir", str(out_dir), str(tex_path)]
            try:
                result = subprocess.run(
                    command,
                    cwd=scratch,
                    text=True,
                    errors="replace",
                    capture_output=True,
                    check=False,
                    timeout=self.settings.compile_timeout,
                )
            except subprocess.TimeoutExpired as exc:
                raise DiagramCompileError(
                    f"LaTeX compile timed out after {self.settings.compile_timeout:g}s"
                ) from exc
            except OSError as exc:
                raise DiagramCompileError(f"LaTeX compiler could not be started: {exc}") from exc

            if result.returncode != 0:
                details = _summarize_output(result.stderr) or _summarize_output(result.stdout)
                raise DiagramCompileError(
                    f"LaTeX compile failed (exit {result.returncode}): {details or 'no output'}"
                )

            pdf_path = out_dir / "diagram.pdf"
            if not pdf_path.is_file():
                raise DiagramCompileError(f"LaTeX compile finished but produced no PDF at {pdf_path}")
            return pdf_path.read_bytes()
        finally:
            if self.settings.keep_work_files:
                _log.debug("keeping diagram work directory %s", scratch)
            else:
                shutil.rmtree(scratch, ignore_errors=True)

    def raster_zoom(self, width_pt: float, height_pt: float) -> float:
        """Zoom factor for the target DPI, shrunk so no side exceeds the cap."""
        zoom = self.settings.raster_dpi / POINTS_PER_INCH
        longest = max(width_pt, height_pt) * zoom
        if longest > self.settings.max_raster_side:
            zoom *= self.settings.max_raster_side / longest
        return zoom

    def rasterize(self, pdf_bytes: bytes, extension: str) -> bytes:
        """Render page one of ``pdf_bytes`` into ``extension`` image bytes."""
        if not pdf_bytes:
            raise DiagramCompileError("Diagram PDF is empty")
        try:
            reader = PdfReader(BytesIO(pdf_bytes))
            if len(reader.pages) == 0:
                raise DiagramCompileError("Diagram PDF did not contain any pages")
            mediabox = reader.pages[0].mediabox
            width_pt = float(mediabox.width)
            height_pt = float(mediabox.height)
            if width_pt <= 0 or height_pt <= 0:
                raise DiagramCompileError("Diagram PDF page has no area")

            with pymupdf.open(stream=pdf_bytes, filetype="pdf") as document:
                page = document.load_page(0)
                if extension == "svg":
                    return page.get_svg_image(text_as_path=True).encode("utf-8")
                zoom = self.raster_zoom(width_pt, height_pt)
                pixmap = page.get_pixmap(matrix=pymupdf.Matrix(zoom, zoom), alpha=True)
                image = Image.frombytes("RGBA", (pixmap.width, pixmap.height), pixmap.samples)
            return self.encode_image(image, extension)
        except DiagramCompileError:
            raise
        except Exception as exc:
            raise DiagramCompileError(f"Failed to rasterize diagram PDF: {exc}") from exc

    @staticmethod
    def encode_image(image: Image.Image, extension: str) -> bytes:
        pil_format = PIL_FORMATS.get(extension, "PNG")
        if pil_format == "JPEG":
            # JPEG has no alpha channel; flatten onto white.
            background = Image.new("RGB", image.size, (255, 255, 255))
            background.paste(image, mask=image.getchannel("A"))
            image = background
        output = BytesIO()
        image.save(output, format=pil_format)
        return output.getvalue()


class DiagramCache:
    """Content-addressed store of diagram artifacts (``<sha256>.<ext>``).

    Entries are written once; the directory listing is the index.
    """

    def __init__(self, cache_dir: Path, compiler: DiagramCompiler) -> None:
        self.cache_dir = cache_dir
        self.compiler = compiler

    @classmethod
    def for_build_dir(cls, build_dir: Path, settings: Settings) -> DiagramCache:
        cache_dir = settings.cache_dir or (build_dir / CACHE_DIR_NAME)
        return cls(cache_dir, DiagramCompiler(settings, build_dir / WORK_DIR_NAME))

    def entry_path(self, block: DiagramBlock) -> Path:
        return self.cache_dir / f"{cache_key(block)}.{block.extension}"

    def resolve(self, block: DiagramBlock) -> bytes:
        """Return artifact bytes for ``block``, compiling on a cache miss."""
        return self.resolve_path(block).read_bytes()

    def resolve_path(self, block: DiagramBlock) -> Path:
        path, _state = self.resolve_entry(block)
        return path

    def resolve_entry(self, block: DiagramBlock) -> tuple[Path, str]:
        """Return ``(cache path, state)`` where state is cached, compiled, or fallback.

        Raises FallbackRenderError when neither the diagram nor its error
        artifact could be produced.
        """
        key = cache_key(block)
        path = self.cache_dir / f"{key}.{block.extension}"
        if path.is_file():
            _log.debug("diagram %s: cache hit %s", block.id, path.name)
            return path, "cached"

        self.cache_dir.mkdir(parents=True, exist_ok=True)
        _log.info("diagram %s: compiling (%s)", block.id, path.name)
        try:
            data = self.compiler.compile_block(block, key)
            state = "compiled"
        except DiagramCompileError as exc:
            _log.warning("diagram %s: compile failed, using error artifact: %s", block.id, exc)
            try:
                data = self.compiler.compile_fallback(str(exc), key, block.extension)
            except DiagramCompileError as fallback_exc:
                _log.error("diagram %s: error artifact failed too: %s", block.id, fallback_exc)
                raise FallbackRenderError(block.id, str(fallback_exc)) from fallback_exc
            state = "fallback"

        self._write_once(path, data)
        return path, state

    @staticmethod
    def _write_once(path: Path, data: bytes) -> None:
        if path.exists():
            # Same key means same bytes; a concurrent writer already won.
            return
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.stem[:16]}-", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
