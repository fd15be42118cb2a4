"""Mirror resolved cache entries into the build directory and prune stale files."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from .models import DIAGRAM_OUTPUT_DIR, DiagramBlock

_log = logging.getLogger(__name__)


def copy_to_output(build_dir: Path, block: DiagramBlock, cache_path: Path) -> Path:
    """Copy one cache entry to the block's asset path, replacing any old file."""
    dest_path = build_dir / block.asset_path
    dest_path.parent.mkdir(parents=True, exist_ok=True)
    if dest_path.exists():
        dest_path.unlink()
    shutil.copyfile(cache_path, dest_path)
    return dest_path


def remove_stale_outputs(output_dir: Path, touched: set[Path]) -> list[Path]:
    """Delete files in ``output_dir`` that this run did not write."""
    removed: list[Path] = []
    if not output_dir.is_dir():
        return removed
    keep = {path.resolve() for path in touched}
    for entry in sorted(output_dir.iterdir()):
        if not entry.is_file() or entry.resolve() in keep:
            continue
        try:
            entry.unlink()
            removed.append(entry)
        except OSError as exc:
            # A leftover file only costs disk space; the next run retries.
            _log.warning("could not remove stale diagram output %s: %s", entry, exc)
    if removed:
        _log.debug("removed %d stale diagram output(s) from %s", len(removed), output_dir)
    return removed


def sync_diagram_outputs(build_dir: Path, resolved: list[tuple[DiagramBlock, Path]]) -> tuple[dict[str, Path], list[Path]]:
    """Copy every resolved block into place, then prune the diagram output directory.

    Returns the written path per block id and the removed stale files.
    """
    written: dict[str, Path] = {}
    for block, cache_path in resolved:
        written[block.id] = copy_to_output(build_dir, block, cache_path)
    removed = remove_stale_outputs(build_dir / DIAGRAM_OUTPUT_DIR, set(written.values()))
    return written, removed
