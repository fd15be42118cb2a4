"""Resolve all diagram blocks of one document into build-directory assets."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from PySide6.QtCore import QRunnable, QThreadPool

from .config import Settings
from .diagrams import DiagramCache, cache_key
from .errors import FallbackRenderError
from .models import DiagramBlock
from .output_sync import sync_diagram_outputs

_log = logging.getLogger(__name__)


@dataclass
class DiagramAssetReport:
    """Outcome of one assets run, keyed by block id."""

    outputs: dict[str, Path] = field(default_factory=dict)
    states: dict[str, str] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)
    removed: list[Path] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


class DiagramRenderWorker(QRunnable):
    """Resolve one cache key in a pool thread, keeping the outcome on the worker."""

    def __init__(self, cache: DiagramCache, block: DiagramBlock):
        super().__init__()
        # The caller reads results after the pool drains.
        self.setAutoDelete(False)
        self.cache = cache
        self.block = block
        self.path: Path | None = None
        self.state = ""
        self.failure: str | None = None
        self.exception: BaseException | None = None

    def run(self) -> None:
        try:
            self.path, self.state = self.cache.resolve_entry(self.block)
        except FallbackRenderError as exc:
            self.failure = exc.message
        except Exception as exc:
            # Re-raised on the calling thread once the pool is done.
            self.exception = exc


def _run_workers(workers: list[DiagramRenderWorker], thread_count: int) -> None:
    if thread_count <= 1 or len(workers) <= 1:
        for worker in workers:
            worker.run()
        return

    pool = QThreadPool()
    pool.setMaxThreadCount(thread_count)
    for worker in workers:
        pool.start(worker)
    pool.waitForDone()


def prepare_diagram_assets(
    blocks: list[DiagramBlock],
    build_dir: Path,
    settings: Settings | None = None,
    cache: DiagramCache | None = None,
) -> DiagramAssetReport:
    """Make sure every block has an artifact at its asset path.

    Identical blocks are compiled once. A block whose error artifact also
    fails is reported in ``failures`` and skipped; filesystem errors abort
    the run.
    """
    settings = settings or Settings.from_env()
    cache = cache or DiagramCache.for_build_dir(build_dir, settings)

    workers_by_key: dict[str, DiagramRenderWorker] = {}
    block_keys: list[tuple[DiagramBlock, str]] = []
    for block in blocks:
        key = f"{cache_key(block)}.{block.extension}"
        block_keys.append((block, key))
        if key not in workers_by_key:
            workers_by_key[key] = DiagramRenderWorker(cache, block)

    workers = list(workers_by_key.values())
    thread_count = settings.worker_count(len(workers))
    if workers:
        _log.info("resolving %d diagram(s) (%d unique) on %d thread(s)", len(blocks), len(workers), thread_count)
    _run_workers(workers, thread_count)

    for worker in workers:
        if worker.exception is not None:
            raise worker.exception

    report = DiagramAssetReport()
    resolved: list[tuple[DiagramBlock, Path]] = []
    for block, key in block_keys:
        worker = workers_by_key[key]
        if worker.path is None:
            report.failures[block.id] = worker.failure or "no artifact produced"
            continue
        report.states[block.id] = worker.state
        resolved.append((block, worker.path))

    report.outputs, report.removed = sync_diagram_outputs(build_dir, resolved)
    for block_id, message in report.failures.items():
        _log.error("diagram %s has no artifact: %s", block_id, message)
    return report
