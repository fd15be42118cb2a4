"""Runtime settings for the diagram stage, resolved from the environment."""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path

TECTONIC_ENV = "MDTYPESET_TECTONIC"
COMPILE_TIMEOUT_ENV = "MDTYPESET_COMPILE_TIMEOUT"
WORKERS_ENV = "MDTYPESET_WORKERS"
KEEP_WORK_ENV = "MDTYPESET_KEEP_WORK"
CACHE_DIR_ENV = "MDTYPESET_CACHE_DIR"

DEFAULT_COMPILE_TIMEOUT_SECONDS = 30.0
DEFAULT_RASTER_DPI = 288.0
DEFAULT_MAX_RASTER_SIDE = 4096


def resolve_tectonic_path() -> Path | None:
    """Locate the tectonic binary from env, vendor directory, or PATH."""
    env_value = os.environ.get(TECTONIC_ENV, "").strip()
    candidates: list[Path] = []
    if env_value:
        candidates.append(Path(env_value).expanduser())
    app_dir = Path(__file__).resolve().parent
    binary_name = "tectonic.exe" if os.name == "nt" else "tectonic"
    candidates.append(app_dir / "vendor" / "tectonic" / binary_name)
    candidates.append(app_dir.parent / "vendor" / "tectonic" / binary_name)
    on_path = shutil.which("tectonic")
    if on_path:
        candidates.append(Path(on_path))

    for candidate in candidates:
        try:
            if candidate.is_file():
                return candidate.resolve()
        except Exception:
            continue
    return None


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _env_int(name: str, default: int | None) -> int | None:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().casefold() in {"1", "true", "yes", "on"}


@dataclass
class Settings:
    """Knobs for compiling and rasterizing diagram blocks.

    ``latex_command`` is the command prefix; the compiler appends
    ``--outdir <dir> <file.tex>``.
    """

    latex_command: list[str] = field(default_factory=list)
    compile_timeout: float = DEFAULT_COMPILE_TIMEOUT_SECONDS
    raster_dpi: float = DEFAULT_RASTER_DPI
    max_raster_side: int = DEFAULT_MAX_RASTER_SIDE
    max_workers: int | None = None
    keep_work_files: bool = False
    cache_dir: Path | None = None

    @classmethod
    def from_env(cls) -> Settings:
        tectonic = resolve_tectonic_path()
        # Keep a bare command name when nothing was found so the failure shows
        # up per block as a compile error rather than at startup.
        command = [str(tectonic) if tectonic is not None else "tectonic", "--chatter", "minimal"]
        cache_dir_raw = os.environ.get(CACHE_DIR_ENV, "").strip()
        return cls(
            latex_command=command,
            compile_timeout=_env_float(COMPILE_TIMEOUT_ENV, DEFAULT_COMPILE_TIMEOUT_SECONDS),
            max_workers=_env_int(WORKERS_ENV, None),
            keep_work_files=_env_flag(KEEP_WORK_ENV),
            cache_dir=Path(cache_dir_raw).expanduser() if cache_dir_raw else None,
        )

    def worker_count(self, job_count: int) -> int:
        """Bound concurrency by CPU count, configured workers, and available jobs."""
        limit = self.max_workers if self.max_workers is not None else (os.cpu_count() or 1)
        return max(1, min(limit, job_count))
