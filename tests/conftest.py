from __future__ import annotations

import sys
from pathlib import Path

import pytest

from mdtypeset.config import Settings
from mdtypeset.fence_options import DiagramOptions
from mdtypeset.models import DiagramBlock

FAKE_TECTONIC = Path(__file__).resolve().parent / "fake_tectonic.py"

SIMPLE_TIKZ = "\\begin{tikzpicture}\n  \\draw (0,0) -- (1,1);\n\\end{tikzpicture}"


@pytest.fixture
def fake_settings() -> Settings:
    return Settings(
        latex_command=[sys.executable, str(FAKE_TECTONIC), "--chatter", "minimal"],
        compile_timeout=20.0,
        max_workers=1,
    )


@pytest.fixture
def build_dir(tmp_path: Path) -> Path:
    path = tmp_path / "build"
    path.mkdir()
    return path


def make_block(
    source: str = SIMPLE_TIKZ,
    *,
    block_id: str = "tikz-0",
    scale: str | None = None,
    preamble: str | None = None,
    format: str | None = None,
) -> DiagramBlock:
    return DiagramBlock(
        id=block_id,
        source=source,
        options=DiagramOptions(scale=scale, preamble=preamble, format=format),
    )


def compile_calls(build_dir: Path) -> list[str]:
    log_path = build_dir / "tikz-work" / "fake-tectonic-calls.log"
    if not log_path.exists():
        return []
    return [line for line in log_path.read_text(encoding="utf-8").splitlines() if line]
