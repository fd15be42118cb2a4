"""Command line entry point: prepare a build directory or merge a source map."""

from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
from pathlib import Path

from .config import Settings
from .errors import MdTypesetError
from .pipeline import DiagramAssetReport, prepare_diagram_assets
from .preprocessor import PreprocessResult, preprocess_markdown
from .sourcemap import load_anchors, load_query_json, merge

CONTENT_FILE_NAME = "content.md"
ANCHORS_FILE_NAME = "anchors.json"

# One render at a time per process; the core itself holds no shared state.
_RENDER_LOCK = threading.Lock()


def prepare_build(
    markdown_text: str,
    build_dir: Path,
    settings: Settings | None = None,
    *,
    skip_diagrams: bool = False,
) -> tuple[PreprocessResult, DiagramAssetReport | None]:
    """Preprocess markdown into ``build_dir`` and resolve its diagram assets."""
    with _RENDER_LOCK:
        build_dir.mkdir(parents=True, exist_ok=True)
        result = preprocess_markdown(markdown_text)
        (build_dir / CONTENT_FILE_NAME).write_text(result.markdown, encoding="utf-8")
        anchors_payload = {"anchors": [anchor.to_dict() for anchor in result.anchors]}
        (build_dir / ANCHORS_FILE_NAME).write_text(json.dumps(anchors_payload, indent=2) + "\n", encoding="utf-8")
        if skip_diagrams:
            return result, None
        report = prepare_diagram_assets(result.diagram_blocks, build_dir, settings)
        return result, report


def _cmd_prepare(args: argparse.Namespace) -> int:
    source = Path(args.source).expanduser()
    if not source.is_file():
        print(f"Markdown file does not exist: {source}", file=sys.stderr)
        return 2

    settings = Settings.from_env()
    if args.workers is not None:
        settings.max_workers = max(1, args.workers)

    markdown_text = source.read_text(encoding="utf-8", errors="replace")
    result, report = prepare_build(
        markdown_text,
        Path(args.build_dir).expanduser(),
        settings,
        skip_diagrams=args.skip_diagrams,
    )
    print(f"{len(result.anchors)} anchor(s), {len(result.diagram_blocks)} diagram(s)")
    if report is None:
        return 0
    for block_id, message in report.failures.items():
        print(f"Diagram {block_id} failed: {message}", file=sys.stderr)
    return 0 if report.ok else 1


def _cmd_sourcemap(args: argparse.Namespace) -> int:
    try:
        anchors = load_anchors(Path(args.anchors).expanduser())
        tree = load_query_json(Path(args.query).expanduser())
    except (OSError, MdTypesetError) as exc:
        print(f"Could not read source map inputs: {exc}", file=sys.stderr)
        return 2

    payload = merge(anchors, tree).to_json(indent=2) + "\n"
    if args.output:
        Path(args.output).expanduser().write_text(payload, encoding="utf-8")
    else:
        sys.stdout.write(payload)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mdtypeset",
        description="Prepare markdown for Typst with TikZ diagrams and editor/PDF source maps.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    prepare = subparsers.add_parser("prepare", help="Rewrite markdown and build diagram assets.")
    prepare.add_argument("source", help="Markdown file to preprocess.")
    prepare.add_argument("--build-dir", required=True, help="Directory receiving content.md, anchors.json, and tikz/.")
    prepare.add_argument("--workers", type=int, default=None, help="Concurrent diagram compiles (default: CPU count).")
    prepare.add_argument("--skip-diagrams", action="store_true", help="Only rewrite markdown; do not compile diagrams.")
    prepare.set_defaults(handler=_cmd_prepare)

    sourcemap = subparsers.add_parser("sourcemap", help="Merge anchors with rendered label positions.")
    sourcemap.add_argument("anchors", help="anchors.json written by `prepare`.")
    sourcemap.add_argument("query", help="JSON output of the document compiler's label query.")
    sourcemap.add_argument("-o", "--output", default=None, help="Write the source map here instead of stdout.")
    sourcemap.set_defaults(handler=_cmd_sourcemap)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )
    return args.handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
