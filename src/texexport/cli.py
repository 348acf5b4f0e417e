"""Command-line interface for texexport."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from .version import __version__


def _get_usage() -> str:
    return (
        f"texexport {__version__}\n"
        "Usage:\n"
        "  texexport [--help] [--version|--ver]\n"
        "  texexport --from-dir FROM_DIR --to-dir TO_DIR [options]\n"
        "  texexport --from-dir FROM_DIR --report-only\n\n"
        "FROM_DIR must contain document.tex, document.html and (optionally) assets/\n\n"
        "Options:\n"
        "  --report-only               Print the accessibility report as JSON and exit\n"
        "  --require-all-images        Fail when a referenced image is missing from assets/\n"
        "  --webp-quality N            Lossy candidate quality 1-100 (default: 85)\n"
        "  --no-mathjax                Do not add the MathJax loader to the exported HTML\n"
        "  --mathjax-url URL           MathJax loader URL for the exported HTML\n"
        "  --labels PATH               Use labels JSON (longdesc_summary/generic_alt_prefix/fallback_alt)\n"
        "  --write-labels PATH         Write the default labels JSON and exit\n"
        "  --verbose                   Verbose progress logs\n"
        "  --debug                     Debug logs"
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument("--help", action="store_true")
    parser.add_argument("--version", action="store_true")
    parser.add_argument("--ver", action="store_true")
    parser.add_argument("--from-dir", help="Source directory containing document.tex, document.html, assets/")
    parser.add_argument("--to-dir", help="Output directory")
    parser.add_argument("--verbose", action="store_true", help="Verbose progress logs")
    parser.add_argument("--debug", action="store_true", help="Debug logs")
    parser.add_argument("--report-only", action="store_true", help="Print the accessibility report and exit")
    parser.add_argument(
        "--require-all-images",
        action="store_true",
        help="Exit with an error when a referenced image cannot be registered",
    )
    parser.add_argument(
        "--webp-quality",
        type=int,
        default=None,
        help="Quality of the lossy WebP candidate (fallback: TEXEXPORT_WEBP_QUALITY env var, default 85)",
    )
    parser.add_argument("--no-mathjax", action="store_true", help="Do not inject the MathJax loader script")
    parser.add_argument(
        "--mathjax-url",
        default=None,
        help="MathJax loader URL (fallback: TEXEXPORT_MATHJAX_URL env var)",
    )
    parser.add_argument("--labels", help="Path to a JSON file overriding user-facing labels")
    parser.add_argument("--write-labels", help="Write the default labels JSON to the given path and exit")
    return parser


def _validate_numeric_args(args: argparse.Namespace) -> str | None:
    if args.webp_quality is not None and not 1 <= args.webp_quality <= 100:
        return "Invalid value for --webp-quality: must be between 1 and 100"
    return None


def _announce(level: str, message: str) -> None:
    if level == "success":
        print(message)
    elif level == "error":
        print(message, file=sys.stderr)


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    parser = _build_parser()
    args, unknown = parser.parse_known_args(argv)
    if unknown:
        print(_get_usage())
        return 2

    if not argv or args.help:
        print(_get_usage())
        return 0

    if args.version or args.ver:
        print(__version__)
        return 0

    try:
        from texexport import core
    except Exception as exc:
        print(f"Unable to import texexport core: {exc}", file=sys.stderr)
        return 6

    numeric_error = _validate_numeric_args(args)
    if numeric_error:
        print(numeric_error, file=sys.stderr)
        return core.EXIT_INVALID_ARGS

    core.setup_logging(args.verbose, args.debug)

    if args.write_labels:
        target = Path(args.write_labels).expanduser().resolve()
        try:
            core._write_labels_file(target)
        except Exception as exc:
            print(f"Unable to write labels file {target}: {exc}", file=sys.stderr)
            return core.EXIT_INVALID_ARGS
        if args.verbose:
            print(f"Default labels written to {target}")
        return 0

    if not args.from_dir:
        print(_get_usage())
        print("Option --from-dir is required unless --write-labels or --version/--ver is used", file=sys.stderr)
        return core.EXIT_INVALID_ARGS

    from_dir = Path(args.from_dir).expanduser().resolve()
    if not from_dir.exists() or not from_dir.is_dir():
        print(f"Source directory not found: {from_dir}", file=sys.stderr)
        return core.EXIT_INVALID_ARGS

    source_path = from_dir / core.SOURCE_NAME
    if not source_path.exists():
        print(f"{core.SOURCE_NAME} not found in {from_dir}", file=sys.stderr)
        return core.EXIT_INVALID_ARGS

    if args.report_only:
        report = core.build_accessibility_report(source_path.read_text(encoding="utf-8"))
        print(json.dumps(report, ensure_ascii=False, indent=2))
        return 0

    if not args.to_dir:
        print(_get_usage())
        print("Option --to-dir is required unless --report-only is used", file=sys.stderr)
        return core.EXIT_INVALID_ARGS

    if not (from_dir / core.RENDERED_NAME).exists():
        print(f"{core.RENDERED_NAME} not found in {from_dir}", file=sys.stderr)
        return core.EXIT_INVALID_ARGS

    to_dir = Path(args.to_dir).expanduser().resolve()
    if to_dir.exists():
        if not to_dir.is_dir():
            print(f"Output path is not a directory: {to_dir}", file=sys.stderr)
            return core.EXIT_OUTPUT_DIR
        if any(to_dir.iterdir()):
            print(f"Output directory must be empty: {to_dir}", file=sys.stderr)
            return core.EXIT_OUTPUT_DIR

    labels = dict(core.DEFAULT_LABELS)
    if args.labels:
        labels_path = Path(args.labels).expanduser().resolve()
        if not labels_path.exists() or not labels_path.is_file():
            print(f"Labels file not found: {labels_path}", file=sys.stderr)
            return core.EXIT_INVALID_ARGS
        try:
            labels = core.load_labels_file(labels_path)
        except ValueError as exc:
            print(str(exc), file=sys.stderr)
            return core.EXIT_INVALID_ARGS

    config = core.ExportConfig(
        verbose=bool(args.verbose),
        debug=bool(args.debug),
        webp_quality=core.resolve_webp_quality(args.webp_quality),
        inject_mathjax=not args.no_mathjax,
        mathjax_url=core.resolve_mathjax_url(args.mathjax_url),
        require_all_images=bool(args.require_all_images),
        labels=labels,
    )

    try:
        core.run_export_pipeline(from_dir=from_dir, out_dir=to_dir, config=config, notifier=_announce)
    except core.MissingImagesError as exc:
        print(str(exc), file=sys.stderr)
        return core.EXIT_MISSING_IMAGES
    except RuntimeError as exc:
        print(f"Export failed: {exc}", file=sys.stderr)
        return core.EXIT_EXPORT_FAILED

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
