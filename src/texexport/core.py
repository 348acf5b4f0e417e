"""Core export pipeline for texexport."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .annotations import AnnotationFragment
from .latex import DEFAULT_MATHJAX_URL, convert_rendered_math, inject_typesetting_loader
from .registry import (
    DEFAULT_LABELS,
    DEFAULT_WEBP_QUALITY,
    ImageSession,
    Notifier,
    PillowRasterBackend,
    find_matching_reference,
)

LOG = logging.getLogger("texexport")

EXIT_INVALID_ARGS = 6
EXIT_OUTPUT_DIR = 7
EXIT_MISSING_IMAGES = 8
EXIT_EXPORT_FAILED = 9

SOURCE_NAME = "document.tex"
RENDERED_NAME = "document.html"
ASSETS_DIR_NAME = "assets"

WEBP_QUALITY_ENV = "TEXEXPORT_WEBP_QUALITY"
MATHJAX_URL_ENV = "TEXEXPORT_MATHJAX_URL"


class MissingImagesError(RuntimeError):
    def __init__(self, missing: List[str]) -> None:
        super().__init__(f"{len(missing)} referenced image(s) not found in assets: {', '.join(missing)}")
        self.missing = missing


@dataclass
class ExportConfig:
    verbose: bool = False
    debug: bool = False
    webp_quality: int = DEFAULT_WEBP_QUALITY
    inject_mathjax: bool = True
    mathjax_url: str = DEFAULT_MATHJAX_URL
    require_all_images: bool = False
    labels: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_LABELS))


@dataclass
class RegistrationSummary:
    registered: List[str]
    failed: Dict[str, str]
    still_missing: List[str]


def resolve_webp_quality(value: Optional[int]) -> int:
    if value is not None:
        return int(value)
    override = os.environ.get(WEBP_QUALITY_ENV)
    if override is not None and override.strip():
        try:
            return int(override.strip())
        except ValueError:
            LOG.warning("Ignoring invalid %s=%r", WEBP_QUALITY_ENV, override)
    return DEFAULT_WEBP_QUALITY


def resolve_mathjax_url(value: Optional[str]) -> str:
    if value:
        return value
    override = os.environ.get(MATHJAX_URL_ENV)
    if override is not None and override.strip():
        return override.strip()
    return DEFAULT_MATHJAX_URL


def _write_labels_file(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(DEFAULT_LABELS, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")


def load_labels_file(path: Path) -> Dict[str, str]:
    try:
        data_raw = json.loads(path.read_text(encoding="utf-8"))
    except Exception as exc:
        raise ValueError(f"Unable to read labels file {path}: {exc}") from exc
    if not isinstance(data_raw, dict):
        raise ValueError(f"Labels file {path} must contain a JSON object")

    labels: Dict[str, str] = dict(DEFAULT_LABELS)
    for key in DEFAULT_LABELS:
        if key not in data_raw:
            continue
        value = data_raw.get(key)
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"Labels file {path} has an empty or non-string value for key: {key}")
        labels[key] = value if key == "generic_alt_prefix" else value.strip()
    unknown = sorted(set(data_raw) - set(DEFAULT_LABELS))
    if unknown:
        raise ValueError(f"Labels file {path} has unknown key(s): {', '.join(unknown)}")
    return labels


def _resolve_log_level(verbose: bool, debug: bool) -> int:
    return logging.DEBUG if debug else (logging.INFO if verbose else logging.WARNING)


def _configure_texexport_logger(level: int) -> None:
    LOG.setLevel(level)
    LOG.propagate = False
    if not LOG.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        handler.setLevel(level)
        LOG.addHandler(handler)
    else:
        for handler in LOG.handlers:
            handler.setLevel(level)
            if handler.formatter is None:
                handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))


def setup_logging(verbose: bool, debug: bool) -> None:
    level = _resolve_log_level(verbose, debug)
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")
    _configure_texexport_logger(level)


def _progress_bar_line(current: int, total: int, width: int = 24) -> str:
    if total <= 0:
        return "[?]"
    clamped = max(0, min(current, total))
    filled = min(int((clamped / total) * width), width)
    return "[" + "#" * filled + "." * (width - filled) + "]"


def _log_verbose_progress(prefix: str, current: int, total: int, detail: Optional[str] = None) -> None:
    bar = _progress_bar_line(current, total)
    counter = f"[{current}/{total}]" if total > 0 else f"[{current}]"
    if total > 0:
        msg = f"{prefix} {bar} {counter} ({(current / total) * 100.0:.1f}%)"
    else:
        msg = f"{prefix} {bar} {counter}"
    if detail:
        msg = f"{msg} | {detail}"
    LOG.info(msg)


def slugify_filename(name: str) -> str:
    name = name.strip().replace(" ", "_")
    name = re.sub(r"[^A-Za-z0-9._-]+", "_", name)
    return name or "document"


def safe_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8", newline="\n")


def list_asset_files(assets_dir: Path) -> List[Tuple[str, Path]]:
    if not assets_dir.exists():
        return []
    return [
        (path.relative_to(assets_dir).as_posix(), path)
        for path in sorted(p for p in assets_dir.rglob("*") if p.is_file())
    ]


async def register_assets(
    session: ImageSession, assets_dir: Path, config: ExportConfig
) -> RegistrationSummary:
    """Register every asset file that matches a still-missing reference.

    Registrations for different filenames run concurrently; a failing file is
    reported and skipped without aborting the others.
    """
    remaining: List[AnnotationFragment] = list(session.get_missing_images())
    planned: List[Tuple[str, Path]] = []

    for rel_name, path in list_asset_files(assets_dir):
        ref = find_matching_reference(rel_name, remaining)
        if ref is None:
            LOG.debug("Asset %s does not match any missing reference", rel_name)
            continue
        planned.append((ref.filename, path))
        remaining = [r for r in remaining if r.filename != ref.filename]

    total = len(planned)

    async def _register(index: int, filename: str, path: Path) -> None:
        if config.verbose:
            _log_verbose_progress("Register", index, total, detail=f"{path.name} -> {filename}")
        data = await asyncio.to_thread(path.read_bytes)
        await session.register_image(filename, data)

    outcomes = await asyncio.gather(
        *(_register(index, filename, path) for index, (filename, path) in enumerate(planned, start=1)),
        return_exceptions=True,
    )

    registered: List[str] = []
    failed: Dict[str, str] = {}
    for (filename, path), outcome in zip(planned, outcomes):
        if isinstance(outcome, BaseException):
            failed[filename] = str(outcome)
            LOG.error("Unable to register %s from %s: %s", filename, path, outcome)
        else:
            registered.append(filename)

    still_missing = sorted({ref.filename for ref in session.get_missing_images()})
    return RegistrationSummary(registered=registered, failed=failed, still_missing=still_missing)


def build_accessibility_report(source_text: str) -> List[Dict[str, Any]]:
    session = ImageSession()
    try:
        session.parse(source_text)
        return session.get_accessibility_report()
    finally:
        session.dispose()


def run_export_pipeline(
    *,
    from_dir: Path,
    out_dir: Path,
    config: ExportConfig,
    notifier: Optional[Notifier] = None,
) -> Tuple[str, Path, Path]:
    source_path = from_dir / SOURCE_NAME
    rendered_path = from_dir / RENDERED_NAME
    assets_dir = from_dir / ASSETS_DIR_NAME

    if not source_path.exists():
        raise RuntimeError(f"{SOURCE_NAME} not found in {from_dir}")
    if not rendered_path.exists():
        raise RuntimeError(f"{RENDERED_NAME} not found in {from_dir}")
    if not assets_dir.exists() and config.verbose:
        LOG.info("No %s directory in %s; images will stay unresolved", ASSETS_DIR_NAME, from_dir)

    source_text = source_path.read_text(encoding="utf-8")
    rendered = rendered_path.read_text(encoding="utf-8")

    session = ImageSession(
        backend=PillowRasterBackend(config.webp_quality),
        notifier=notifier,
        labels=config.labels,
    )
    try:
        references = session.parse(source_text)
        if config.verbose:
            LOG.info("Detected %d image reference(s) in %s", len(references), source_path.name)

        summary = asyncio.run(register_assets(session, assets_dir, config))
        if summary.still_missing:
            LOG.warning("Missing image(s): %s", ", ".join(summary.still_missing))
            if config.require_all_images:
                raise MissingImagesError(summary.still_missing)

        math_result = convert_rendered_math(rendered)
        html_text = session.replace_images_for_export(math_result.markup)
        export_report = session.last_report
        if config.inject_mathjax:
            html_text = inject_typesetting_loader(html_text, config.mathjax_url)

        out_dir.mkdir(parents=True, exist_ok=True)
        stem = slugify_filename(rendered_path.stem)
        html_out = out_dir / f"{stem}.html"
        report_out = out_dir / f"{stem}.accessibility.json"

        report = {
            "source": source_path.name,
            "images": [ref.to_dict() for ref in references],
            "registered": summary.registered,
            "registration_failures": summary.failed,
            "missing": summary.still_missing,
            "registry": session.get_registry_info(),
            "export": export_report.to_dict() if export_report is not None else None,
            "math": {
                "semantic": math_result.semantic,
                "heuristic": math_result.heuristic,
                "unrecoverable": math_result.unrecoverable,
                "skipped": math_result.skipped,
                "residue_removed": math_result.residue_removed,
                "warnings": math_result.warnings,
            },
        }

        safe_write_text(html_out, html_text if html_text.endswith("\n") else f"{html_text}\n")
        safe_write_text(report_out, json.dumps(report, ensure_ascii=False, indent=2) + "\n")
        if config.verbose:
            LOG.info("Exported %s and %s", html_out, report_out)
        return html_text, html_out, report_out
    finally:
        session.dispose()
