"""Session-scoped image registry and the preview/export replacement passes."""

from __future__ import annotations

import asyncio
import base64
import copy
import io
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple, Union

from .annotations import (
    AnnotationFragment,
    build_occurrence_map,
    detect_image_references,
    get_next_occurrence,
)

LOG = logging.getLogger("texexport")

PREVIEW_SCHEME = "blob:"
DATA_SCHEME = "data:"
ATTR_MANAGED = "data-image-asset"
ATTR_ORIGINAL_SRC = "data-original-src"
LONGDESC_CLASS = "image-long-description"
LONGDESC_DETAILS_CLASS = "long-description-details"

DEFAULT_WEBP_QUALITY = 85

DEFAULT_LABELS = {
    "longdesc_summary": "Image description",
    "generic_alt_prefix": "Image: ",
    "fallback_alt": "image",
}

Notifier = Callable[[str, str], None]

_NOTIFY_LEVELS = {
    "success": logging.INFO,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class ImageDecodeError(ValueError):
    pass


@dataclass
class EncodingResult:
    format: str
    mime_type: str
    data_url: str
    lossless: bool

    @property
    def size(self) -> int:
        return len(self.data_url)


@dataclass
class DecodedImage:
    width: int
    height: int
    image: Any


class RasterBackend(Protocol):
    def decode(self, data: bytes) -> DecodedImage: ...

    def encode(self, decoded: DecodedImage) -> List[EncodingResult]: ...


def _data_url(mime_type: str, raw: bytes) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(raw).decode('ascii')}"


def choose_smaller_encoding(candidates: List[EncodingResult]) -> EncodingResult:
    if not candidates:
        raise ValueError("No encoding candidates to choose from")
    return min(candidates, key=lambda c: (c.size, not c.lossless))


class PillowRasterBackend:
    def __init__(self, webp_quality: int = DEFAULT_WEBP_QUALITY) -> None:
        self.webp_quality = max(1, min(int(webp_quality), 100))

    def decode(self, data: bytes) -> DecodedImage:
        try:
            from PIL import Image  # type: ignore
        except Exception as exc:
            raise RuntimeError(f"Pillow not available: {exc}") from exc

        if not data:
            raise ImageDecodeError("Unable to decode image: empty data")
        try:
            with Image.open(io.BytesIO(data)) as img:
                img.load()
                has_alpha = "A" in img.getbands() or "transparency" in img.info
                converted = img.convert("RGBA" if has_alpha else "RGB")
        except Exception as exc:
            raise ImageDecodeError(f"Unable to decode image: {exc}") from exc
        return DecodedImage(width=converted.width, height=converted.height, image=converted)

    def encode(self, decoded: DecodedImage) -> List[EncodingResult]:
        from PIL import features  # type: ignore

        candidates: List[EncodingResult] = []
        try:
            png = io.BytesIO()
            decoded.image.save(png, format="PNG", optimize=True)
            candidates.append(EncodingResult("png", "image/png", _data_url("image/png", png.getvalue()), True))

            if features.check("webp"):
                webp = io.BytesIO()
                decoded.image.save(webp, format="WEBP", quality=self.webp_quality)
                candidates.append(
                    EncodingResult("webp", "image/webp", _data_url("image/webp", webp.getvalue()), False)
                )
            else:
                LOG.debug("WebP encoder unavailable in this Pillow build; PNG only")
        except Exception as exc:
            raise ImageDecodeError(f"Unable to encode image: {exc}") from exc
        return candidates


class PreviewUrlStore:
    """Transient ``blob:`` references valid only for the current session."""

    def __init__(self, namespace: Optional[str] = None) -> None:
        self.namespace = namespace or uuid.uuid4().hex[:12]
        self._live: Dict[str, bytes] = {}

    def create(self, data: bytes) -> str:
        url = f"{PREVIEW_SCHEME}texexport/{self.namespace}/{uuid.uuid4().hex}"
        self._live[url] = data
        return url

    def resolve(self, url: str) -> Optional[bytes]:
        return self._live.get(url)

    def revoke(self, url: Optional[str]) -> bool:
        if not url:
            return False
        return self._live.pop(url, None) is not None

    def revoke_all(self) -> int:
        count = len(self._live)
        self._live.clear()
        return count

    def __len__(self) -> int:
        return len(self._live)

    def __contains__(self, url: object) -> bool:
        return url in self._live


@dataclass
class RegistryEntry:
    filename: str
    data: bytes
    preview_url: str
    data_url: str
    mime_type: str
    format: str
    width: int
    height: int
    original_size: int
    encoded_size: int
    registered_at: float


@dataclass
class PassReport:
    mode: str
    replaced: int = 0
    missing: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode,
            "replaced": self.replaced,
            "missing": list(self.missing),
            "warnings": list(self.warnings),
        }


def _basename(path: str) -> str:
    return path.replace("\\", "/").split("?", 1)[0].split("#", 1)[0].split("/")[-1]


def generate_longdesc_id(filename: str, ordinal: int) -> str:
    safe = re.sub(r"-+", "-", re.sub(r"[^A-Za-z0-9]", "-", filename)).strip("-") or "image"
    return f"longdesc-{safe}-{ordinal}"


def find_matching_reference(
    uploaded_name: str, references: List[AnnotationFragment]
) -> Optional[AnnotationFragment]:
    uploaded_lower = uploaded_name.replace("\\", "/").lower()
    for ref in references:
        if ref.filename.lower() == uploaded_lower:
            return ref
    uploaded_base = _basename(uploaded_lower)
    for ref in references:
        if _basename(ref.filename).lower() == uploaded_base:
            return ref
    # \includegraphics{fig} without an extension
    uploaded_stem = uploaded_base.rsplit(".", 1)[0]
    for ref in references:
        ref_base = _basename(ref.filename).lower()
        if "." not in ref_base and ref_base == uploaded_stem:
            return ref
    return None


def _new_tag_factory():
    try:
        from bs4 import BeautifulSoup  # type: ignore
    except Exception as exc:
        raise RuntimeError(f"beautifulsoup4 not available: {exc}") from exc
    return BeautifulSoup("", "html.parser")


class ImageSession:
    """One document session: parse -> register -> render passes -> dispose.

    The session owns the image registry and every transient preview URL it
    hands out. Occurrence counters are allocated per pass and never shared.
    """

    def __init__(
        self,
        backend: Optional[RasterBackend] = None,
        notifier: Optional[Notifier] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> None:
        self.backend: RasterBackend = backend or PillowRasterBackend()
        self.notifier = notifier
        self.labels = dict(DEFAULT_LABELS)
        self.labels.update(labels or {})
        self.previews = PreviewUrlStore()
        self.source: str = ""
        self.references: List[AnnotationFragment] = []
        self.occurrences: Dict[str, List[AnnotationFragment]] = {}
        self.last_report: Optional[PassReport] = None
        self._registry: Dict[str, RegistryEntry] = {}

    # -- notifications -----------------------------------------------------

    def _notify(self, level: str, message: str) -> None:
        LOG.log(_NOTIFY_LEVELS.get(level, logging.INFO), message)
        if self.notifier is None:
            return
        try:
            self.notifier(level, message)
        except Exception as exc:
            LOG.debug("Notifier failed for %r: %s", message, exc)

    # -- source side -------------------------------------------------------

    def parse(self, source: Optional[str]) -> List[AnnotationFragment]:
        self.source = source or ""
        self.references = detect_image_references(self.source)
        self.occurrences = build_occurrence_map(self.references)
        return self.references

    def _references_for(self, source: Optional[str]) -> List[AnnotationFragment]:
        if source is None:
            return self.references
        return detect_image_references(source)

    def get_missing_images(self, source: Optional[str] = None) -> List[AnnotationFragment]:
        return [ref for ref in self._references_for(source) if ref.filename not in self._registry]

    def all_images_available(self, source: Optional[str] = None) -> bool:
        return not self.get_missing_images(source)

    def get_accessibility_report(self, source: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            {
                "filename": ref.filename,
                "level": ref.accessibility_status.level,
                "message": ref.accessibility_status.message,
                "warnings": list(ref.accessibility_status.warnings),
            }
            for ref in self._references_for(source)
        ]

    # -- registry ----------------------------------------------------------

    def _rasterize(self, data: bytes) -> Tuple[DecodedImage, EncodingResult]:
        decoded = self.backend.decode(data)
        chosen = choose_smaller_encoding(self.backend.encode(decoded))
        LOG.debug(
            "Encoding chosen %s (%d chars) for %dx%d image",
            chosen.format,
            chosen.size,
            decoded.width,
            decoded.height,
        )
        return decoded, chosen

    async def register_image(self, filename: str, data: bytes) -> RegistryEntry:
        LOG.info("Registering image: %r (%d bytes)", filename, len(data or b""))
        try:
            decoded, chosen = await asyncio.to_thread(self._rasterize, data)
        except Exception as exc:
            self._notify("error", f"Failed to register image {filename!r}: {exc}")
            raise

        entry = RegistryEntry(
            filename=filename,
            data=data,
            preview_url=self.previews.create(data),
            data_url=chosen.data_url,
            mime_type=chosen.mime_type,
            format=chosen.format,
            width=decoded.width,
            height=decoded.height,
            original_size=len(data),
            encoded_size=chosen.size,
            registered_at=time.time(),
        )

        previous = self._registry.get(filename)
        if previous is not None:
            self.previews.revoke(previous.preview_url)
            LOG.info("Replaced existing image: %r", filename)
        self._registry[filename] = entry

        self._notify(
            "info",
            f"Image registered: {filename!r} {entry.width}x{entry.height}, {entry.format}, "
            f"{entry.encoded_size / 1024:.1f}KB embedded",
        )
        return entry

    def remove_image(self, filename: str) -> bool:
        entry = self._registry.pop(filename, None)
        if entry is None:
            return False
        self.previews.revoke(entry.preview_url)
        LOG.info("Removed image: %r", filename)
        return True

    def clear_registry(self) -> None:
        for entry in self._registry.values():
            self.previews.revoke(entry.preview_url)
        self._registry.clear()
        LOG.info("Image registry cleared")

    def dispose(self) -> None:
        self.clear_registry()
        self.previews.revoke_all()
        self.source = ""
        self.references = []
        self.occurrences = {}
        self.last_report = None

    @property
    def image_count(self) -> int:
        return len(self._registry)

    def has_image(self, filename: str) -> bool:
        return filename in self._registry

    def get_image(self, filename: str) -> Optional[RegistryEntry]:
        return self._registry.get(filename)

    def get_registry_info(self) -> Dict[str, Dict[str, Any]]:
        return {
            name: {
                "format": entry.format,
                "dimensions": f"{entry.width}x{entry.height}",
                "original_size": entry.original_size,
                "encoded_size": entry.encoded_size,
                "has_preview_url": entry.preview_url in self.previews,
                "has_data_url": bool(entry.data_url),
            }
            for name, entry in self._registry.items()
        }

    # -- resolution --------------------------------------------------------

    def find_registry_filename(self, src: str) -> Optional[str]:
        if src in self._registry:
            return src
        base = _basename(src)
        for name in self._registry:
            if _basename(name) == base:
                return name
        return None

    def find_registry_entry(self, src: str) -> Optional[RegistryEntry]:
        name = self.find_registry_filename(src)
        return self._registry.get(name) if name else None

    def _occurrence_key(self, src: str, registry_name: str) -> Optional[str]:
        if src in self.occurrences:
            return src
        if registry_name in self.occurrences:
            return registry_name
        base = _basename(src)
        for name in self.occurrences:
            if _basename(name) == base:
                return name
        return None

    # -- replacement passes ------------------------------------------------

    def replace_images_for_preview(self, tree: Any) -> int:
        report = PassReport(mode="preview")
        self.last_report = report
        if tree is None or not self._registry:
            return 0

        counters: Dict[str, int] = {}
        for img in list(tree.find_all("img")):
            src = img.get("src")
            if not src:
                continue
            lookup = img.get(ATTR_ORIGINAL_SRC) if src.startswith(PREVIEW_SCHEME) else src
            if not lookup or lookup.startswith(DATA_SCHEME):
                continue
            entry = self.find_registry_entry(lookup)
            if entry is None:
                report.missing.append(lookup)
                report.warnings.append(f"Image not registered, reference left unchanged: {lookup}")
                continue

            img["src"] = entry.preview_url
            self._apply_occurrence(img, entry, lookup, tree, counters, report)
            img[ATTR_MANAGED] = "true"
            img[ATTR_ORIGINAL_SRC] = lookup
            report.replaced += 1

        if report.replaced:
            self._notify("success", f"Replaced {report.replaced} image(s) for preview display")
        return report.replaced

    def replace_images_for_export(self, markup: Union[str, Any]) -> str:
        report = PassReport(mode="export")
        self.last_report = report
        if markup is None:
            return markup
        is_text = isinstance(markup, str)
        if not self._registry or (is_text and not markup):
            return markup if is_text else str(markup)

        if is_text:
            try:
                from bs4 import BeautifulSoup  # type: ignore
            except Exception as exc:
                raise RuntimeError(f"beautifulsoup4 not available: {exc}") from exc
            tree = BeautifulSoup(markup, "html.parser")
        else:
            tree = copy.copy(markup)

        counters: Dict[str, int] = {}
        for img in list(tree.find_all("img")):
            src = img.get("src")
            if not src or src.startswith(DATA_SCHEME):
                continue
            lookup = img.get(ATTR_ORIGINAL_SRC) if src.startswith(PREVIEW_SCHEME) else src
            if not lookup:
                continue
            entry = self.find_registry_entry(lookup)
            if entry is None:
                report.missing.append(lookup)
                report.warnings.append(f"Image not registered, reference left unchanged: {lookup}")
                continue

            img["src"] = entry.data_url
            self._apply_occurrence(img, entry, lookup, tree, counters, report)
            for attr in (ATTR_MANAGED, ATTR_ORIGINAL_SRC):
                if attr in img.attrs:
                    del img[attr]
            report.replaced += 1

        if not report.replaced:
            return markup if is_text else str(markup)
        self._notify("success", f"Embedded {report.replaced} image(s) for export")
        return str(tree)

    def _apply_occurrence(
        self,
        img: Any,
        entry: RegistryEntry,
        src: str,
        root: Any,
        counters: Dict[str, int],
        report: PassReport,
    ) -> None:
        key = self._occurrence_key(src, entry.filename)
        occurrence = get_next_occurrence(self.occurrences, counters, key)
        if occurrence is None:
            report.warnings.append(
                f"No \\includegraphics occurrence left for {src!r}; existing attributes kept"
            )
            return
        ordinal = counters.get(key or "", 0)
        self._apply_accessibility(img, occurrence, ordinal, root, report)

    def _apply_accessibility(
        self,
        img: Any,
        occurrence: AnnotationFragment,
        ordinal: int,
        root: Any,
        report: PassReport,
    ) -> None:
        filename = occurrence.filename

        if occurrence.is_decorative:
            img["alt"] = ""
            img["role"] = "presentation"
            return

        current_alt = (img.get("alt") or "").strip()
        replaceable = not current_alt or current_alt.lower() == self.labels["fallback_alt"].lower()

        if occurrence.alt_text:
            img["alt"] = occurrence.alt_text
        elif occurrence.caption_text:
            if replaceable:
                img["alt"] = occurrence.caption_text
                message = f"No @alt annotation found for {filename!r}, using caption text as fallback"
            else:
                message = f"No @alt annotation found for {filename!r}, keeping converter alt text"
            LOG.warning(message)
            report.warnings.append(message)
        else:
            if replaceable:
                img["alt"] = f"{self.labels['generic_alt_prefix']}{filename}"
                message = f"No @alt annotation or caption for {filename!r}, using generic fallback"
            else:
                message = f"No @alt annotation or caption for {filename!r}, keeping converter alt text"
            LOG.warning(message)
            report.warnings.append(message)

        if occurrence.long_description:
            self._inject_long_description(img, occurrence, ordinal, root, report)

    def _inject_long_description(
        self,
        img: Any,
        occurrence: AnnotationFragment,
        ordinal: int,
        root: Any,
        report: PassReport,
    ) -> None:
        desc_id = generate_longdesc_id(occurrence.filename, ordinal)
        img["aria-describedby"] = desc_id
        if root.find(id=desc_id) is not None:
            return

        anchor = img.find_parent("figure") or img
        if anchor.parent is None:
            report.warnings.append(f"Cannot place long description for {occurrence.filename!r}: no parent")
            return

        factory = _new_tag_factory()
        wrapper = factory.new_tag("div", attrs={"id": desc_id, "class": LONGDESC_CLASS, "role": "note"})
        details = factory.new_tag("details", attrs={"class": LONGDESC_DETAILS_CLASS})
        summary = factory.new_tag("summary")
        summary.string = self.labels["longdesc_summary"]
        paragraph = factory.new_tag("p")
        paragraph.string = occurrence.long_description or ""
        details.append(summary)
        details.append(paragraph)
        wrapper.append(details)
        anchor.insert_after(wrapper)
        LOG.debug("Injected long description element #%s", desc_id)
