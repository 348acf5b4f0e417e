"""Source-side image annotations: parsing, captions and accessibility assessment."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

LOG = logging.getLogger("texexport")

LEVEL_OPTIMAL = "optimal"
LEVEL_GOOD = "good"
LEVEL_FALLBACK = "fallback"
LEVEL_POOR = "poor"
ACCESSIBILITY_LEVELS = (LEVEL_OPTIMAL, LEVEL_GOOD, LEVEL_FALLBACK, LEVEL_POOR)

INCLUDEGRAPHICS_RE = re.compile(r"\\includegraphics\s*(?:\[([^\]]*)\])?\s*\{([^}]+)\}")
CAPTION_RE = re.compile(r"\\caption\s*(?:\[[^\]]*\])?\s*\{((?:[^{}]|\{[^{}]*\})*)\}")
FIGURE_BEGIN = "\\begin{figure}"
FIGURE_END = "\\end{figure}"

DECORATIVE_RE = re.compile(r"^@decorative\s*$", re.IGNORECASE)
ALT_RE = re.compile(r"^@alt:\s*", re.IGNORECASE)
LONGDESC_RE = re.compile(r"^@longdesc:\s*", re.IGNORECASE)
COMMENT_PREFIX_RE = re.compile(r"^%+\s*")
COMMENT_MARK_RE = re.compile(r"(\\*)%")

WARN_DECORATIVE_WITH_ALT = (
    "Image marked as @decorative but also has @alt text. The @alt will be ignored: "
    "remove it or remove @decorative."
)
WARN_ALT_EQUALS_CAPTION = (
    "Alt text is identical to the caption. Alt text should describe the visual content; "
    "the caption labels the figure. Consider rewriting the @alt to describe what the image shows."
)
WARN_CAPTION_FALLBACK = (
    "No @alt annotation found, using caption as alt text fallback. Add a % @alt: annotation "
    "before \\includegraphics to provide a proper visual description separate from the caption."
)
WARN_NO_METADATA = (
    'No alt text, caption, or @decorative annotation found. Screen reader users will hear only "image". '
    "Add a % @alt: annotation before \\includegraphics."
)

# Backward scan states.
SCAN_COLLECTING = "collecting"
SCAN_STOPPED = "stopped"

LINE_BLANK = "blank"
LINE_COMMENT = "comment"
LINE_OTHER = "other"


@dataclass
class AccessibilityStatus:
    level: str
    message: str
    warnings: List[str] = field(default_factory=list)


@dataclass
class ParsedAnnotations:
    alt_text: Optional[str] = None
    is_decorative: bool = False
    long_description: Optional[str] = None


@dataclass
class AnnotationFragment:
    filename: str
    position: int
    options: Optional[str] = None
    alt_text: Optional[str] = None
    is_decorative: bool = False
    long_description: Optional[str] = None
    caption_text: Optional[str] = None
    accessibility_status: AccessibilityStatus = field(
        default_factory=lambda: AccessibilityStatus(level=LEVEL_POOR, message="")
    )

    def to_dict(self) -> Dict[str, object]:
        return {
            "filename": self.filename,
            "position": self.position,
            "options": self.options,
            "alt_text": self.alt_text,
            "is_decorative": self.is_decorative,
            "long_description": self.long_description,
            "caption_text": self.caption_text,
            "level": self.accessibility_status.level,
            "message": self.accessibility_status.message,
            "warnings": list(self.accessibility_status.warnings),
        }


def _classify_line(line: str) -> str:
    stripped = line.strip()
    if not stripped:
        return LINE_BLANK
    if stripped.startswith("%"):
        return LINE_COMMENT
    return LINE_OTHER


def _collect_annotation_lines(source: str, position: int) -> List[str]:
    lines = source[:position].split("\n")
    collected: List[str] = []
    state = SCAN_COLLECTING
    index = len(lines) - 1
    while state == SCAN_COLLECTING and index >= 0:
        kind = _classify_line(lines[index])
        if kind == LINE_OTHER:
            state = SCAN_STOPPED
            continue
        if kind == LINE_COMMENT:
            collected.append(lines[index].strip())
        index -= 1
    collected.reverse()
    return collected


def parse_annotations(source: str, position: int) -> ParsedAnnotations:
    """Read the ``% @...`` directives written above the command at ``position``.

    Lines are consumed backwards while they are blank or comments; the first
    other line ends the scan. ``@longdesc`` parts are joined with one space.
    """
    result = ParsedAnnotations()
    long_parts: List[str] = []

    for line in _collect_annotation_lines(source or "", position):
        content = COMMENT_PREFIX_RE.sub("", line).strip()
        if DECORATIVE_RE.match(content):
            result.is_decorative = True
            LOG.debug("Found @decorative annotation")
        elif ALT_RE.match(content):
            result.alt_text = ALT_RE.sub("", content).strip() or None
            LOG.debug("Found @alt annotation: %r", result.alt_text)
        elif LONGDESC_RE.match(content):
            part = LONGDESC_RE.sub("", content).strip()
            if part:
                long_parts.append(part)

    if long_parts:
        result.long_description = " ".join(long_parts)
        LOG.debug("Found @longdesc annotation (%d line(s))", len(long_parts))
    return result


def _first_caption(text: str) -> Optional[str]:
    match = CAPTION_RE.search(text)
    if match and match.group(1).strip():
        return match.group(1).strip()
    return None


def extract_caption_at_position(source: str, position: int) -> Optional[str]:
    before = source[:position]
    start = before.rfind(FIGURE_BEGIN)
    if start == -1:
        return None

    # A figure closed before our command is not ours.
    if FIGURE_END in source[start:position]:
        return None

    end = source.find(FIGURE_END, position)
    if end == -1:
        return None

    caption = _first_caption(source[start : end + len(FIGURE_END)])
    if caption:
        LOG.debug("Found caption at position %d: %r", position, caption)
    return caption


def extract_caption_for_image(source: str, filename: str) -> Optional[str]:
    """Caption of the first figure containing ``filename`` anywhere in the source."""
    search_from = 0
    while True:
        start = source.find(FIGURE_BEGIN, search_from)
        if start == -1:
            return None
        end = source.find(FIGURE_END, start)
        if end == -1:
            return None
        body = source[start : end + len(FIGURE_END)]
        if filename in body:
            return _first_caption(body)
        search_from = end + len(FIGURE_END)


def assess_accessibility(annotations: ParsedAnnotations, caption_text: Optional[str]) -> AccessibilityStatus:
    warnings: List[str] = []

    if annotations.is_decorative:
        if annotations.alt_text:
            warnings.append(WARN_DECORATIVE_WITH_ALT)
        return AccessibilityStatus(LEVEL_OPTIMAL, 'Decorative image, will use alt=""', warnings)

    if annotations.alt_text:
        if caption_text and annotations.alt_text.lower() == caption_text.lower():
            warnings.append(WARN_ALT_EQUALS_CAPTION)
        if annotations.long_description:
            return AccessibilityStatus(LEVEL_OPTIMAL, "Has alt text and long description", warnings)
        return AccessibilityStatus(LEVEL_GOOD, "Has explicit alt text", warnings)

    if caption_text:
        warnings.append(WARN_CAPTION_FALLBACK)
        return AccessibilityStatus(LEVEL_FALLBACK, "Using caption as alt text fallback", warnings)

    warnings.append(WARN_NO_METADATA)
    return AccessibilityStatus(LEVEL_POOR, "No accessibility metadata", warnings)


def get_effective_alt_text(fragment: AnnotationFragment) -> str:
    if fragment.is_decorative:
        return ""
    if fragment.alt_text:
        return fragment.alt_text
    if fragment.caption_text:
        return fragment.caption_text
    return "image"


def _is_commented_out(source: str, position: int) -> bool:
    line_start = source.rfind("\n", 0, position) + 1
    prefix = source[line_start:position]
    # an even run of backslashes before % leaves it unescaped (\\% is a line break then a comment)
    return any(len(m.group(1)) % 2 == 0 for m in COMMENT_MARK_RE.finditer(prefix))


def detect_image_references(source: Optional[str]) -> List[AnnotationFragment]:
    if not source or not isinstance(source, str):
        return []

    references: List[AnnotationFragment] = []
    for match in INCLUDEGRAPHICS_RE.finditer(source):
        position = match.start()
        if _is_commented_out(source, position):
            continue
        parsed = parse_annotations(source, position)
        caption = extract_caption_at_position(source, position)
        references.append(
            AnnotationFragment(
                filename=match.group(2).strip(),
                position=position,
                options=match.group(1),
                alt_text=parsed.alt_text,
                is_decorative=parsed.is_decorative,
                long_description=parsed.long_description,
                caption_text=caption,
                accessibility_status=assess_accessibility(parsed, caption),
            )
        )

    LOG.debug("Detected %d image reference(s) in source", len(references))
    return references


def build_occurrence_map(fragments: Iterable[AnnotationFragment]) -> Dict[str, List[AnnotationFragment]]:
    occurrences: Dict[str, List[AnnotationFragment]] = {}
    for fragment in fragments:
        occurrences.setdefault(fragment.filename, []).append(fragment)
    return occurrences


def get_next_occurrence(
    occurrences: Dict[str, List[AnnotationFragment]],
    counters: Dict[str, int],
    filename: Optional[str],
) -> Optional[AnnotationFragment]:
    if not filename or filename not in occurrences:
        if filename:
            LOG.warning("No \\includegraphics occurrence recorded for %r", filename)
        return None

    group = occurrences[filename]
    index = counters.get(filename, 0)
    if index >= len(group):
        LOG.warning(
            "More <img> elements than \\includegraphics occurrences for %r (%d annotated)",
            filename,
            len(group),
        )
        return None

    counters[filename] = index + 1
    return group[index]
