"""Rendered math (MathJax CHTML + assistive MathML) back to LaTeX source."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

LOG = logging.getLogger("texexport")

STATE_SEMANTIC = "semantic"
STATE_HEURISTIC = "heuristic"
STATE_UNRECOVERABLE = "unrecoverable"
STATE_SKIPPED = "skipped"

TEX_ENCODINGS = ("application/x-tex", "TeX", "LaTeX")
ENV_ATTRIBUTES = ("data-math-env", "data-latex-env")
DEFAULT_MATHJAX_URL = "https://cdn.jsdelivr.net/npm/mathjax@3/es5/tex-mml-chtml.js"

ENV_BLOCK_RE = re.compile(r"\\begin\{([^}]+)\}.*?\\end\{\1\}", re.DOTALL)
BEGIN_RE = re.compile(r"\\begin\{([^}]+)\}")
END_RE = re.compile(r"\\end\{([^}]+)\}")
LEFT_RE = re.compile(r"\\left(?![A-Za-z])")
RIGHT_RE = re.compile(r"\\right(?![A-Za-z])")
INVALID_NESTING_RE = re.compile(
    r"\\begin\{equation\}\s*(\\begin\{(align\*?|gather\*?)\}.*?\\end\{\2\})\s*\\end\{equation\}",
    re.DOTALL | re.IGNORECASE,
)

MO_MAP = {
    "\u2062": "",
    "\u2061": "",
    "\u2063": ",",
    "\u2212": "-",
    "\u00d7": "\\times ",
    "\u00b7": "\\cdot ",
    "\u22c5": "\\cdot ",
    "\u00b1": "\\pm ",
    "\u2264": "\\leq ",
    "\u2265": "\\geq ",
    "\u2260": "\\neq ",
    "\u2248": "\\approx ",
    "\u221e": "\\infty ",
    "\u2192": "\\to ",
    "\u2208": "\\in ",
    "\u2205": "\\varnothing ",
    "\u2211": "\\sum ",
    "\u220f": "\\prod ",
    "\u222b": "\\int ",
    "\u2202": "\\partial ",
}
MI_MAP = {
    "\u03b1": "\\alpha ",
    "\u03b2": "\\beta ",
    "\u03b3": "\\gamma ",
    "\u03b4": "\\delta ",
    "\u03b5": "\\epsilon ",
    "\u03b8": "\\theta ",
    "\u03bb": "\\lambda ",
    "\u03bc": "\\mu ",
    "\u03c0": "\\pi ",
    "\u03c3": "\\sigma ",
    "\u03c6": "\\phi ",
    "\u03c9": "\\omega ",
    "\u0394": "\\Delta ",
    "\u03a3": "\\Sigma ",
    "\u03a9": "\\Omega ",
}
FUNCTION_NAMES = {"sin", "cos", "tan", "log", "ln", "exp", "lim", "max", "min", "det"}


@dataclass
class MathConversionResult:
    markup: str
    semantic: int = 0
    heuristic: int = 0
    unrecoverable: int = 0
    skipped: int = 0
    residue_removed: int = 0
    warnings: List[str] = field(default_factory=list)

    @property
    def converted(self) -> int:
        return self.semantic + self.heuristic


def validate_latex_formula(formula: str) -> bool:
    if not formula or not formula.strip():
        return False
    text = formula.strip()
    if "undefined" in text or text == "null":
        return False

    unescaped = text.replace("\\\\", "").replace("\\{", "").replace("\\}", "")
    depth = 0
    for char in unescaped:
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth < 0:
                return False
    if depth != 0:
        return False

    if len(LEFT_RE.findall(text)) != len(RIGHT_RE.findall(text)):
        return False

    stack: List[str] = []
    tokens = sorted(
        [(m.start(), "begin", m.group(1)) for m in BEGIN_RE.finditer(text)]
        + [(m.start(), "end", m.group(1)) for m in END_RE.finditer(text)]
    )
    for _, kind, name in tokens:
        if kind == "begin":
            stack.append(name)
        elif not stack or stack.pop() != name:
            return False
    return not stack


def _needs_multiline_environment(latex: str) -> Tuple[bool, bool]:
    outside = ENV_BLOCK_RE.sub("", latex)
    has_alignment = "&" in outside
    has_breaks = "\\\\" in outside
    return has_alignment, has_breaks


def _is_single_environment(latex: str) -> bool:
    """True when one \\begin{X}...\\end{X} block spans the whole text."""
    text = latex.strip()
    tokens = sorted(
        [(m.start(), m.end(), 1) for m in BEGIN_RE.finditer(text)]
        + [(m.start(), m.end(), -1) for m in END_RE.finditer(text)]
    )
    if not tokens or tokens[0][0] != 0 or tokens[0][2] != 1:
        return False
    depth = 0
    for _, end, step in tokens:
        depth += step
        if depth == 0:
            return end == len(text)
    return False


def wrap_expression(latex: str, is_display: bool, env: Optional[str] = None, heuristic: bool = False) -> str:
    if env:
        return f"\\begin{{{env}}}\n{latex}\n\\end{{{env}}}"
    if is_display and _is_single_environment(latex):
        return latex.strip()
    if heuristic:
        has_alignment, has_breaks = _needs_multiline_environment(latex)
        if has_alignment and has_breaks:
            LOG.warning("No environment data found, defaulting to align* (heuristic)")
            return f"\\begin{{align*}}\n{latex}\n\\end{{align*}}"
        if has_breaks:
            LOG.warning("No environment data found, defaulting to gather* (heuristic)")
            return f"\\begin{{gather*}}\n{latex}\n\\end{{gather*}}"
    if is_display:
        return f"\\[{latex}\\]"
    return f"\\({latex}\\)"


def _math_element(container: Any) -> Any:
    assistive = container.find("mjx-assistive-mml")
    scope = assistive if assistive is not None else container
    return scope.find("math")


def extract_annotation(container: Any) -> Optional[str]:
    math = _math_element(container)
    if math is None:
        return None
    annotations = math.find_all("annotation")
    for encoding in TEX_ENCODINGS:
        for annotation in annotations:
            if annotation.get("encoding") == encoding:
                text = annotation.get_text().strip()
                if text:
                    return text
    return None


def _is_display(container: Any) -> bool:
    if str(container.get("display") or "").lower() in {"true", "block"}:
        return True
    span = container.find_parent("span", class_="math")
    return bool(span is not None and "display" in (span.get("class") or []))


def _stored_environment(container: Any) -> Optional[str]:
    for element in (container, container.parent):
        if element is None or not hasattr(element, "get"):
            continue
        for attr in ENV_ATTRIBUTES:
            value = element.get(attr)
            if not value:
                continue
            value = str(value).strip()
            if value and not value.startswith(("{", "[")):
                return value
            LOG.warning("Invalid environment attribute value: %r", value)
    return None


def _children(element: Any) -> List[Any]:
    return element.find_all(recursive=False)


def _mathml_node_to_latex(element: Any) -> str:
    name = (element.name or "").lower()
    kids = _children(element)
    text = element.get_text().strip()

    def part(index: int) -> str:
        return _mathml_node_to_latex(kids[index]) if index < len(kids) else ""

    if name in {"math", "mrow", "mstyle", "mpadded", "mphantom", "menclose"}:
        return "".join(_mathml_node_to_latex(kid) for kid in kids)
    if name == "semantics":
        return part(0)
    if name in {"annotation", "annotation-xml"}:
        return ""
    if name == "mi":
        if text in FUNCTION_NAMES:
            return f"\\{text} "
        return MI_MAP.get(text, text)
    if name == "mn":
        return text
    if name == "mo":
        return MO_MAP.get(text, text)
    if name == "msup":
        return f"{{{part(0)}}}^{{{part(1)}}}"
    if name == "msub":
        return f"{{{part(0)}}}_{{{part(1)}}}"
    if name == "msubsup":
        return f"{{{part(0)}}}_{{{part(1)}}}^{{{part(2)}}}"
    if name == "munder":
        return f"{part(0)}_{{{part(1)}}}"
    if name == "mover":
        return f"{part(0)}^{{{part(1)}}}"
    if name == "munderover":
        return f"{part(0)}_{{{part(1)}}}^{{{part(2)}}}"
    if name == "mfrac":
        return f"\\frac{{{part(0)}}}{{{part(1)}}}"
    if name == "msqrt":
        return "\\sqrt{" + "".join(_mathml_node_to_latex(kid) for kid in kids) + "}"
    if name == "mroot":
        return f"\\sqrt[{part(1)}]{{{part(0)}}}"
    if name == "mtext":
        return f"\\text{{{text}}}"
    if name == "mspace":
        return " "
    if name == "mtable":
        rows = []
        for row in kids:
            cells = [_mathml_node_to_latex(cell) for cell in _children(row)]
            rows.append(" & ".join(cells))
        return "\\begin{matrix}" + " \\\\ ".join(rows) + "\\end{matrix}"
    if name in {"mtr", "mtd", "mlabeledtr"}:
        return "".join(_mathml_node_to_latex(kid) for kid in kids)

    LOG.warning("Unhandled MathML element: %s", name)
    return text


def mathml_to_latex(math: Any) -> str:
    return re.sub(r"\s+", " ", _mathml_node_to_latex(math)).strip()


def flatten_text(container: Any) -> str:
    math = _math_element(container)
    source = math if math is not None else container
    return " ".join(source.get_text(" ").split())


def _heuristic_extract(container: Any) -> str:
    math = _math_element(container)
    if math is not None:
        structural = mathml_to_latex(math)
        if structural:
            return structural
    return flatten_text(container)


def strip_typesetting_residue(soup: Any) -> int:
    removed = 0
    for tag in list(soup.find_all(["script", "style"])):
        attrs = " ".join(f"{key}={value}" for key, value in tag.attrs.items()).lower()
        if "mathjax" in attrs or "mjx" in attrs:
            tag.decompose()
            removed += 1
    return removed


def clean_invalid_nesting(text: str) -> str:
    cleaned = INVALID_NESTING_RE.sub(r"\1", text)
    if cleaned != text:
        LOG.info("Removed equation wrappers around multi-line environments")
    return cleaned


def _should_skip(container: Any) -> bool:
    if container.has_attr("data-tikz-math"):
        return True
    return container.find_parent(attrs={"data-skip-latex-export": "true"}) is not None


def _convert_container(container: Any, index: int, result: MathConversionResult) -> str:
    annotation = extract_annotation(container)
    if annotation is not None and validate_latex_formula(annotation):
        replacement = wrap_expression(annotation, _is_display(container), _stored_environment(container))
        container.replace_with(replacement)
        return STATE_SEMANTIC
    if annotation is not None:
        message = f"Expression {index}: semantic annotation failed validation, using heuristic extraction"
        LOG.warning(message)
        result.warnings.append(message)

    try:
        extracted = _heuristic_extract(container)
    except Exception as exc:
        message = f"Expression {index}: extraction failed ({exc}), original markup kept"
        LOG.warning(message)
        result.warnings.append(message)
        return STATE_UNRECOVERABLE

    if not extracted:
        message = f"Expression {index}: no recoverable LaTeX, original markup kept"
        LOG.warning(message)
        result.warnings.append(message)
        return STATE_UNRECOVERABLE

    replacement = wrap_expression(
        extracted, _is_display(container), _stored_environment(container), heuristic=True
    )
    container.replace_with(replacement)
    message = f"Expression {index}: no semantic annotation, heuristic reconstruction may be lossy: {extracted[:60]}"
    LOG.warning(message)
    result.warnings.append(message)
    return STATE_HEURISTIC


def convert_rendered_math(markup: str) -> MathConversionResult:
    if not markup:
        return MathConversionResult(markup=markup or "")

    try:
        from bs4 import BeautifulSoup  # type: ignore
    except Exception as exc:
        raise RuntimeError(f"beautifulsoup4 not available: {exc}") from exc

    soup = BeautifulSoup(markup, "html.parser")
    result = MathConversionResult(markup=markup)
    containers = list(soup.find_all("mjx-container"))
    LOG.info("Converting %d rendered expression(s) back to LaTeX", len(containers))

    for index, container in enumerate(containers, start=1):
        if _should_skip(container):
            LOG.debug("Skipping preserved expression at index %d", index)
            state = STATE_SKIPPED
        else:
            state = _convert_container(container, index, result)
        if state == STATE_SKIPPED:
            result.skipped += 1
        elif state == STATE_SEMANTIC:
            result.semantic += 1
        elif state == STATE_HEURISTIC:
            result.heuristic += 1
        else:
            result.unrecoverable += 1

    result.residue_removed = strip_typesetting_residue(soup)
    if result.converted or result.residue_removed:
        result.markup = clean_invalid_nesting(str(soup))

    LOG.info(
        "Converted %d expression(s) (%d semantic, %d heuristic, %d unrecoverable)",
        result.converted,
        result.semantic,
        result.heuristic,
        result.unrecoverable,
    )
    return result


def convert_rendered_math_to_source(markup: str) -> str:
    return convert_rendered_math(markup).markup


def inject_typesetting_loader(markup: str, url: str = DEFAULT_MATHJAX_URL) -> str:
    try:
        from bs4 import BeautifulSoup  # type: ignore
    except Exception as exc:
        raise RuntimeError(f"beautifulsoup4 not available: {exc}") from exc

    soup = BeautifulSoup(markup or "", "html.parser")
    script = soup.new_tag("script", attrs={"id": "MathJax-script", "src": url})
    script["async"] = ""
    if soup.head is not None:
        soup.head.append(script)
    elif soup.html is not None:
        head = soup.new_tag("head")
        head.append(script)
        soup.html.insert(0, head)
    else:
        soup.insert(0, script)
    return str(soup)
