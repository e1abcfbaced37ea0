"""
Balance parsing heuristics.

Each strategy is a pure function `(html, patterns) -> Optional[int]`.
They run in priority order and the first in-bounds number wins:

1. framework_data - embedded `__NEXT_DATA__` JSON, keys named like a balance
2. label_scan - text next to a known label such as "Credit balance"
3. text_patterns - prioritized regular expressions over the visible text
4. script_json - `"balance": N` fragments inside <script> bodies
5. attributes - data-balance / aria-label / title / value attributes
"""

import json
import logging
import math
import re
from dataclasses import dataclass
from html import unescape
from typing import Any, Callable, List, Optional, Tuple

from .patterns import DEFAULT_PATTERNS, MAX_BALANCE, MIN_BALANCE, PatternTable
from ..core.errors import ExtractionError

log = logging.getLogger(__name__)

Strategy = Callable[[str, PatternTable], Optional[int]]

_SCRIPT_BLOCK_RE = re.compile(r"(?is)<script\b[^>]*>(.*?)</script>")
_NEXT_DATA_RE = re.compile(r"""(?is)<script\b[^>]*id=["']__NEXT_DATA__["'][^>]*>(.*?)</script>""")
_INVISIBLE_RE = re.compile(r"(?is)<(script|style|noscript)\b[^>]*>.*?</\1>")
_TAG_RE = re.compile(r"(?is)<[^>]+>")
_SPACES_RE = re.compile(r"[ \t\r\f\v]+")
_COMMA_NUMBER_RE = re.compile(r"(?<![\d,.])(\d{1,3}(?:,\d{3})+)(?!\d)")
_LONG_NUMBER_RE = re.compile(r"(?<![\d,.])(\d{4,})(?!\d)")

# How many text segments after a label are searched for its number.
_LABEL_LOOKAHEAD = 3


@dataclass(frozen=True)
class StrategyResult:
    """Outcome of one parsing strategy."""
    strategy: str
    value: Optional[int] = None

    @property
    def matched(self) -> bool:
        return self.value is not None


def within_bounds(value: int) -> bool:
    """True if value is a plausible balance."""
    return MIN_BALANCE <= value <= MAX_BALANCE


def parse_number(text: str) -> Optional[int]:
    """Parse '2,666' style integers, rejecting out-of-bounds values."""
    cleaned = text.replace(",", "").strip()
    if not cleaned.isdigit():
        return None
    value = int(cleaned)
    return value if within_bounds(value) else None


def _first_match(patterns: Tuple[str, ...], text: str, flags: int = re.IGNORECASE) -> Optional[int]:
    for pattern in patterns:
        for match in re.finditer(pattern, text, flags):
            value = parse_number(match.group(1))
            if value is not None:
                log.debug("Pattern %r matched %d", pattern, value)
                return value
    return None


def extract_number_from_text(text: str, patterns: PatternTable = DEFAULT_PATTERNS) -> Optional[int]:
    """Best balance-looking number in a short piece of text.

    Tries the service label patterns first, then comma-grouped numbers,
    then bare numbers of four or more digits.

    >>> extract_number_from_text("Credit balance: 2,666 User Messages")
    2666
    """
    if not text:
        return None

    value = _first_match(patterns.service_patterns, text)
    if value is not None:
        return value

    for regex in (_COMMA_NUMBER_RE, _LONG_NUMBER_RE):
        for match in regex.finditer(text):
            value = parse_number(match.group(1))
            if value is not None:
                return value
    return None


def coerce_balance(value: Any, patterns: PatternTable = DEFAULT_PATTERNS) -> Optional[int]:
    """Turn a JSON or JavaScript value into a balance if it looks like one."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, str):
        try:
            value = float(value.replace(",", ""))
        except ValueError:
            return extract_number_from_text(value, patterns)
    if not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    number = int(round(value))
    return number if within_bounds(number) else None


def api_balance(raw: Any, field_name: str) -> int:
    """Balance from a structured API field, truncating any fraction.

    Raises:
        ExtractionError: If the field is missing, not numeric, not finite
            or outside the plausible balance range
    """
    if raw is None or isinstance(raw, bool):
        raise ExtractionError(f"Response has no usable {field_name}")
    try:
        number = float(raw)
    except (TypeError, ValueError, OverflowError) as e:
        raise ExtractionError(f"Unparseable {field_name}: {raw!r}") from e
    if not math.isfinite(number):
        raise ExtractionError(f"Non-finite {field_name}: {raw!r}")
    balance = int(number)
    if not within_bounds(balance):
        raise ExtractionError(f"{field_name} out of range: {balance}")
    return balance


def visible_text(html: str) -> str:
    """Page text without tags, scripts or styles, one segment per line."""
    text = _INVISIBLE_RE.sub("\n", html)
    text = _TAG_RE.sub("\n", text)
    text = unescape(text)
    text = _SPACES_RE.sub(" ", text)
    lines = (line.strip() for line in text.split("\n"))
    return "\n".join(line for line in lines if line)


def search_json_for_balance(node: Any, patterns: PatternTable = DEFAULT_PATTERNS) -> Optional[int]:
    """Depth-first search for a balance-like key with a usable value."""
    if isinstance(node, dict):
        for key, value in node.items():
            key_lower = str(key).lower()
            if any(fragment in key_lower for fragment in patterns.json_key_fragments):
                balance = coerce_balance(value, patterns)
                if balance is not None:
                    log.debug("Found balance in JSON key %r: %d", key, balance)
                    return balance
            balance = search_json_for_balance(value, patterns)
            if balance is not None:
                return balance
    elif isinstance(node, list):
        for item in node:
            balance = search_json_for_balance(item, patterns)
            if balance is not None:
                return balance
    return None


def from_framework_data(html: str, patterns: PatternTable) -> Optional[int]:
    match = _NEXT_DATA_RE.search(html)
    if match:
        raw = match.group(1)
    else:
        start = html.find("__NEXT_DATA__")
        if start < 0:
            return None
        json_start = html.find("{", start)
        json_end = html.find("</script>", json_start)
        if json_start < 0 or json_end < 0:
            return None
        raw = html[json_start:json_end]

    try:
        data = json.loads(raw.strip())
    except ValueError:
        log.debug("Framework data is not valid JSON")
        return None
    return search_json_for_balance(data, patterns)


def from_label_scan(html: str, patterns: PatternTable) -> Optional[int]:
    segments = visible_text(html).split("\n")
    for i, segment in enumerate(segments):
        lowered = segment.lower()
        if not any(label in lowered for label in patterns.label_phrases):
            continue
        for candidate in segments[i:i + 1 + _LABEL_LOOKAHEAD]:
            value = extract_number_from_text(candidate, patterns)
            if value is None:
                value = _first_match((r"(?<![\d,.])(\d{1,3}(?:,\d{3})+|\d+)(?!\d)",), candidate)
            if value is not None:
                return value
    return None


def from_text_patterns(html: str, patterns: PatternTable) -> Optional[int]:
    text = visible_text(html)
    return _first_match(patterns.text_patterns, text)


def from_script_json(html: str, patterns: PatternTable) -> Optional[int]:
    for match in _SCRIPT_BLOCK_RE.finditer(html):
        value = _first_match(patterns.script_patterns, match.group(1))
        if value is not None:
            return value
    return None


def from_attributes(html: str, patterns: PatternTable) -> Optional[int]:
    return _first_match(patterns.attribute_patterns, html)


HTML_STRATEGIES: List[Tuple[str, Strategy]] = [
    ("framework_data", from_framework_data),
    ("label_scan", from_label_scan),
    ("text_patterns", from_text_patterns),
    ("script_json", from_script_json),
    ("attributes", from_attributes),
]


def run_strategies(html: str, patterns: PatternTable = DEFAULT_PATTERNS) -> StrategyResult:
    """Run the HTML strategies in order and return the first match.

    Returns:
        The matching StrategyResult, or an unmatched one named "none"
    """
    if not html:
        return StrategyResult("none")

    if "__NEXT_DATA__" in html and len(html) < 5000:
        log.warning("Received framework loading shell; content may not be rendered yet")

    for name, strategy in HTML_STRATEGIES:
        value = strategy(html, patterns)
        if value is not None:
            log.info("Balance %d found by %s", value, name)
            return StrategyResult(name, value)
        log.debug("Strategy %s found nothing", name)
    return StrategyResult("none")


def parse_balance_from_html(html: str, patterns: PatternTable = DEFAULT_PATTERNS) -> Optional[int]:
    """Balance from an HTML (or text/JSON) document, or None."""
    return run_strategies(html, patterns).value
