"""
Pattern table for balance extraction.

Selectors, script probes, marker strings and regular expressions tuned
to the billing portal's page text. They have no principled derivation,
so they are data: shipped defaults here, overridable from the YAML
config under `extraction.patterns`.
"""

import re
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Tuple

# One number, optionally with thousands separators, not glued to other digits.
NUM = r"(?<![\d,.])(\d{1,3}(?:,\d{3})+|\d+)(?!\d)"

# Accepted balance range; anything outside is an unrelated number (price, id).
MIN_BALANCE = 0
MAX_BALANCE = 1_000_000


@dataclass(frozen=True)
class PatternTable:
    """All tunable strings used by the extraction heuristics."""

    # Substrings whose appearance means the rendered page has loaded.
    marker_substrings: Tuple[str, ...] = ("Credit balance", "User Messages")

    # Lower-case label phrases whose neighbourhood holds the balance.
    label_phrases: Tuple[str, ...] = ("credit balance",)

    # JSON key fragments that mark balance-like values in framework data.
    json_key_fragments: Tuple[str, ...] = ("balance", "credit", "amount")

    # Service-specific text patterns, most specific first.
    service_patterns: Tuple[str, ...] = (
        rf"Credit balance:\s*{NUM}\s*User Messages",
        rf"Credit balance:\s*{NUM}",
        rf"{NUM}\s*User Messages",
        rf"balance:\s*{NUM}",
    )

    # Full-text patterns: service labels first, generic last.
    text_patterns: Tuple[str, ...] = (
        rf"{NUM}\s*(?:User\s*Messages?|Credits?|Messages?)",
        rf"Credit\s*balance[:\s]*{NUM}",
        rf"Balance[:\s]*{NUM}",
        rf"{NUM}\s*remaining",
        rf"Available[:\s]*{NUM}",
        rf"{NUM}\s*(?:credits?|units?|tokens?)",
        r"(?<![\d,.])(\d{1,3}(?:,\d{3})+)(?!\d)",
    )

    # Patterns for inline JSON fragments inside <script> bodies.
    script_patterns: Tuple[str, ...] = (
        r'"balance"\s*:\s*"?(\d+)',
        r'"credits?"\s*:\s*"?(\d+)',
        r'"remaining"\s*:\s*"?(\d+)',
        r'"amount"\s*:\s*"?(\d+)',
        r'"value"\s*:\s*"?(\d+)',
    )

    # Patterns for numeric content in raw HTML attributes.
    attribute_patterns: Tuple[str, ...] = (
        rf"""data-balance\s*=\s*["'][^"'\d]*{NUM}""",
        rf"""data-credits?\s*=\s*["'][^"'\d]*{NUM}""",
        rf"""value\s*=\s*["'][^"'\d]*{NUM}""",
        rf"""aria-label\s*=\s*["'][^"'\d]*{NUM}""",
        rf"""title\s*=\s*["'][^"'\d]*{NUM}""",
    )

    # CSS selectors queried on the rendered page (Playwright syntax).
    selectors: Tuple[str, ...] = (
        "span[data-testid='balance']",
        ".balance",
        ".credit-balance",
        "[class*='balance']",
        "[class*='credit']",
        "[data-balance]",
        "[data-credits]",
        "div:has-text('Credit balance')",
        "span:has-text('credit')",
        "*:has-text('remaining')",
        "*:has-text('available')",
    )

    # JavaScript expressions evaluated on the rendered page.
    js_probes: Tuple[str, ...] = (
        "() => window.__NEXT_DATA__?.props?.pageProps?.balance",
        "() => window.__NEXT_DATA__?.props?.pageProps?.credits",
        "() => window.__NEXT_DATA__?.props?.pageProps?.customer?.balance",
        "() => window.balance",
        "() => window.credits",
        "() => window.customerBalance",
        "() => document.querySelector('[data-balance]')?.textContent",
        "() => document.querySelector('[data-credits]')?.textContent",
    )

    # Lower-case substrings that mark a page as the billing portal.
    portal_indicators: Tuple[str, ...] = ("credit", "balance", "orb", "portal")

    def __post_init__(self):
        """Reject regular expressions that do not compile or capture."""
        for name in ("service_patterns", "text_patterns", "script_patterns", "attribute_patterns"):
            for pattern in getattr(self, name):
                try:
                    compiled = re.compile(pattern)
                except re.error as e:
                    raise ValueError(f"Invalid regular expression in {name}: {pattern!r} ({e})")
                if compiled.groups < 1:
                    raise ValueError(f"Pattern in {name} needs a capturing group: {pattern!r}")

    def with_overrides(self, overrides: Dict[str, Any]) -> "PatternTable":
        """Return a copy with the given lists replaced.

        Args:
            overrides: Mapping of field name to a list of strings

        Raises:
            ValueError: On unknown field names or non-string entries
        """
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ValueError(f"Unknown pattern keys: {unknown}")

        changes = {}
        for name, values in overrides.items():
            if not isinstance(values, (list, tuple)) or not all(isinstance(v, str) for v in values):
                raise ValueError(f"'{name}' must be a list of strings")
            changes[name] = tuple(values)
        return replace(self, **changes)


DEFAULT_PATTERNS = PatternTable()
