"""
Numeric coercion for values returned by document readers.

Readers emit numbers as JSON numbers, as strings copied out of a sheet
("$1,234.56", "(500)", "1.2M", "85%") or as nulls. Everything is reduced
to a float or None here before the normalizer sees it.
"""
import math
import re
from dataclasses import dataclass
from typing import Any, Optional

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class ParsedNumber:
    """Result of parsing a raw numeric value."""

    value: Optional[float]
    raw_value: Any
    is_negative: bool = False
    unit_multiplier: int = 1
    is_percentage: bool = False


class NumericParser:
    """
    Parser for financial numeric values.

    Handles:
    - Standard numbers: 1234, 1,234.56
    - Currency symbols: $, €, £
    - Negative notation: parentheses (123) or minus sign -123
    - Unit suffixes: K, M, MM, B
    - Percentages: 85% -> 0.85
    """

    CURRENCY_SYMBOLS = ["$", "€", "£", "USD", "EUR", "GBP"]

    UNIT_MULTIPLIERS = {
        "K": 1_000,
        "k": 1_000,
        "M": 1_000_000,
        "m": 1_000_000,
        "MM": 1_000_000,
        "B": 1_000_000_000,
        "b": 1_000_000_000,
        "BN": 1_000_000_000,
    }

    PARENTHESES_PATTERN = re.compile(r"^\s*\(([^)]+)\)\s*$")
    UNIT_PATTERN = re.compile(r"(MM|BN|[KkMmBb])\s*$")
    PERCENTAGE_PATTERN = re.compile(r"%\s*$")
    CLEAN_NUMBER_PATTERN = re.compile(r"^\d+(?:\.\d+)?$")

    def parse(self, raw: Any) -> ParsedNumber:
        """Parse a raw value into a float, or None when it is not numeric."""
        if raw is None or isinstance(raw, bool):
            return ParsedNumber(value=None, raw_value=raw)

        if isinstance(raw, (int, float)):
            value = float(raw)
            if math.isnan(value) or math.isinf(value):
                return ParsedNumber(value=None, raw_value=raw)
            return ParsedNumber(value=value, raw_value=raw, is_negative=value < 0)

        if not isinstance(raw, str) or not raw.strip():
            return ParsedNumber(value=None, raw_value=raw)

        text = raw.strip()

        is_negative = False
        paren_match = self.PARENTHESES_PATTERN.match(text)
        if paren_match:
            text = paren_match.group(1).strip()
            is_negative = True

        if text.startswith("-"):
            is_negative = True
            text = text[1:].strip()
        elif text.startswith("+"):
            text = text[1:].strip()

        for symbol in self.CURRENCY_SYMBOLS:
            if text.startswith(symbol):
                text = text[len(symbol):].strip()
                break

        is_percentage = False
        if self.PERCENTAGE_PATTERN.search(text):
            is_percentage = True
            text = self.PERCENTAGE_PATTERN.sub("", text).strip()

        unit_multiplier = 1
        unit_match = self.UNIT_PATTERN.search(text)
        if unit_match:
            unit_multiplier = self.UNIT_MULTIPLIERS.get(unit_match.group(1), 1)
            text = self.UNIT_PATTERN.sub("", text).strip()

        # US thousand separators only
        text = text.replace(",", "").replace(" ", "")
        if not self.CLEAN_NUMBER_PATTERN.match(text):
            logger.debug("Unparseable numeric value", raw_value=raw)
            return ParsedNumber(value=None, raw_value=raw)

        value = float(text) * unit_multiplier
        if is_percentage:
            value = value / 100
        if is_negative:
            value = -value

        return ParsedNumber(
            value=value,
            raw_value=raw,
            is_negative=is_negative,
            unit_multiplier=unit_multiplier,
            is_percentage=is_percentage,
        )


_parser = NumericParser()


def coerce_number(raw: Any) -> Optional[float]:
    """Coerce a raw reader value to float, None when absent or unparseable."""
    return _parser.parse(raw).value
