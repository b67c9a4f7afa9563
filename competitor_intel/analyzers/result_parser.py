"""
Tolerant JSON extraction from AI provider output.

Models frequently wrap their answer in a markdown code fence even when told
not to. The parser tries the raw text first and only then strips a single
leading fence line (with optional language tag) and a trailing fence line.
"""

import json
import re
from typing import Any

from competitor_intel.utils.errors import ParseError
from competitor_intel.utils.logger import get_logger

logger = get_logger(__name__)

_LEADING_FENCE = re.compile(r"^\s*```[A-Za-z0-9_-]*[ \t]*\r?\n?")
_TRAILING_FENCE = re.compile(r"\r?\n?[ \t]*```\s*$")


class ResultParser:
    """Convert raw AI text into a JSON object."""

    def parse(self, raw_text: str) -> dict[str, Any]:
        """
        Parse AI output into a dict.

        Args:
            raw_text: Text returned by the AI provider.

        Returns:
            The decoded JSON object.

        Raises:
            ParseError: "invalid json" when no JSON value can be decoded,
                "not an object" when the decoded value is not a JSON object.
        """
        text = raw_text or ""
        try:
            value = json.loads(text)
        except json.JSONDecodeError:
            stripped = self.strip_fences(text)
            try:
                value = json.loads(stripped)
            except json.JSONDecodeError as e:
                logger.warning(
                    "AI output is not valid JSON",
                    error=str(e),
                    preview=text[:200],
                )
                raise ParseError("invalid json", {"preview": text[:200]}) from e

        if not isinstance(value, dict):
            raise ParseError("not an object", {"type": type(value).__name__})

        return value

    @staticmethod
    def strip_fences(text: str) -> str:
        """Remove one leading ```lang line and one trailing ``` line."""
        text = _LEADING_FENCE.sub("", text, count=1)
        return _TRAILING_FENCE.sub("", text, count=1).strip()
