# =============================================================================
# ai/pii_redactor.py - Personal Information Redaction
# =============================================================================
# Strips personally identifiable information from prompts before they are
# sent to the LLM or written to ai_usage_logs.
#
# Patterns target South African formats:
# - Email addresses
# - Phone numbers (+27 xx xxx xxxx, or 10-digit local 0xxxxxxxxx)
# - 13-digit SA ID numbers
# - 16-digit card numbers (optionally space/dash separated)
#
# Usage:
#   from ai.pii_redactor import redact_pii
#   result = redact_pii("Call me on 0821234567")
#   result.redacted_text   # "Call me on [REDACTED]"
#   result.redaction_count # 1
# =============================================================================

import re
from dataclasses import dataclass
from typing import Any

REDACTED = "[REDACTED]"

# Applied in order; counts accumulate across patterns
PII_PATTERNS: dict[str, re.Pattern] = {
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    "phone": re.compile(r"\+27\s*\d{2}\s*\d{3}\s*\d{4}|\b0\d{9}\b"),
    "id_number": re.compile(r"\b\d{13}\b"),
    "credit_card": re.compile(r"\b\d{4}[\s-]?\d{4}[\s-]?\d{4}[\s-]?\d{4}\b"),
}


@dataclass
class RedactionResult:
    """Redacted text and how many substitutions were made."""
    redacted_text: str
    redaction_count: int


def redact_pii(text: str) -> RedactionResult:
    """
    Replace every PII match with [REDACTED].

    Args:
        text: Raw user text

    Returns:
        RedactionResult with the cleaned text and the number of matches
    """
    if not text:
        return RedactionResult(redacted_text=text or "", redaction_count=0)

    redacted = text
    count = 0
    for pattern in PII_PATTERNS.values():
        redacted, n = pattern.subn(REDACTED, redacted)
        count += n

    return RedactionResult(redacted_text=redacted, redaction_count=count)


def redact_pii_from_object(value: Any) -> Any:
    """
    Recursively redact strings inside dicts and lists.

    Non-string leaves (numbers, booleans, None) are returned unchanged.
    """
    if isinstance(value, str):
        return redact_pii(value).redacted_text
    if isinstance(value, list):
        return [redact_pii_from_object(item) for item in value]
    if isinstance(value, dict):
        return {key: redact_pii_from_object(item) for key, item in value.items()}
    return value


def contains_pii(text: str) -> bool:
    """True if any PII pattern matches."""
    if not text:
        return False
    return any(pattern.search(text) for pattern in PII_PATTERNS.values())
