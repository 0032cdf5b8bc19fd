# =============================================================================
# tests/test_pii_redactor.py - PII Redaction Tests
# =============================================================================
# Run with: pytest tests/test_pii_redactor.py -v
# =============================================================================

from ai.pii_redactor import REDACTED, contains_pii, redact_pii, redact_pii_from_object


class TestRedactPii:
    """Tests for redact_pii."""

    def test_redacts_email(self):
        """Email addresses are replaced."""
        result = redact_pii("Contact thandi.mokoena@example.co.za about the trip")

        assert result.redacted_text == f"Contact {REDACTED} about the trip"
        assert result.redaction_count == 1

    def test_redacts_local_phone_number(self):
        """10-digit local numbers starting with 0 are replaced."""
        result = redact_pii("Call me on 0821234567")

        assert result.redacted_text == f"Call me on {REDACTED}"
        assert result.redaction_count == 1

    def test_redacts_international_phone_number(self):
        """+27 numbers with spaces are replaced."""
        result = redact_pii("WhatsApp +27 82 123 4567 please")

        assert REDACTED in result.redacted_text
        assert "4567" not in result.redacted_text

    def test_redacts_sa_id_number(self):
        """13-digit SA ID numbers are replaced."""
        result = redact_pii("ID: 8001015009087")

        assert result.redacted_text == f"ID: {REDACTED}"

    def test_redacts_card_number(self):
        """Separated 16-digit card numbers are replaced."""
        result = redact_pii("Card 4111 1111 1111 1111 expires soon")

        assert result.redacted_text == f"Card {REDACTED} expires soon"

    def test_counts_across_patterns(self):
        """Counts accumulate across all pattern types."""
        result = redact_pii("a@b.com, 0821234567 and 8001015009087")

        assert result.redaction_count == 3

    def test_clean_text_unchanged(self):
        """Text without PII is returned as-is."""
        result = redact_pii("Plan a lesson about shapes for Grade R")

        assert result.redacted_text == "Plan a lesson about shapes for Grade R"
        assert result.redaction_count == 0

    def test_empty_text(self):
        """Empty input gives an empty result."""
        result = redact_pii("")

        assert result.redacted_text == ""
        assert result.redaction_count == 0


class TestRedactPiiFromObject:
    """Tests for recursive redaction."""

    def test_nested_structures(self):
        """Strings in nested dicts and lists are redacted; other leaves kept."""
        value = {
            "parent": {"email": "mom@home.co.za", "age": 34},
            "notes": ["call 0821234567", None, True],
        }

        result = redact_pii_from_object(value)

        assert result["parent"]["email"] == REDACTED
        assert result["parent"]["age"] == 34
        assert result["notes"] == [f"call {REDACTED}", None, True]


class TestContainsPii:
    """Tests for contains_pii."""

    def test_detects_pii(self):
        """Returns True when any pattern matches."""
        assert contains_pii("my email is x@y.org") is True

    def test_no_pii(self):
        """Returns False for clean or empty text."""
        assert contains_pii("hello class") is False
        assert contains_pii("") is False
