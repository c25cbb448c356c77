"""
Contact hygiene utilities.

Provides pure functions for:
- Normalizing and validating email addresses
- Normalizing and validating phone numbers

None of these functions perform I/O; they are safe to call from any phase
of a rollup run.
"""

from __future__ import annotations

import re

# Superficial shape check used when scrubbing is enabled
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$", re.IGNORECASE)

# Throwaway mailbox providers that never reach a real person
DISPOSABLE_EMAIL_DOMAINS = frozenset(
    {
        "mailinator.com",
        "guerrillamail.com",
        "10minutemail.com",
        "tempmail.com",
        "trashmail.com",
        "yopmail.com",
    }
)

# E.164 allows at most 15 digits; anything under 10 is not dialable here
MIN_PHONE_DIGITS = 10
MAX_PHONE_DIGITS = 15


def normalize_email(value: str | None) -> str:
    """
    Normalize an email address.

    Trims and lowercases the value. Any value containing an ``@`` is kept,
    however malformed; deliverability is judged by is_deliverable_email().
    Values without an ``@`` are not emails at all and normalize to "".

    Args:
        value: Raw email value from a provider record

    Returns:
        Lowercased, trimmed email, or empty string
    """
    email = str(value or "").strip().lower()
    if "@" not in email:
        return ""
    return email


def is_deliverable_email(value: str | None) -> bool:
    """
    Check whether an email address is plausibly deliverable.

    Stricter than normalize_email(): requires a dotted domain, no
    whitespace, and rejects known disposable mailbox domains.

    Args:
        value: Email address (normalized or raw)

    Returns:
        True if the address passes the syntactic and domain checks
    """
    email = normalize_email(value)
    if not email:
        return False
    if not EMAIL_PATTERN.match(email):
        return False

    domain = email.rsplit("@", 1)[1]
    return domain not in DISPOSABLE_EMAIL_DOMAINS


def normalize_phone(value: str | None) -> str:
    """
    Strip formatting from a phone number.

    Keeps only digits, preserving a leading ``+`` when present.

    Args:
        value: Raw phone value, e.g. "(555) 010-1234" or "+1 555 010 1234"

    Returns:
        Canonical digit string ("5550101234", "+15550101234"), or ""
    """
    raw = str(value or "").strip()
    if not raw:
        return ""

    digits = re.sub(r"\D+", "", raw)
    if not digits:
        return ""

    return f"+{digits}" if raw.startswith("+") else digits


def is_dialable_phone(value: str | None) -> bool:
    """True if the phone number carries between 10 and 15 digits."""
    normalized = normalize_phone(value)
    if not normalized:
        return False
    digits = normalized.lstrip("+")
    return MIN_PHONE_DIGITS <= len(digits) <= MAX_PHONE_DIGITS
