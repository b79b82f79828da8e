"""
String normalization utilities for natural-key and duplicate matching.

Provides consistent normalization of names, company names, emails and phone
numbers so that records coming from the local database and the accounting
provider compare equal when they describe the same business entity.
"""

from __future__ import annotations

import re
import unicodedata

# Trailing company designators that carry no identifying information.
# Multi-word suffixes are listed before their single-word tails.
COMPANY_SUFFIXES = (
    "private limited",
    "pte ltd",
    "pvt ltd",
    "sdn bhd",
    "limited",
    "ltd",
    "llp",
    "llc",
    "inc",
    "incorporated",
    "corporation",
    "corp",
    "company",
    "co",
    "plc",
    "gmbh",
    "bhd",
    "berhad",
    "pty",
)

# Word substitutions applied before comparison
WORD_SUBSTITUTIONS = {
    "&": "and",
    "intl": "international",
    "svcs": "services",
    "svc": "services",
    "engg": "engineering",
    "eng": "engineering",
    "mgmt": "management",
    "tech": "technology",
    "constr": "construction",
}

# Minimum digits for a phone number to count as an identifier
MIN_PHONE_LENGTH = 7


def normalize_string(
    value: str | None,
    sort_words: bool = False,
    allow_email_chars: bool = False,
    remove_spaces: bool = True,
    strip_punctuation: bool = True,
) -> str:
    """
    Normalize a string for matching key generation.

    Args:
        value: String to normalize
        sort_words: If True, sort words alphabetically before joining.
        allow_email_chars: If True, preserve "@" and "." for email values.
                          Only applies when strip_punctuation is True.
        remove_spaces: If True, remove all spaces from the result.
                      If False, multiple spaces are collapsed to single space.
        strip_punctuation: If True, remove non-alphanumeric characters.

    Returns:
        Normalized lowercase string with accents removed
    """
    if not value:
        return ""

    # Decompose accents, then drop the combining marks
    normalized = unicodedata.normalize("NFKD", value)
    normalized = "".join(c for c in normalized if not unicodedata.combining(c))
    normalized = normalized.lower()

    if strip_punctuation:
        pattern = r"[^a-z0-9@.\s]" if allow_email_chars else r"[^a-z0-9&\s]"
        normalized = re.sub(pattern, " ", normalized)
        if not allow_email_chars:
            normalized = normalized.replace("&", " & ")

    normalized = re.sub(r"\s+", " ", normalized).strip()

    if sort_words:
        normalized = " ".join(sorted(normalized.split()))
        if remove_spaces:
            normalized = normalized.replace(" ", "")
    elif remove_spaces:
        normalized = normalized.replace(" ", "")

    return normalized


def normalize_company_name(name: str | None) -> str:
    """
    Normalize a company or person name for similarity comparison.

    Removes punctuation, expands common abbreviations and strips one trailing
    company designator, so "Acme Pte. Ltd." and "ACME" compare equal.

    Args:
        name: Raw display name

    Returns:
        Space-separated normalized name (may be empty)
    """
    normalized = normalize_string(name, remove_spaces=False)
    if not normalized:
        return ""

    words = [WORD_SUBSTITUTIONS.get(word, word) for word in normalized.split()]
    joined = " ".join(words)

    for suffix in COMPANY_SUFFIXES:
        if joined == suffix:
            break
        if joined.endswith(" " + suffix):
            joined = joined[: -len(suffix) - 1].strip()
            break

    return joined


def normalize_email(email: str | None) -> str:
    """Normalize an email address for comparison (lowercase, trimmed)."""
    if not email:
        return ""
    return email.strip().lower()


def normalize_phone(phone: str | None) -> str:
    """
    Normalize a phone number to digits only.

    Returns an empty string when fewer than MIN_PHONE_LENGTH digits remain,
    so short or textual values never act as a matching identifier.
    """
    if not phone:
        return ""
    digits = re.sub(r"\D", "", phone)
    if len(digits) < MIN_PHONE_LENGTH:
        return ""
    return digits
