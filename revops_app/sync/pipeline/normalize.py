"""
Normalization helpers shared by source adapters and the identity resolver.
"""

from __future__ import annotations

import re
from typing import Iterable

_EMAIL_REGEX = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_NON_DIGIT = re.compile(r"\D+")
_PLACEHOLDER_TOKENS = {"null", "undefined", "none"}
MAX_EMAIL_LENGTH = 255


def sanitize_string(value: object | None) -> str | None:
    """
    Trim a loosely-typed value into a string, treating placeholders as absent.

    Empty strings, ``"null"``/``"undefined"`` and unrendered ``{{template}}``
    tokens all collapse to ``None``.
    """

    if value is None:
        return None
    token = value.strip() if isinstance(value, str) else str(value).strip()
    if not token:
        return None
    if token.startswith("{{") or token.lower() in _PLACEHOLDER_TOKENS:
        return None
    return token


def is_valid_email(value: str | None) -> bool:
    if not value:
        return False
    return len(value) <= MAX_EMAIL_LENGTH and bool(_EMAIL_REGEX.match(value))


def normalize_email(value: object | None) -> str | None:
    """
    Normalize email for matching.

    - Trim whitespace
    - Lower-case entire address
    - Malformed addresses are treated as absent
    """

    token = sanitize_string(value)
    if token is None:
        return None
    token = token.lower()
    if not is_valid_email(token):
        return None
    return token


def normalize_phone(value: object | None) -> str | None:
    """Strip formatting, keeping a leading ``+`` and the digits."""

    token = sanitize_string(value)
    if token is None:
        return None
    digits = _NON_DIGIT.sub("", token)
    if not digits:
        return None
    return f"+{digits}" if token.startswith("+") else digits


def phone_last10(value: object | None) -> str | None:
    """
    Return the trailing ten digits used for phone matching.

    Numbers that share their last ten digits match even across country codes.
    """

    token = sanitize_string(value)
    if token is None:
        return None
    digits = _NON_DIGIT.sub("", token)
    if len(digits) < 7:
        return None
    return digits[-10:]


def build_full_name(
    full_name: object | None = None,
    first_name: object | None = None,
    last_name: object | None = None,
) -> str | None:
    explicit = sanitize_string(full_name)
    if explicit:
        return explicit
    parts = [part for part in (sanitize_string(first_name), sanitize_string(last_name)) if part]
    return " ".join(parts) or None


def sanitize_tags(tags: Iterable[object] | None) -> list[str]:
    """Clean a tag list, keeping first-seen order and dropping duplicates."""

    if not tags or isinstance(tags, (str, bytes)):
        return []
    cleaned: list[str] = []
    seen: set[str] = set()
    for raw in tags:
        if isinstance(raw, dict):
            raw = raw.get("name")
        tag = sanitize_string(raw)
        if tag is None or tag in seen:
            continue
        seen.add(tag)
        cleaned.append(tag)
    return cleaned


def coerce_optional_bool(value: object | None) -> bool | None:
    if value is None or isinstance(value, bool):
        return value
    token = str(value).strip().lower()
    if token in {"1", "true", "yes", "on"}:
        return True
    if token in {"0", "false", "no", "off"}:
        return False
    return None
