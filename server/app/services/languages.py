"""Language codes accepted by the relay and helpers to resolve them."""
from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import parse_qs

logger = logging.getLogger(__name__)

DEFAULT_LANGUAGE = "ar"

SUPPORTED_LANGUAGES: dict[str, str] = {
    "ar": "ar",
    "en": "en",
    "es": "es",
    "fr": "fr",
    "de": "de",
    "it": "it",
    "pt": "pt",
    "ru": "ru",
    "zh": "zh",
    "ja": "ja",
    "ko": "ko",
}


def resolve_language(value: Optional[str], default: str = DEFAULT_LANGUAGE) -> str:
    """Map a requested language onto a supported code, falling back to ``default``."""
    if not value:
        return default
    return SUPPORTED_LANGUAGES.get(value.strip().lower(), default)


def language_from_query(query_string: Optional[str], default: str = DEFAULT_LANGUAGE) -> str:
    """Resolve the ``lang`` parameter of a raw query string.

    Never raises: an undecodable or otherwise malformed query string resolves
    to ``default``.
    """
    if not query_string:
        return default
    try:
        params = parse_qs(query_string, keep_blank_values=True, errors="strict")
    except (ValueError, TypeError) as exc:
        logger.warning("Error parsing language from query %r: %s", query_string, exc)
        return default
    values = params.get("lang") or []
    return resolve_language(values[0] if values else None, default)
