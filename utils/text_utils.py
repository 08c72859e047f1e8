"""
Text utilities for ERP-supplied names and descriptions.

Used for attribute slugs and short product descriptions.
"""

import re
import unicodedata
from typing import Optional

_NON_WORD_RE = re.compile(r"[^\w]+", re.UNICODE)
_TAG_RE = re.compile(r"<[^>]+>")


def slugify_attribute_name(name: Optional[str], max_length: int = 28) -> Optional[str]:
    """
    Normalize an attribute name into a stable slug.

    Handles Cyrillic, accents and punctuation:
    - "Размер" → "размер"
    - "Цвет / Оттенок" → "цвет-оттенок"
    - "  Café Größe " → "cafe-große"

    Args:
        name: Attribute name as sent by the ERP
        max_length: Maximum slug length

    Returns:
        Lowercase hyphenated slug, or None if input is empty
    """
    if not name:
        return None

    name = name.strip()

    if not name:
        return None

    # NFD decomposition separates base chars from accents
    normalized = unicodedata.normalize('NFD', name)

    # Remove accent marks (Unicode category 'Mn'), then recompose
    stripped = ''.join(
        c for c in normalized
        if unicodedata.category(c) != 'Mn'
    )
    stripped = unicodedata.normalize('NFC', stripped)

    slug = _NON_WORD_RE.sub('-', stripped.lower()).replace('_', '-').strip('-')
    slug = re.sub(r'-{2,}', '-', slug)

    if not slug:
        return None

    return slug[:max_length].rstrip('-')


def trim_words(text: Optional[str], limit: int = 30) -> str:
    """
    Strip markup and cut text to a number of words.

    - "<p>Glazed tile</p>" → "Glazed tile"
    - 40 words with limit=30 → first 30 words followed by "…"

    Args:
        text: Raw description
        limit: Maximum number of words kept

    Returns:
        Plain text, empty string for empty input
    """
    if not text:
        return ""

    words = _TAG_RE.sub(' ', text).split()

    if len(words) <= limit:
        return ' '.join(words)

    return ' '.join(words[:limit]) + '…'
