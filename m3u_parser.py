#!/usr/bin/env python3
"""M3U playlist parsing and tag helpers."""

import logging
import re
from typing import List, Optional

from channel_filters import normalize_country_code
from pipeline_models import UNKNOWN_CHANNEL_NAME, PlaylistEntry


EXTINF_PREFIX = "#EXTINF:"
HEADER_PREFIX = "#EXTM3U"
ATTR_RE = re.compile(r'([\w\-]+)\s*=\s*"([^"]*)"')

_CATEGORY_KEYWORDS = [
    ('News', ['news']),
    ('Sports', ['sport']),
    ('Movies', ['movie', 'film', 'cinema']),
    ('Music', ['music', 'mtv']),
    ('Kids', ['kid', 'child', 'cartoon', 'disney', 'nick']),
    ('Documentary', ['documentary', 'doc', 'history', 'discovery', 'nat geo']),
    ('Horror', ['horror', 'terror', 'thriller', 'crime']),
    ('Comedy', ['comedy', 'funny']),
    ('Local', ['local', 'usa', 'us ']),
]


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def parse_extinf(line: str) -> dict:
    """Split an #EXTINF line into its attributes and trailing display name.

    The name is whatever follows the first comma after the last quoted
    attribute, so commas inside attribute values never leak into it.
    """
    attrs = {}
    name_search_start = len(EXTINF_PREFIX)
    for match in ATTR_RE.finditer(line):
        attrs[match.group(1).lower()] = match.group(2)
        name_search_start = match.end()

    name = None
    comma = line.find(",", name_search_start)
    if comma != -1:
        name = _clean(line[comma + 1:])

    return {
        'name': name or UNKNOWN_CHANNEL_NAME,
        'tvg_id': _clean(attrs.get('tvg-id')),
        'display_name': _clean(attrs.get('tvg-name')),
        'logo': _clean(attrs.get('tvg-logo')),
        'group_label': _clean(attrs.get('group-title')),
        'country': _clean(attrs.get('tvg-country')),
        'language': _clean(attrs.get('tvg-language')),
        'category': _clean(attrs.get('tvg-category')),
    }


def normalize_address(line: str) -> Optional[str]:
    """Return the usable address for a playlist line, or None."""
    if line.startswith("//"):
        return "https:" + line
    if line.lower().startswith("http"):
        return line
    return None


def parse_playlist(text) -> List[PlaylistEntry]:
    """Parse playlist text into entries, preserving input order.

    Malformed input never raises: metadata without an address line is
    dropped, unknown lines are skipped.
    """
    if text is None:
        return []
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    if not isinstance(text, str):
        return []

    entries = []
    current = None
    dropped = 0

    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith(HEADER_PREFIX):
            continue

        if line.startswith(EXTINF_PREFIX):
            if current is not None:
                dropped += 1
            current = parse_extinf(line)
            continue

        if line.startswith("#"):
            continue

        address = normalize_address(line)
        if address is None:
            continue
        if current is not None:
            entries.append(PlaylistEntry(address=address, **current))
        current = None

    if current is not None:
        dropped += 1
    if dropped:
        logging.debug(f"Dropped {dropped} playlist entries without an address line")

    return entries


def infer_category(group_label: Optional[str]) -> str:
    """Map a free-text group label onto one of the app categories."""
    lower = (group_label or '').lower()
    for category, keywords in _CATEGORY_KEYWORDS:
        if any(keyword in lower for keyword in keywords):
            return category
    return 'Entertainment'


def extract_countries(text) -> List[str]:
    """Distinct normalized country codes tagged in a playlist."""
    countries = set()
    for entry in parse_playlist(text):
        if entry.country:
            code = normalize_country_code(entry.country)
            if code:
                countries.add(code)
    return sorted(countries)


def extract_languages(text) -> List[str]:
    """Distinct lower-cased language codes tagged in a playlist."""
    return sorted({entry.language.lower() for entry in parse_playlist(text) if entry.language})
