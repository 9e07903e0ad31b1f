"""
channel_filters.py
Country / language / duplicate / cap filters for parsed playlist entries.

Every stage is a pure function returning ``(kept, removed_count)``; the
removal count of each stage is attributed to its own statistics counter by
:func:`apply_filters`.
"""

import logging
from typing import Iterable, List, Optional, Sequence, Set, Tuple

from pipeline_models import ImportStatistics, PlaylistEntry


COUNTRY_CODES = {
    'united states': 'US', 'usa': 'US', 'america': 'US', 'us': 'US',
    'united kingdom': 'GB', 'uk': 'GB', 'britain': 'GB', 'england': 'GB',
    'canada': 'CA', 'australia': 'AU', 'germany': 'DE', 'deutschland': 'DE',
    'france': 'FR', 'spain': 'ES', 'españa': 'ES', 'italy': 'IT', 'italia': 'IT',
    'brazil': 'BR', 'brasil': 'BR', 'mexico': 'MX', 'méxico': 'MX',
    'india': 'IN', 'japan': 'JP', 'south korea': 'KR', 'korea': 'KR',
    'china': 'CN', 'russia': 'RU', 'netherlands': 'NL', 'poland': 'PL',
    'turkey': 'TR', 'argentina': 'AR', 'albania': 'AL', 'portugal': 'PT',
    'ireland': 'IE', 'sweden': 'SE', 'norway': 'NO', 'denmark': 'DK',
    'finland': 'FI', 'belgium': 'BE', 'austria': 'AT', 'switzerland': 'CH',
    'greece': 'GR', 'romania': 'RO', 'czech': 'CZ', 'hungary': 'HU',
    'ukraine': 'UA', 'israel': 'IL', 'egypt': 'EG', 'south africa': 'ZA',
    'indonesia': 'ID', 'malaysia': 'MY', 'philippines': 'PH', 'thailand': 'TH',
    'vietnam': 'VN', 'pakistan': 'PK', 'bangladesh': 'BD', 'nigeria': 'NG',
    'kenya': 'KE', 'saudi arabia': 'SA', 'uae': 'AE', 'qatar': 'QA',
}


def normalize_country_code(country: Optional[str]) -> str:
    """Normalize a free-text country tag to a two-letter code."""
    if not country:
        return ''

    trimmed = country.strip().lower()
    if not trimmed:
        return ''

    # Already an ISO code
    if len(trimmed) == 2:
        return trimmed.upper()

    return COUNTRY_CODES.get(trimmed) or country.strip().upper()[:2]


def filter_by_country(entries: Sequence[PlaylistEntry], countries: Optional[Iterable[str]]) -> Tuple[List[PlaylistEntry], int]:
    """Keep entries tagged with one of ``countries``; untagged entries pass."""
    wanted = {c.strip().upper() for c in (countries or []) if c and c.strip()}
    if not wanted:
        return list(entries), 0

    kept = [
        entry for entry in entries
        if not entry.country or normalize_country_code(entry.country) in wanted
    ]
    return kept, len(entries) - len(kept)


def filter_by_language(entries: Sequence[PlaylistEntry], languages: Optional[Iterable[str]]) -> Tuple[List[PlaylistEntry], int]:
    """Keep entries tagged with one of ``languages``; untagged entries pass."""
    wanted = {l.strip().lower() for l in (languages or []) if l and l.strip()}
    if not wanted:
        return list(entries), 0

    kept = [
        entry for entry in entries
        if not entry.language or entry.language.strip().lower() in wanted
    ]
    return kept, len(entries) - len(kept)


def filter_duplicates(entries: Sequence[PlaylistEntry], existing_addresses: Optional[Set[str]]) -> Tuple[List[PlaylistEntry], int]:
    """Drop entries whose address is already known or repeats earlier in the list."""
    seen = set(existing_addresses or ())
    kept = []
    for entry in entries:
        if entry.address in seen:
            continue
        seen.add(entry.address)
        kept.append(entry)
    return kept, len(entries) - len(kept)


def cap_entries(entries: Sequence[PlaylistEntry], max_channels: Optional[int]) -> Tuple[List[PlaylistEntry], int]:
    if not max_channels or max_channels <= 0 or len(entries) <= max_channels:
        return list(entries), 0
    return list(entries[:max_channels]), len(entries) - max_channels


def apply_filters(
    entries: Sequence[PlaylistEntry],
    stats: ImportStatistics,
    *,
    countries=None,
    languages=None,
    existing_addresses=None,
    skip_duplicates: bool = True,
    max_channels: Optional[int] = None,
) -> List[PlaylistEntry]:
    """Run all stages in their fixed order, recording removals in ``stats``."""
    filtered, removed = filter_by_country(entries, countries)
    stats.add('country_filtered', removed)
    if removed:
        logging.info(f"Country filter removed {removed} entries")

    filtered, removed = filter_by_language(filtered, languages)
    stats.add('language_filtered', removed)
    if removed:
        logging.info(f"Language filter removed {removed} entries")

    if skip_duplicates:
        filtered, removed = filter_duplicates(filtered, existing_addresses)
        stats.add('duplicates', removed)
        if removed:
            logging.info(f"Removed {removed} duplicate entries")

    filtered, removed = cap_entries(filtered, max_channels)
    stats.add('capped', removed)
    if removed:
        logging.info(f"Capped import at {max_channels} entries ({removed} dropped)")

    return filtered
