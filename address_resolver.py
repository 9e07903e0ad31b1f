"""Regenerate session-token stream addresses from the provider directory.

Token-based addresses (Pluto TV stitcher URLs) go stale within hours. The
resolver fetches the provider's directory once, keeps it for a fixed TTL,
and swaps each stale address for the directory's current one. Entries that
cannot be matched keep their original address and are flagged unresolved;
validation judges them on their own merits later.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from directory_api import DirectoryConnectionError, DirectoryPayloadError, DirectoryRecord
from pipeline_models import ImportStatistics, PlaylistEntry, ResolvedEntry


DYNAMIC_ADDRESS_MARKERS = (
    "pluto.tv",
    "plutotv",
    "service-stitcher",
    "stitcher-ipv4",
)

DEFAULT_DIRECTORY_TTL_SECONDS = 30 * 60

_CHANNEL_SEGMENT_RE = re.compile(r"/channel/([^/]+)/")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]")


def is_dynamic_address(address: Optional[str]) -> bool:
    if not address:
        return False
    return any(marker in address for marker in DYNAMIC_ADDRESS_MARKERS)


def extract_channel_segment(address: str) -> Optional[str]:
    match = _CHANNEL_SEGMENT_RE.search(address or "")
    return match.group(1) if match else None


def normalize_channel_name(name: Optional[str]) -> str:
    return _NON_ALNUM_RE.sub("", (name or "").lower())


def match_directory_record(entry: PlaylistEntry, records: Sequence[DirectoryRecord]) -> Tuple[Optional[DirectoryRecord], Optional[str]]:
    """Find the directory record for an entry: path segment first, then name."""
    segment = extract_channel_segment(entry.address)
    if segment:
        for record in records:
            if segment in record.id or record.slug == segment:
                return record, "id"

    wanted = normalize_channel_name(entry.name)
    if not wanted:
        return None, None
    for record in records:
        candidate = normalize_channel_name(record.name)
        if not candidate:
            continue
        if candidate == wanted or wanted in candidate or candidate in wanted:
            return record, "name"
    return None, None


class DirectoryCache:
    """Holds the last directory fetch for ``ttl_seconds``."""

    def __init__(self, ttl_seconds: float = DEFAULT_DIRECTORY_TTL_SECONDS, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._records: Optional[List[DirectoryRecord]] = None
        self._fetched_at: Optional[float] = None
        self._lock = threading.Lock()

    def is_valid(self) -> bool:
        with self._lock:
            return self._is_valid_locked()

    def _is_valid_locked(self) -> bool:
        if self._records is None or self._fetched_at is None:
            return False
        return (self.clock() - self._fetched_at) < self.ttl_seconds

    def get_or_fetch(self, fetch: Callable[[], List[DirectoryRecord]]) -> List[DirectoryRecord]:
        with self._lock:
            if self._is_valid_locked():
                logging.debug("Using cached channel directory")
                return self._records
            records = fetch()
            self._records = list(records)
            self._fetched_at = self.clock()
            return self._records

    def clear(self):
        with self._lock:
            self._records = None
            self._fetched_at = None


class AddressResolver:
    def __init__(self, directory_api, cache: Optional[DirectoryCache] = None):
        self.directory_api = directory_api
        self.cache = cache or DirectoryCache()

    def _load_directory(self) -> List[DirectoryRecord]:
        try:
            return self.cache.get_or_fetch(self.directory_api.fetch_channels)
        except (DirectoryConnectionError, DirectoryPayloadError) as exc:
            logging.warning(f"Could not fetch channel directory, leaving addresses untouched: {exc}")
            return []

    def resolve_entries(
        self,
        entries: Sequence[PlaylistEntry],
        stats: Optional[ImportStatistics] = None,
        cancel_event: Optional[threading.Event] = None,
        progress_callback: Optional[Callable[[int, int], None]] = None,
    ) -> List[ResolvedEntry]:
        """Return a :class:`ResolvedEntry` for every input entry, in order."""
        dynamic_count = sum(1 for entry in entries if is_dynamic_address(entry.address))
        if dynamic_count == 0:
            return [ResolvedEntry.passthrough(entry) for entry in entries]

        if cancel_event is not None and cancel_event.is_set():
            logging.info("Resolution skipped: import cancelled")
            return [ResolvedEntry.passthrough(entry) for entry in entries]

        logging.info(f"Found {dynamic_count} token-based entries to refresh")
        records = self._load_directory()

        resolved: List[ResolvedEntry] = []
        refreshed = 0
        attempted = 0
        fresh_by_address: Dict[str, Tuple[Optional[DirectoryRecord], Optional[str]]] = {}

        for entry in entries:
            if not is_dynamic_address(entry.address):
                resolved.append(ResolvedEntry.passthrough(entry))
                continue

            attempted += 1
            key = f"{entry.address}\n{entry.name}"
            if key not in fresh_by_address:
                fresh_by_address[key] = match_directory_record(entry, records) if records else (None, None)
            record, method = fresh_by_address[key]

            if record is None:
                logging.debug(f"Could not match token-based channel: {entry.name}")
                resolved.append(replace(ResolvedEntry.passthrough(entry), resolution_attempted=True))
            else:
                refreshed += 1
                resolved.append(replace(
                    ResolvedEntry.passthrough(entry),
                    address=record.stream_address,
                    resolution_attempted=True,
                    resolution_succeeded=True,
                    match_method=method,
                ))

            if progress_callback:
                progress_callback(attempted, dynamic_count)

        if stats is not None:
            stats.add('resolve_attempted', attempted)
            stats.add('resolved', refreshed)
        logging.info(f"Refreshed {refreshed}/{dynamic_count} token-based URLs")
        return resolved
