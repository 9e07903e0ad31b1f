"""
import_pipeline.py
Playlist import orchestration: fetch -> parse -> resolve -> filter -> validate -> number
"""

import hashlib
import logging
import re
import threading
from typing import Callable, Iterable, List, Optional, Sequence

import requests

from address_resolver import AddressResolver, DirectoryCache, is_dynamic_address
from channel_filters import apply_filters
from directory_api import PlutoDirectoryAPI
from m3u_parser import infer_category, parse_playlist
from pipeline_config import DEFAULT_USER_AGENT
from pipeline_models import (
    PHASE_COMPLETE,
    PHASE_FETCHING,
    PHASE_FILTERING,
    PHASE_PARSING,
    PHASE_RESOLVING,
    PHASE_VALIDATING,
    ChannelRecord,
    ImportOptions,
    ImportProgress,
    ImportResult,
    ImportStatistics,
    PlaylistEntry,
    ResolvedEntry,
)
from stream_validator import StreamValidator, VerdictCache


NO_ENTRIES_MESSAGE = 'No channels found in playlist'

_GITHUB_BLOB_RE = re.compile(r'github\.com/([^/]+)/([^/]+)/blob/([^/]+)/(.+)')
_GITHUB_TREE_RE = re.compile(r'github\.com/([^/]+)/([^/]+)/tree/([^/]+)/(.+)')
_GITHUB_REPO_RE = re.compile(r'github\.com/([^/]+)/([^/]+?)/?$')


class PlaylistFetchError(Exception):
    """Raised when the playlist cannot be downloaded."""


def convert_github_url(url):
    """Rewrite GitHub page URLs to their raw-content equivalent."""
    if 'raw.githubusercontent.com' in url:
        return url

    match = _GITHUB_BLOB_RE.search(url)
    if match:
        user, repo, branch, path = match.groups()
        return f"https://raw.githubusercontent.com/{user}/{repo}/{branch}/{path}"

    # Directory URL: assume the conventional playlist file name
    match = _GITHUB_TREE_RE.search(url)
    if match:
        user, repo, branch, path = match.groups()
        return f"https://raw.githubusercontent.com/{user}/{repo}/{branch}/{path.rstrip('/')}/playlist.m3u8"

    match = _GITHUB_REPO_RE.search(url)
    if match:
        user, repo = match.groups()
        return f"https://raw.githubusercontent.com/{user}/{repo}/master/playlist.m3u8"

    return url


def fetch_playlist(url, timeout=30, user_agent=None, session=None):
    """Download playlist text, raising PlaylistFetchError on any failure."""
    if not url or not url.lower().startswith(('http://', 'https://')):
        raise PlaylistFetchError(f"Invalid playlist URL: {url!r}")

    http = session or requests
    headers = {'User-Agent': user_agent or DEFAULT_USER_AGENT, 'Accept': '*/*'}
    try:
        response = http.get(url, headers=headers, timeout=timeout)
    except requests.exceptions.RequestException as exc:
        raise PlaylistFetchError(f"Failed to fetch playlist: {exc}") from exc

    if not 200 <= response.status_code < 300:
        raise PlaylistFetchError(f"HTTP {response.status_code}: {response.reason or 'request failed'}")

    return response.text


def build_channel_id(name, address):
    """Stable identifier for a (name, address) pair."""
    digest = hashlib.blake2b(f"{name}\n{address}".encode('utf-8'), digest_size=8).hexdigest()
    return f"imported-{digest}"


def build_channel_records(entries: Sequence[PlaylistEntry], starting_number: int = 400) -> List[ChannelRecord]:
    records = []
    for offset, entry in enumerate(entries):
        records.append(ChannelRecord(
            id=build_channel_id(entry.name, entry.address),
            number=starting_number + offset,
            name=entry.display_name or entry.name,
            address=entry.address,
            category=entry.category or infer_category(entry.group_label),
            logo=entry.logo,
        ))
    return records


def explain_empty_result(stats: ImportStatistics) -> str:
    """Human-readable account of which stages removed the entries."""
    reasons = []
    for label, count in (
        ('country filter', stats.country_filtered),
        ('language filter', stats.language_filtered),
        ('already imported', stats.duplicates),
        ('channel limit', stats.capped),
        ('dead streams', stats.invalid),
    ):
        if count:
            reasons.append(f"{label}: {count}")
    detail = ', '.join(reasons) if reasons else 'no stage reported removals'
    return f"All {stats.total} playlist entries were removed during import ({detail})"


class ImportPipeline:
    """Holds no per-run state, so one instance can serve concurrent runs and share its caches."""

    def __init__(self, validator: Optional[StreamValidator] = None, resolver: Optional[AddressResolver] = None,
                 session=None, fetch_timeout=30, user_agent=None):
        self.validator = validator or StreamValidator()
        self.resolver = resolver
        self.session = session
        self.fetch_timeout = fetch_timeout
        self.user_agent = user_agent

    @classmethod
    def from_config(cls, config, cache: Optional[VerdictCache] = None, session=None, directory_api=None,
                    directory_cache: Optional[DirectoryCache] = None):
        """Wire the stages from config. Pass ``cache`` and ``directory_cache`` to share them across pipelines."""
        resolver_cfg = config.get('resolver') or {}
        fetch_cfg = config.get('fetch') or {}
        directory_api = directory_api or PlutoDirectoryAPI(timeout=resolver_cfg.get('timeout', 15), session=session)
        if directory_cache is None:
            directory_cache = DirectoryCache(ttl_seconds=resolver_cfg.get('directory_ttl_seconds', 1800))
        resolver = AddressResolver(directory_api, directory_cache)
        return cls(
            validator=StreamValidator.from_config(config, cache=cache, session=session),
            resolver=resolver,
            session=session,
            fetch_timeout=fetch_cfg.get('timeout', 30),
            user_agent=fetch_cfg.get('user_agent'),
        )

    def run(
        self,
        url: str,
        existing_addresses: Optional[Iterable[str]] = None,
        options: Optional[ImportOptions] = None,
        progress_callback: Optional[Callable[[ImportProgress], None]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ImportResult:
        """Import one playlist. Always returns a structured result."""
        options = options or ImportOptions()
        stats = ImportStatistics()

        def _progress(phase, current, total, message):
            if not progress_callback:
                return
            try:
                progress_callback(ImportProgress(phase, current, total, message))
            except Exception:
                logging.warning("Progress callback failed", exc_info=True)

        def _cancelled(stage):
            logging.info(f"Import cancelled {stage}")
            return ImportResult(stats=stats, errors=[f"Import cancelled {stage}"], cancelled=True)

        # Phase 1: fetch
        _progress(PHASE_FETCHING, 0, 1, 'Fetching playlist...')
        if cancel_event is not None and cancel_event.is_set():
            return _cancelled('before fetching the playlist')

        fetch_url = convert_github_url(url)
        if fetch_url != url:
            logging.info(f"Rewrote GitHub URL to {fetch_url}")
        try:
            content = fetch_playlist(fetch_url, timeout=self.fetch_timeout,
                                     user_agent=self.user_agent, session=self.session)
        except PlaylistFetchError as exc:
            logging.error(f"Playlist fetch failed: {exc}")
            return ImportResult(stats=stats, errors=[str(exc)])

        # Phase 2: parse
        _progress(PHASE_PARSING, 0, 1, 'Parsing playlist...')
        entries = parse_playlist(content)
        stats.add('total', len(entries))
        logging.info(f"Parsed {len(entries)} playlist entries")
        if not entries:
            return ImportResult(stats=stats, errors=[NO_ENTRIES_MESSAGE])

        # Phase 3: refresh token-based addresses
        dynamic_count = sum(1 for entry in entries if is_dynamic_address(entry.address))
        _progress(PHASE_RESOLVING, 0, dynamic_count, f"Refreshing {dynamic_count} token-based URLs...")
        if cancel_event is not None and cancel_event.is_set():
            return _cancelled('before refreshing stream URLs')

        if self.resolver is not None:
            resolved = self.resolver.resolve_entries(
                entries,
                stats=stats,
                cancel_event=cancel_event,
                progress_callback=lambda done, total: _progress(
                    PHASE_RESOLVING, done, total, f"Refreshing token-based URLs ({done}/{total})..."
                ),
            )
        else:
            resolved = [ResolvedEntry.passthrough(entry) for entry in entries]

        # Phase 4: filter
        _progress(PHASE_FILTERING, 0, len(resolved), 'Applying filters...')
        survivors = apply_filters(
            resolved,
            stats,
            countries=options.filter_countries,
            languages=options.filter_languages,
            existing_addresses=set(existing_addresses or ()),
            skip_duplicates=options.skip_duplicates,
            max_channels=options.max_channels,
        )

        # Phase 5: validate
        errors = []
        verdicts = {}
        cancelled = False
        if options.validate_streams and survivors:
            addresses = [entry.address for entry in survivors]
            unique_total = len(set(addresses))
            _progress(PHASE_VALIDATING, 0, unique_total, 'Validating streams...')

            def _on_validation(progress):
                _progress(
                    PHASE_VALIDATING,
                    progress['checked'],
                    progress['total'],
                    f"Validated {progress['checked']}/{progress['total']} ({progress['valid']} working)",
                )

            verdicts = self.validator.validate(
                addresses,
                progress_callback=_on_validation,
                cancel_event=cancel_event,
                force=options.force_revalidate,
            )
            reachable = sum(1 for verdict in verdicts.values() if verdict.is_reachable)
            stats.add('validated', len(verdicts))
            stats.add('valid', reachable)
            stats.add('invalid', len(verdicts) - reachable)

            if len(verdicts) < unique_total:
                cancelled = True
                errors.append(
                    f"Validation cancelled after {len(verdicts)} of {unique_total} streams; "
                    f"unchecked entries were left out"
                )

            survivors = [
                entry for entry in survivors
                if entry.address in verdicts and verdicts[entry.address].is_reachable
            ]
        elif not options.validate_streams:
            _progress(PHASE_VALIDATING, 0, 0, 'Stream validation disabled')
        else:
            _progress(PHASE_VALIDATING, 0, 0, 'No streams left to validate')

        # Phase 6: assemble
        if not survivors:
            if cancelled:
                _progress(PHASE_COMPLETE, 0, 0, errors[-1])
                return ImportResult(stats=stats, errors=errors, verdicts=verdicts, cancelled=True)
            message = explain_empty_result(stats)
            logging.warning(message)
            _progress(PHASE_COMPLETE, 0, 0, message)
            return ImportResult(stats=stats, errors=errors + [message], verdicts=verdicts,
                                empty_after_filtering=True)

        channels = build_channel_records(survivors, options.starting_number)
        _progress(PHASE_COMPLETE, len(channels), len(channels), 'Import complete!')
        logging.info(
            f"Import complete: {len(channels)} channels "
            f"(parsed {stats.total}, filtered {stats.filtered_total()}, invalid {stats.invalid})"
        )
        return ImportResult(channels=channels, stats=stats, errors=errors, verdicts=verdicts, cancelled=cancelled)


def run_import(
    url,
    config,
    *,
    existing_addresses=None,
    options: Optional[ImportOptions] = None,
    progress_callback=None,
    cancel_event=None,
    cache: Optional[VerdictCache] = None,
):
    """Build a pipeline from ``config`` and run a single import."""
    pipeline = ImportPipeline.from_config(config, cache=cache)
    return pipeline.run(
        url,
        existing_addresses=existing_addresses,
        options=options or ImportOptions.from_config(config),
        progress_callback=progress_callback,
        cancel_event=cancel_event,
    )
