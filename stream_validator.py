"""
stream_validator.py
Bounded-concurrency reachability checks for stream addresses.

Verdicts are keyed by address and kept in a :class:`VerdictCache` that the
caller owns and passes in, so one cache can serve many import runs.
Ambiguous probe outcomes resolve to "assume alive"; only a gone status,
a refused connection, a failed DNS lookup or a body without manifest
markers marks a stream dead.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence

import requests

from pipeline_config import DEFAULT_USER_AGENT
from pipeline_models import (
    CONFIRMED_DEAD,
    CONFIRMED_LIVE,
    INCONCLUSIVE_ASSUMED_LIVE,
    ChannelRecord,
    ValidationVerdict,
)


DEFAULT_TIMEOUT_SECONDS = 8
DEFAULT_BATCH_SIZE = 10
DEFAULT_BATCH_DELAY_SECONDS = 0.05
DEFAULT_CACHE_TTL_SECONDS = 60 * 60
DEFAULT_MAX_BODY_BYTES = 64 * 1024
READ_CHUNK_BYTES = 1024

# CDNs and providers that are reliable but expensive or impossible to probe.
TRUSTED_PATTERNS = (
    'pluto.tv',
    'plutotv',
    'service-stitcher',
    'stitcher-ipv4',
    'samsung.wurl.com',
    'plex.wurl.com',
    'amagi.tv',
    'akamaized.net',
    'akamaihd.net',
    'tubi.io',
    'vustreams.com',
)

# The only error texts that prove a stream is gone (DNS failure / refused).
DEAD_ERROR_MARKERS = (
    'ERR_CONNECTION_REFUSED',
    'ERR_NAME_NOT_RESOLVED',
    'ENOTFOUND',
    'ECONNREFUSED',
    'Connection refused',
    'Name or service not known',
    'nodename nor servname',
    'getaddrinfo failed',
    'Failed to resolve',
    'NameResolutionError',
)

MANIFEST_MARKERS = ('#EXTM3U', '#EXT-X-')
GONE_STATUS_CODES = (404, 410)


def is_trusted_address(address: Optional[str]) -> bool:
    if not address:
        return False
    return any(pattern in address for pattern in TRUSTED_PATTERNS)


def is_definitely_dead_error(message: Optional[str]) -> bool:
    if not message:
        return False
    return any(marker in message for marker in DEAD_ERROR_MARKERS)


def _is_fresh(verdict: ValidationVerdict, now: float, ttl_seconds: float) -> bool:
    return (now - verdict.checked_at) < ttl_seconds


class VerdictCache:
    """Thread-safe address -> verdict map with read-time TTL expiry.

    Entries are only ever inserted or overwritten; a stale entry stays in the
    map but reads treat it as absent.
    """

    def __init__(self, ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._verdicts: Dict[str, ValidationVerdict] = {}
        self._lock = threading.Lock()

    def get(self, address: str) -> Optional[ValidationVerdict]:
        with self._lock:
            verdict = self._verdicts.get(address)
        if verdict is None or not _is_fresh(verdict, self.clock(), self.ttl_seconds):
            return None
        return verdict

    def put(self, verdict: ValidationVerdict):
        with self._lock:
            self._verdicts[verdict.address] = verdict

    def clear(self):
        with self._lock:
            self._verdicts.clear()

    def fresh_verdicts(self) -> List[ValidationVerdict]:
        now = self.clock()
        with self._lock:
            verdicts = list(self._verdicts.values())
        return [v for v in verdicts if _is_fresh(v, now, self.ttl_seconds)]

    def __len__(self):
        with self._lock:
            return len(self._verdicts)

    def save(self, path) -> int:
        """Mirror fresh verdicts to a JSON file. Returns the number written."""
        verdicts = self.fresh_verdicts()
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as handle:
            json.dump([v.to_dict() for v in verdicts], handle, indent=2)
        return len(verdicts)

    def load(self, path) -> int:
        """Load verdicts saved by :meth:`save`, skipping stale or malformed ones."""
        path = Path(path)
        if not path.exists():
            return 0
        try:
            with path.open('r', encoding='utf-8') as handle:
                payload = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            logging.warning(f"Could not read validation cache {path}: {exc}")
            return 0
        if not isinstance(payload, list):
            logging.warning(f"Validation cache {path} is not a list; ignoring")
            return 0

        now = self.clock()
        loaded = 0
        for item in payload:
            try:
                verdict = ValidationVerdict.from_dict(item)
            except (AttributeError, KeyError, TypeError, ValueError):
                logging.debug("Skipping malformed cached verdict", exc_info=True)
                continue
            if not _is_fresh(verdict, now, self.ttl_seconds):
                continue
            self.put(verdict)
            loaded += 1
        return loaded


def _has_manifest_marker(body: bytes) -> bool:
    return any(marker.encode('ascii') in body for marker in MANIFEST_MARKERS)


def _read_head(response, max_bytes: int, deadline: float):
    """Read the start of the body on a helper thread, waiting until ``deadline``.

    Returns ``(text, finished)``. The helper stops at the first manifest
    marker or after ``max_bytes`` and always closes ``response``; when the
    deadline passes first, the bytes read so far are returned and the helper
    is told to stop after its current chunk.
    """
    state = {'body': b'', 'error': None}
    done = threading.Event()
    stop = threading.Event()

    def _reader():
        try:
            for chunk in response.iter_content(chunk_size=READ_CHUNK_BYTES):
                if chunk:
                    state['body'] += chunk
                if stop.is_set() or len(state['body']) >= max_bytes or _has_manifest_marker(state['body']):
                    break
        except requests.exceptions.RequestException as exc:
            state['error'] = exc
        finally:
            response.close()
            done.set()

    threading.Thread(target=_reader, name='stream-body-reader', daemon=True).start()
    finished = done.wait(max(0.0, deadline - time.monotonic()))
    stop.set()

    if finished and state['error'] is not None:
        raise state['error']
    return state['body'][:max_bytes].decode('utf-8', errors='ignore'), finished


def probe_address(
    address: str,
    session,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    require_manifest_markers: bool = True,
    max_body_bytes: int = DEFAULT_MAX_BODY_BYTES,
    clock: Callable[[], float] = time.time,
) -> ValidationVerdict:
    """Issue one timed GET and classify the outcome."""
    checked_at = clock()
    started = time.monotonic()

    def _elapsed_ms():
        return round((time.monotonic() - started) * 1000, 1)

    response = None
    try:
        response = session.get(
            address,
            headers={'Accept': '*/*', 'User-Agent': DEFAULT_USER_AGENT},
            timeout=timeout,
            stream=True,
            allow_redirects=True,
        )
        status = response.status_code

        if status in GONE_STATUS_CODES:
            return ValidationVerdict(address, False, CONFIRMED_DEAD, checked_at,
                                     latency_ms=_elapsed_ms(), error_detail=f"HTTP {status}")
        if not 200 <= status < 300:
            # Many working streams answer probes with odd status codes
            return ValidationVerdict(address, True, INCONCLUSIVE_ASSUMED_LIVE, checked_at,
                                     latency_ms=_elapsed_ms(), error_detail=f"HTTP {status}")

        # The body reader owns the response from here on
        body_response, response = response, None
        body, finished = _read_head(body_response, max_body_bytes, started + timeout)
        latency = _elapsed_ms()
        if any(marker in body for marker in MANIFEST_MARKERS):
            return ValidationVerdict(address, True, CONFIRMED_LIVE, checked_at, latency_ms=latency)
        if not finished:
            return ValidationVerdict(address, True, INCONCLUSIVE_ASSUMED_LIVE, checked_at,
                                     latency_ms=latency,
                                     error_detail=f"Timed out reading response body after {timeout}s")
        if require_manifest_markers:
            return ValidationVerdict(address, False, CONFIRMED_DEAD, checked_at,
                                     latency_ms=latency, error_detail='Not valid M3U8')
        return ValidationVerdict(address, True, INCONCLUSIVE_ASSUMED_LIVE, checked_at,
                                 latency_ms=latency, error_detail='No manifest markers')

    except requests.exceptions.RequestException as exc:
        message = f"{type(exc).__name__}: {exc}"
        if is_definitely_dead_error(message):
            return ValidationVerdict(address, False, CONFIRMED_DEAD, checked_at,
                                     latency_ms=_elapsed_ms(), error_detail=message)
        logging.debug(f"Ambiguous probe failure for {address}: {message}")
        return ValidationVerdict(address, True, INCONCLUSIVE_ASSUMED_LIVE, checked_at,
                                 latency_ms=_elapsed_ms(), error_detail=message)
    finally:
        if response is not None:
            response.close()


class StreamValidator:
    """Validate addresses in fixed-size batches against a shared cache."""

    def __init__(
        self,
        cache: Optional[VerdictCache] = None,
        session=None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        batch_delay: float = DEFAULT_BATCH_DELAY_SECONDS,
        require_manifest_markers: bool = True,
        max_body_bytes: int = DEFAULT_MAX_BODY_BYTES,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.cache = cache if cache is not None else VerdictCache()
        self.session = session or requests.Session()
        self.batch_size = max(1, int(batch_size))
        self.timeout = timeout
        self.batch_delay = batch_delay
        self.require_manifest_markers = require_manifest_markers
        self.max_body_bytes = max_body_bytes
        self.sleep = sleep

    @classmethod
    def from_config(cls, config, cache: Optional[VerdictCache] = None, session=None) -> "StreamValidator":
        section = config.get('validation') or {}
        if cache is None:
            cache = VerdictCache(ttl_seconds=section.get('cache_ttl_seconds', DEFAULT_CACHE_TTL_SECONDS))
        return cls(
            cache=cache,
            session=session,
            batch_size=section.get('batch_size', DEFAULT_BATCH_SIZE),
            timeout=section.get('timeout', DEFAULT_TIMEOUT_SECONDS),
            batch_delay=section.get('batch_delay', DEFAULT_BATCH_DELAY_SECONDS),
            require_manifest_markers=section.get('require_manifest_markers', True),
            max_body_bytes=section.get('max_body_bytes', DEFAULT_MAX_BODY_BYTES),
        )

    def _trusted_verdict(self, address: str) -> ValidationVerdict:
        return ValidationVerdict(address, True, CONFIRMED_LIVE, self.cache.clock(), latency_ms=0.0, trusted=True)

    def _probe(self, address: str) -> ValidationVerdict:
        return probe_address(
            address,
            self.session,
            timeout=self.timeout,
            require_manifest_markers=self.require_manifest_markers,
            max_body_bytes=self.max_body_bytes,
            clock=self.cache.clock,
        )

    def validate(
        self,
        addresses: Iterable[str],
        progress_callback: Optional[Callable[[dict], None]] = None,
        cancel_event: Optional[threading.Event] = None,
        force: bool = False,
    ) -> Dict[str, ValidationVerdict]:
        """Return verdicts for ``addresses``.

        Trusted and cached addresses are answered without network access. The
        rest are probed ``batch_size`` at a time; each batch completes before
        the next is dispatched. If ``cancel_event`` is set, no further batches
        start and the verdicts gathered so far are returned.
        """
        unique = list(dict.fromkeys(a for a in addresses if a))
        results: Dict[str, ValidationVerdict] = {}
        tally = {'valid': 0, 'invalid': 0}

        def _record(verdict):
            results[verdict.address] = verdict
            tally['valid' if verdict.is_reachable else 'invalid'] += 1

        def _report(in_progress=True):
            if progress_callback:
                progress_callback({
                    'checked': len(results),
                    'total': len(unique),
                    'valid': tally['valid'],
                    'invalid': tally['invalid'],
                    'in_progress': in_progress,
                })

        to_probe = []
        for address in unique:
            if is_trusted_address(address):
                _record(self._trusted_verdict(address))
                continue
            cached = None if force else self.cache.get(address)
            if cached is not None:
                _record(cached)
            else:
                to_probe.append(address)

        skipped = len(unique) - len(to_probe)
        if skipped:
            logging.info(f"Skipped {skipped} trusted or recently validated streams")
        _report()

        if to_probe:
            logging.info(f"Validating {len(to_probe)} streams in batches of {self.batch_size}...")

        with ThreadPoolExecutor(max_workers=self.batch_size) as executor:
            for start in range(0, len(to_probe), self.batch_size):
                if cancel_event is not None and cancel_event.is_set():
                    logging.info(f"Validation cancelled after {len(results)}/{len(unique)} streams")
                    break

                batch = to_probe[start:start + self.batch_size]
                futures = {executor.submit(self._probe, address): address for address in batch}
                for future, address in futures.items():
                    try:
                        verdict = future.result()
                    except Exception as exc:
                        logging.error(f"Stream {address} generated exception: {exc}")
                        verdict = ValidationVerdict(address, True, INCONCLUSIVE_ASSUMED_LIVE,
                                                    self.cache.clock(), error_detail=str(exc))
                    self.cache.put(verdict)
                    _record(verdict)

                _report()

                if start + self.batch_size < len(to_probe) and self.batch_delay:
                    if cancel_event is not None:
                        cancel_event.wait(self.batch_delay)
                    else:
                        self.sleep(self.batch_delay)

        _report(in_progress=False)
        return results

    def check(self, address: str, force: bool = False) -> ValidationVerdict:
        """Single-channel health check: one address, batch size of one."""
        if not address:
            raise ValueError("A stream address is required")
        single = StreamValidator(
            cache=self.cache,
            session=self.session,
            batch_size=1,
            timeout=self.timeout,
            batch_delay=0,
            require_manifest_markers=self.require_manifest_markers,
            max_body_bytes=self.max_body_bytes,
            sleep=self.sleep,
        )
        return single.validate([address], force=force)[address]


def filter_live(records: Sequence[ChannelRecord], verdicts: Dict[str, ValidationVerdict]) -> List[ChannelRecord]:
    """Keep records that were not checked or were judged reachable."""
    kept = []
    for record in records:
        verdict = verdicts.get(record.address)
        if verdict is None or verdict.is_reachable:
            kept.append(record)
    return kept


def sort_by_latency(records: Sequence[ChannelRecord], verdicts: Dict[str, ValidationVerdict]) -> List[ChannelRecord]:
    """Fastest first; records without a measured latency go last."""
    def _latency(record):
        verdict = verdicts.get(record.address)
        if verdict is None or verdict.latency_ms is None:
            return float('inf')
        return verdict.latency_ms

    return sorted(records, key=_latency)
