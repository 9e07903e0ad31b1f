"""Data structures shared by the import pipeline stages."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional


UNKNOWN_CHANNEL_NAME = "Unknown Channel"

CONFIRMED_LIVE = "confirmed_live"
CONFIRMED_DEAD = "confirmed_dead"
INCONCLUSIVE_ASSUMED_LIVE = "inconclusive_assumed_live"

PHASE_FETCHING = "fetching"
PHASE_PARSING = "parsing"
PHASE_RESOLVING = "resolving"
PHASE_FILTERING = "filtering"
PHASE_VALIDATING = "validating"
PHASE_COMPLETE = "complete"

PHASES = (
    PHASE_FETCHING,
    PHASE_PARSING,
    PHASE_RESOLVING,
    PHASE_FILTERING,
    PHASE_VALIDATING,
    PHASE_COMPLETE,
)


@dataclass(frozen=True)
class PlaylistEntry:
    name: str
    address: str
    category: Optional[str] = None
    country: Optional[str] = None
    language: Optional[str] = None
    group_label: Optional[str] = None
    tvg_id: Optional[str] = None
    display_name: Optional[str] = None
    logo: Optional[str] = None


@dataclass(frozen=True)
class ResolvedEntry(PlaylistEntry):
    """A playlist entry after the dynamic address pass.

    ``original_address`` is the address as it appeared in the manifest; when
    resolution succeeded ``address`` holds the regenerated one.
    """

    original_address: Optional[str] = None
    resolution_attempted: bool = False
    resolution_succeeded: bool = False
    match_method: Optional[str] = None

    @staticmethod
    def passthrough(entry: PlaylistEntry) -> "ResolvedEntry":
        return ResolvedEntry(**_entry_fields(entry), original_address=entry.address)


def _entry_fields(entry: PlaylistEntry) -> Dict:
    data = asdict(entry)
    for key in ("original_address", "resolution_attempted", "resolution_succeeded", "match_method"):
        data.pop(key, None)
    return data


@dataclass(frozen=True)
class ValidationVerdict:
    address: str
    is_reachable: bool
    classification: str
    checked_at: float
    latency_ms: Optional[float] = None
    error_detail: Optional[str] = None
    trusted: bool = False

    def to_dict(self) -> Dict:
        return asdict(self)

    @staticmethod
    def from_dict(data: Dict) -> "ValidationVerdict":
        latency = data.get("latency_ms")
        return ValidationVerdict(
            address=str(data["address"]),
            is_reachable=bool(data["is_reachable"]),
            classification=str(data["classification"]),
            checked_at=float(data["checked_at"]),
            latency_ms=float(latency) if latency is not None else None,
            error_detail=data.get("error_detail"),
            trusted=bool(data.get("trusted", False)),
        )


_STAT_FIELDS = (
    "total",
    "resolve_attempted",
    "resolved",
    "country_filtered",
    "language_filtered",
    "duplicates",
    "capped",
    "validated",
    "valid",
    "invalid",
)


@dataclass
class ImportStatistics:
    """Per-run counters. They only ever grow; use :meth:`add`."""

    total: int = 0
    resolve_attempted: int = 0
    resolved: int = 0
    country_filtered: int = 0
    language_filtered: int = 0
    duplicates: int = 0
    capped: int = 0
    validated: int = 0
    valid: int = 0
    invalid: int = 0

    def add(self, counter: str, amount: int = 1):
        if counter not in _STAT_FIELDS:
            raise KeyError(f"Unknown statistics counter: {counter}")
        if amount < 0:
            raise ValueError(f"Statistics counter '{counter}' cannot be decremented")
        setattr(self, counter, getattr(self, counter) + int(amount))

    def filtered_total(self) -> int:
        return self.country_filtered + self.language_filtered + self.duplicates + self.capped

    def to_dict(self) -> Dict[str, int]:
        return {name: getattr(self, name) for name in _STAT_FIELDS}


@dataclass(frozen=True)
class ChannelRecord:
    id: str
    number: int
    name: str
    address: str
    category: str
    logo: Optional[str] = None

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass(frozen=True)
class ImportProgress:
    phase: str
    current: int
    total: int
    message: str

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class ImportOptions:
    validate_streams: bool = True
    filter_countries: List[str] = field(default_factory=list)
    filter_languages: List[str] = field(default_factory=list)
    skip_duplicates: bool = True
    max_channels: Optional[int] = None
    starting_number: int = 400
    force_revalidate: bool = False

    @staticmethod
    def from_config(config) -> "ImportOptions":
        section = config.get("import") or {}
        max_channels = section.get("max_channels")
        return ImportOptions(
            validate_streams=bool(section.get("validate_streams", True)),
            filter_countries=list(section.get("filter_countries") or []),
            filter_languages=list(section.get("filter_languages") or []),
            skip_duplicates=bool(section.get("skip_duplicates", True)),
            max_channels=int(max_channels) if max_channels else None,
            starting_number=int(section.get("starting_number", 400)),
            force_revalidate=bool(section.get("force_revalidate", False)),
        )


@dataclass
class ImportResult:
    channels: List[ChannelRecord] = field(default_factory=list)
    stats: ImportStatistics = field(default_factory=ImportStatistics)
    errors: List[str] = field(default_factory=list)
    verdicts: Dict[str, ValidationVerdict] = field(default_factory=dict)
    cancelled: bool = False
    empty_after_filtering: bool = False

    @property
    def ok(self) -> bool:
        return bool(self.channels) and not self.errors

    def to_dict(self) -> Dict:
        return {
            "channels": [channel.to_dict() for channel in self.channels],
            "stats": self.stats.to_dict(),
            "errors": list(self.errors),
            "cancelled": self.cancelled,
            "empty_after_filtering": self.empty_after_filtering,
        }
