"""Availability scoring from found/not-found report events.

Everything here is pure: callers pass in the report signals for one
(store, product) pair and get back a ``ScoreSnapshot``. Aggregates are always
recomputed from the append-only event log, never kept as running counters.

Two windows are scored independently:

- the live window (default 6 hours) yields a label and a rank used to sort
  stores "most likely available first":

    ========  ====  ==============================================
    label     rank  condition
    ========  ====  ==============================================
    none      0     no reports in the window
    low       1     only not_found reports
    high      3     only found reports and the latest is found
    mid       2     anything else (mixed)
    ========  ====  ==============================================

- the community window (default 30 days) yields a slower trend label that
  requires a minimum sample size before asserting anything.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, NamedTuple, Optional

from qpick.config import settings
from qpick.utils.clock import isoformat, parse_timestamp

_EPOCH = datetime(1970, 1, 1)


class ReportStatus(str, Enum):
    """Status carried by a report event."""

    FOUND = "found"
    NOT_FOUND = "not_found"


class LiveLabel(str, Enum):
    """Live (short window) availability label."""

    NONE = "none"
    LOW = "low"
    MID = "mid"
    HIGH = "high"


LIVE_RANKS = {
    LiveLabel.NONE: 0,
    LiveLabel.LOW: 1,
    LiveLabel.MID: 2,
    LiveLabel.HIGH: 3,
}


class CommunityLabel(str, Enum):
    """Community (long window) trend label."""

    NONE = "none"  # zero reports
    INSUFFICIENT_DATA = "insufficient-data"  # some reports, too few to trust
    MOSTLY_FOUND = "mostly-found"
    MOSTLY_NOT_FOUND = "mostly-not-found"


class ReportSignal(NamedTuple):
    """The slice of a report event the scorer needs."""

    store_id: str
    status: str
    created_at: datetime


@dataclass(frozen=True)
class LiveScorePolicy:
    """Live window configuration."""

    window: timedelta = timedelta(hours=6)

    @classmethod
    def from_settings(cls, config=settings) -> "LiveScorePolicy":
        return cls(window=timedelta(hours=config.ttl_window_hours))


@dataclass(frozen=True)
class CommunityPolicy:
    """Community trend configuration."""

    window: timedelta = timedelta(days=30)
    min_samples: int = 5
    found_rate_high: float = 0.7
    found_rate_low: float = 0.3

    @classmethod
    def from_settings(cls, config=settings) -> "CommunityPolicy":
        return cls(
            window=timedelta(days=config.community_window_days),
            min_samples=config.community_min_samples,
            found_rate_high=config.community_found_rate_high,
            found_rate_low=config.community_found_rate_low,
        )


@dataclass(frozen=True)
class HighRiskPolicy:
    """Thresholds for branding a store "high risk" over the community window."""

    min_not_found: int = 5
    max_found: int = 0

    @classmethod
    def from_settings(cls, config=settings) -> "HighRiskPolicy":
        return cls(
            min_not_found=config.high_risk_min_not_found,
            max_found=config.high_risk_max_found,
        )


@dataclass
class ScoreSnapshot:
    """Aggregated view of one (store, product) pair over one window."""

    window_start: datetime
    found_count: int = 0
    not_found_count: int = 0
    last_found_at: Optional[datetime] = None
    last_not_found_at: Optional[datetime] = None
    last_event_at: Optional[datetime] = None
    last_status: Optional[str] = None
    label: Optional[str] = None
    rank: int = 0

    @property
    def total(self) -> int:
        return self.found_count + self.not_found_count

    def to_dict(self) -> dict:
        """Serialize for caching."""
        return {
            "window_start": isoformat(self.window_start),
            "found_count": self.found_count,
            "not_found_count": self.not_found_count,
            "last_found_at": isoformat(self.last_found_at),
            "last_not_found_at": isoformat(self.last_not_found_at),
            "last_event_at": isoformat(self.last_event_at),
            "last_status": self.last_status,
            "label": self.label,
            "rank": self.rank,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ScoreSnapshot":
        """Rebuild a snapshot serialized with ``to_dict``."""
        return cls(
            window_start=parse_timestamp(data["window_start"]),
            found_count=int(data.get("found_count", 0)),
            not_found_count=int(data.get("not_found_count", 0)),
            last_found_at=parse_timestamp(data.get("last_found_at")),
            last_not_found_at=parse_timestamp(data.get("last_not_found_at")),
            last_event_at=parse_timestamp(data.get("last_event_at")),
            last_status=data.get("last_status"),
            label=data.get("label"),
            rank=int(data.get("rank", 0)),
        )


def _status_value(status) -> str:
    return status.value if isinstance(status, ReportStatus) else str(status)


def tally(signals: Iterable, since: datetime) -> ScoreSnapshot:
    """
    Count found/not-found reports with ``created_at >= since``.

    The latest event decides ``last_status``. When two events share the
    latest timestamp, not_found wins so a tie can never promote a pair to
    "found".

    Args:
        signals: Objects with ``status`` and ``created_at`` attributes
        since: Inclusive window start

    Returns:
        Unlabelled snapshot
    """
    snapshot = ScoreSnapshot(window_start=since)

    for signal in signals:
        created_at = signal.created_at
        if created_at is None or created_at < since:
            continue

        status = _status_value(signal.status)
        if status == ReportStatus.FOUND.value:
            snapshot.found_count += 1
            if snapshot.last_found_at is None or created_at > snapshot.last_found_at:
                snapshot.last_found_at = created_at
        elif status == ReportStatus.NOT_FOUND.value:
            snapshot.not_found_count += 1
            if snapshot.last_not_found_at is None or created_at > snapshot.last_not_found_at:
                snapshot.last_not_found_at = created_at
        else:
            continue

        if (
            snapshot.last_event_at is None
            or created_at > snapshot.last_event_at
            or (created_at == snapshot.last_event_at and status == ReportStatus.NOT_FOUND.value)
        ):
            snapshot.last_event_at = created_at
            snapshot.last_status = status

    return snapshot


def live_label(snapshot: ScoreSnapshot) -> tuple[LiveLabel, int]:
    """Label and rank for the live window. Total over all count combinations."""
    if snapshot.total == 0:
        label = LiveLabel.NONE
    elif snapshot.not_found_count >= 1 and snapshot.found_count == 0:
        label = LiveLabel.LOW
    elif (
        snapshot.found_count >= 1
        and snapshot.not_found_count == 0
        and snapshot.last_status == ReportStatus.FOUND.value
    ):
        label = LiveLabel.HIGH
    else:
        label = LiveLabel.MID
    return label, LIVE_RANKS[label]


def community_label(
    snapshot: ScoreSnapshot, policy: CommunityPolicy
) -> Optional[CommunityLabel]:
    """
    Trend label for the community window.

    Returns None for a neutral mix, which is not surfaced to users.
    """
    total = snapshot.total
    if total == 0:
        return CommunityLabel.NONE
    if total < policy.min_samples:
        return CommunityLabel.INSUFFICIENT_DATA

    found_rate = snapshot.found_count / total
    if found_rate >= policy.found_rate_high:
        return CommunityLabel.MOSTLY_FOUND
    if found_rate <= policy.found_rate_low:
        return CommunityLabel.MOSTLY_NOT_FOUND
    return None


def score_live(
    signals: Iterable,
    now: datetime,
    policy: LiveScorePolicy | None = None,
) -> ScoreSnapshot:
    """Score the live window ending at ``now``."""
    policy = policy or LiveScorePolicy()
    snapshot = tally(signals, now - policy.window)
    label, rank = live_label(snapshot)
    snapshot.label = label.value
    snapshot.rank = rank
    return snapshot


def score_community(
    signals: Iterable,
    now: datetime,
    policy: CommunityPolicy | None = None,
) -> ScoreSnapshot:
    """Score the community window ending at ``now``."""
    policy = policy or CommunityPolicy()
    snapshot = tally(signals, now - policy.window)
    label = community_label(snapshot, policy)
    snapshot.label = label.value if label else None
    return snapshot


def is_high_risk(community: ScoreSnapshot, policy: HighRiskPolicy | None = None) -> bool:
    """True when the community window shows repeated misses and no sightings."""
    policy = policy or HighRiskPolicy()
    return (
        community.not_found_count >= policy.min_not_found
        and community.found_count <= policy.max_found
    )


def rank_sort_key(
    rank: int, last_event_at: Optional[datetime], distance_m: Optional[float]
) -> tuple:
    """
    Sort key for "most likely available first".

    Rank descending, then most recent report first (stores without reports
    last), then nearest first.
    """
    if last_event_at is None:
        recency = (1, 0.0)
    else:
        recency = (0, -(last_event_at - _EPOCH).total_seconds())
    distance = distance_m if distance_m is not None else float("inf")
    return (-rank, recency, distance)
