"""Data models for checkpoints, position fixes, proofs, teams and scores."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Final, Sequence


EARTH_RADIUS_M: Final[float] = 6_371_000.0
DEFAULT_MAX_ACCURACY_M: Final[float] = 50.0
DEFAULT_TZ: Final[str] = "Europe/Berlin"


class ProofMethod(str, Enum):
    """Ways a participant can prove a checkpoint visit."""

    GEOFENCE = "geofence"
    NFC = "nfc"
    QUESTION = "question"
    REWARD = "reward"


class CheckpointState(str, Enum):
    """Per-participant checkpoint state.

    Only moves forward: locked -> seen -> active -> redeemed, or to expired.
    """

    LOCKED = "locked"
    SEEN = "seen"
    ACTIVE = "active"
    REDEEMED = "redeemed"
    EXPIRED = "expired"

    @property
    def order(self) -> int:
        return _STATE_ORDER[self]

    @property
    def is_terminal(self) -> bool:
        return self in (CheckpointState.REDEEMED, CheckpointState.EXPIRED)


_STATE_ORDER: Final[dict[CheckpointState, int]] = {
    CheckpointState.LOCKED: 0,
    CheckpointState.SEEN: 1,
    CheckpointState.ACTIVE: 2,
    CheckpointState.REDEEMED: 3,
    CheckpointState.EXPIRED: 4,
}


class ScoringType(str, Enum):
    UNIQUE_CHECKPOINTS = "unique_checkpoints"
    TIME_BASED = "time_based"
    POINTS = "points"


class Tiebreak(str, Enum):
    ELAPSED_TIME = "elapsed_time"
    TOTAL_TIME = "total_time"
    FIRST_COMPLETION = "first_completion"


@dataclass(frozen=True, slots=True)
class Coordinate:
    """WGS84 point in decimal degrees (no altitude)."""

    lat: float
    lng: float

    def to_dict(self) -> dict[str, float]:
        return {"lat": self.lat, "lng": self.lng}


@dataclass(frozen=True, slots=True)
class BoundingBox:
    north: float
    south: float
    east: float
    west: float


@dataclass(frozen=True, slots=True)
class PositionFix:
    """A single location sample from the device.

    Attributes:
        coordinate: Reported position.
        accuracy_m: Horizontal accuracy radius in meters. ``None`` (or a negative
            sentinel, as some exports use -1.0) means the source did not report one.
        timestamp_ms: Unix epoch milliseconds.
    """

    coordinate: Coordinate
    accuracy_m: float | None
    timestamp_ms: int

    @property
    def has_accuracy(self) -> bool:
        return self.accuracy_m is not None and self.accuracy_m >= 0


@dataclass(frozen=True, slots=True)
class QuestionSpec:
    """A quiz attached to a checkpoint. Only the hash of the answer is stored."""

    prompt: str
    answer_hash: str
    choices: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class Checkpoint:
    """A geofenced waypoint on a route.

    The definition is immutable; the per-participant state lives in the
    ``CheckpointTracker`` that owns it.
    """

    id: str
    center: Coordinate
    radius_m: float
    required_methods: frozenset[ProofMethod] = frozenset({ProofMethod.GEOFENCE})
    nfc_tag_id: str | None = None
    question: QuestionSpec | None = None
    name: str | None = None
    description: str | None = None

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Checkpoint id must not be empty")
        if not self.radius_m > 0:
            raise ValueError(f"Checkpoint radius must be > 0, got {self.radius_m}")
        if ProofMethod.NFC in self.required_methods and not self.nfc_tag_id:
            raise ValueError(f"Checkpoint {self.id!r} requires NFC but has no nfc_tag_id")
        if ProofMethod.QUESTION in self.required_methods and self.question is None:
            raise ValueError(f"Checkpoint {self.id!r} requires a question but has none")


@dataclass(frozen=True, slots=True)
class Route:
    """A published route. New versions get new ids instead of being edited."""

    id: str
    name: str
    polyline: tuple[Coordinate, ...]
    checkpoints: tuple[Checkpoint, ...] = ()
    distance_m: float = 0.0
    elevation_gain_m: float | None = None
    mode: str | None = None
    created_by: str | None = None

    def __post_init__(self) -> None:
        ids = [cp.id for cp in self.checkpoints]
        if len(ids) != len(set(ids)):
            raise ValueError(f"Route {self.id!r} has duplicate checkpoint ids")

    def checkpoint(self, checkpoint_id: str) -> Checkpoint | None:
        for cp in self.checkpoints:
            if cp.id == checkpoint_id:
                return cp
        return None

    def with_checkpoints(self, new_id: str, checkpoints: Sequence[Checkpoint]) -> Route:
        return replace(self, id=new_id, checkpoints=tuple(checkpoints))


@dataclass(frozen=True, slots=True)
class BonusSchedule:
    speed_bonus: float = 0.0
    completion_bonus: float = 0.0
    perfect_score_bonus: float = 0.0


@dataclass(frozen=True, slots=True)
class ScoringRules:
    """Per-challenge scoring policy. Immutable for the challenge's lifetime.

    Attributes:
        nfc_required: Drop proofs that do not carry verified NFC evidence.
        scoring_type: How a team's score is computed.
        tiebreak: Secondary ordering for equal scores.
        bonus: Optional bonus schedule.
        pow_difficulty: Leading zero hex digits a proof's proof-of-work must have.
            0 disables the requirement.
        total_checkpoints: Number of checkpoints on the route; enables the
            perfect-score bonus when known.
    """

    nfc_required: bool = False
    scoring_type: ScoringType = ScoringType.UNIQUE_CHECKPOINTS
    tiebreak: Tiebreak = Tiebreak.ELAPSED_TIME
    bonus: BonusSchedule | None = None
    pow_difficulty: int = 0
    total_checkpoints: int | None = None

    def __post_init__(self) -> None:
        # accept plain strings from JSON / CLI
        object.__setattr__(self, "scoring_type", ScoringType(self.scoring_type))
        object.__setattr__(self, "tiebreak", Tiebreak(self.tiebreak))
        if self.pow_difficulty < 0:
            raise ValueError(f"pow_difficulty must be >= 0, got {self.pow_difficulty}")


@dataclass(frozen=True, slots=True)
class Challenge:
    id: str
    name: str
    route_id: str
    start_ms: int
    end_ms: int
    rules: ScoringRules = field(default_factory=ScoringRules)
    team_min_size: int = 1
    team_max_size: int = 5

    def __post_init__(self) -> None:
        if self.end_ms <= self.start_ms:
            raise ValueError(f"Challenge {self.id!r} ends before it starts")
        if not 1 <= self.team_min_size <= self.team_max_size:
            raise ValueError(f"Challenge {self.id!r}: bad team size range {self.team_min_size}..{self.team_max_size}")

    def is_open(self, now_ms: int) -> bool:
        return self.start_ms <= now_ms <= self.end_ms


@dataclass(frozen=True, slots=True)
class GeofenceEvidence:
    entered_at_ms: int
    lat_hint: float
    lng_hint: float
    accuracy_m: float | None


@dataclass(frozen=True, slots=True)
class NfcEvidence:
    """Result of an NFC challenge-response.

    ``challenge`` is the full wire string (``tag:timestamp:nonce:signature``) so
    that a verifier holding the tag secret can re-check it.
    """

    tag_id: str
    nonce: str
    challenge: str
    verified: bool


@dataclass(frozen=True, slots=True)
class DeviceInfo:
    platform: str = "python"
    app_version: str = "0.1.0"
    attestation: str | None = None


@dataclass(frozen=True, slots=True)
class ProofEvent:
    """Immutable record that a participant reached a checkpoint state.

    ``id`` is derived from the content so retransmissions collapse to one event.
    """

    id: str
    checkpoint_id: str
    team_id: str | None
    author: str
    state: CheckpointState
    timestamp_ms: int
    proof_hash: str
    geofence: GeofenceEvidence | None = None
    nfc: NfcEvidence | None = None
    question_answered: bool = False
    device: DeviceInfo | None = None
    pow_nonce: int | None = None
    challenge_ref: str | None = None
    route_ref: str | None = None

    @property
    def nfc_verified(self) -> bool:
        return self.nfc is not None and self.nfc.verified


@dataclass(frozen=True, slots=True)
class Team:
    id: str
    name: str
    captain: str
    invite_code: str
    created_at_ms: int
    max_members: int = 5
    members: frozenset[str] = frozenset()
    challenge_ref: str | None = None

    def __post_init__(self) -> None:
        if self.max_members < 1:
            raise ValueError(f"max_members must be >= 1, got {self.max_members}")

    @property
    def roster(self) -> frozenset[str]:
        """Captain plus joined members."""

        return self.members | {self.captain}

    @property
    def is_full(self) -> bool:
        return len(self.roster) >= self.max_members


@dataclass(frozen=True, slots=True)
class TeamScore:
    """Derived per-team aggregate. Recomputed from the whole event set every fold."""

    team_id: str
    score: float
    elapsed_ms: int
    first_activation_ms: int
    last_activation_ms: int
    total_proofs: int
    unique_checkpoints: frozenset[str]


@dataclass(frozen=True, slots=True)
class LeaderboardEntry:
    team_id: str
    score: float
    rank: int
    elapsed_ms: int
    total_proofs: int
    unique_checkpoints: int
    first_activation_ms: int
    last_activation_ms: int

    def to_dict(self) -> dict[str, object]:
        return {
            "team_id": self.team_id,
            "score": self.score,
            "rank": self.rank,
            "elapsed_time": self.elapsed_ms,
            "total_proofs": self.total_proofs,
            "unique_checkpoints": self.unique_checkpoints,
        }


@dataclass(frozen=True, slots=True)
class LeaderboardStats:
    total_teams: int
    average_score: float
    highest_score: float
    total_checkpoints: int
    average_elapsed_ms: float
