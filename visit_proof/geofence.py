"""Checkpoint state machine driven by position fixes and confirmation events.

One ``CheckpointTracker`` owns the checkpoint states of one participant on one
device. Fixes are processed one at a time under a lock; there is no shared
state between trackers.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from itertools import count
from typing import Callable, Iterable, Protocol, Sequence

from visit_proof.errors import SensorError, ThrottleExhaustion, VerificationFailure
from visit_proof.geo import GeofenceResult, check_geofence
from visit_proof.models import (
    DEFAULT_MAX_ACCURACY_M,
    Checkpoint,
    CheckpointState,
    Coordinate,
    DeviceInfo,
    GeofenceEvidence,
    NfcEvidence,
    PositionFix,
    ProofEvent,
    ProofMethod,
)
from visit_proof.proofs import (
    POW_MAX_ITERATIONS,
    NfcPayload,
    ProofData,
    compute_proof_id,
    generate_proof_of_work,
    hash_answer,
    hash_proof_data,
    parse_nfc_challenge,
    verify_nfc_challenge,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TrackerParams:
    """Parameters controlling when a fix counts and how proofs are emitted."""

    # Fixes reporting a worse accuracy than this are ignored entirely.
    max_accuracy_m: float = DEFAULT_MAX_ACCURACY_M
    # End of the challenge window (epoch ms). Anything later expires open checkpoints.
    window_end_ms: int | None = None
    # 0 disables proof-of-work on emitted proofs.
    pow_difficulty: int = 0
    pow_max_iterations: int = POW_MAX_ITERATIONS
    device: DeviceInfo = DeviceInfo()


@dataclass(frozen=True, slots=True)
class Participant:
    """Who the tracker emits proofs for. Refs are opaque strings for the transport."""

    author: str
    team_id: str | None = None
    challenge_ref: str | None = None
    route_ref: str | None = None


@dataclass(frozen=True, slots=True)
class StateChange:
    checkpoint_id: str
    previous: CheckpointState
    current: CheckpointState
    timestamp_ms: int
    reason: str
    proof: ProofEvent | None = None


@dataclass(slots=True)
class _Progress:
    state: CheckpointState = CheckpointState.LOCKED
    geofence: GeofenceEvidence | None = None
    nfc: NfcEvidence | None = None
    question_answered: bool = False


class CheckpointTracker:
    """Per-participant checkpoint state machine.

    Transitions:
        locked -> seen      a usable fix lands inside the geofence
        seen -> active      every required proof method succeeded
        active -> redeemed  reward claimed
        * -> expired        challenge window elapsed (not from redeemed)

    ``on_proof`` receives the ProofEvent emitted on activation and redemption.
    It is called after the transition is committed; if it raises, the error is
    logged and the state stays as it is.
    """

    def __init__(
        self,
        checkpoints: Sequence[Checkpoint],
        participant: Participant,
        params: TrackerParams | None = None,
        on_proof: Callable[[ProofEvent], None] | None = None,
    ) -> None:
        self._checkpoints: dict[str, Checkpoint] = {cp.id: cp for cp in checkpoints}
        if len(self._checkpoints) != len(checkpoints):
            raise ValueError("Duplicate checkpoint ids")
        self._participant = participant
        self._params = params or TrackerParams()
        self._on_proof = on_proof
        self._progress: dict[str, _Progress] = {cp_id: _Progress() for cp_id in self._checkpoints}
        self._lock = threading.Lock()

    @property
    def participant(self) -> Participant:
        return self._participant

    def state(self, checkpoint_id: str) -> CheckpointState:
        cp = self._require(checkpoint_id)
        with self._lock:
            return self._progress[cp.id].state

    def states(self) -> dict[str, CheckpointState]:
        """Snapshot of all checkpoint states."""

        with self._lock:
            return {cp_id: p.state for cp_id, p in self._progress.items()}

    def pending_methods(self, checkpoint_id: str) -> frozenset[ProofMethod]:
        cp = self._require(checkpoint_id)
        with self._lock:
            return self._pending(cp, self._progress[cp.id])

    def nearby(self, fix: PositionFix, within_m: float) -> list[tuple[Checkpoint, GeofenceResult]]:
        """Checkpoints whose center is within ``within_m`` of the fix, nearest first."""

        hits = []
        for cp in self._checkpoints.values():
            res = check_geofence(fix.coordinate, cp.center, within_m)
            if res.inside:
                hits.append((cp, res))
        hits.sort(key=lambda item: (item[1].distance_m, item[0].id))
        return hits

    def process_fix(self, fix: PositionFix) -> list[StateChange]:
        """Feed one position fix. Returns the transitions it caused (possibly none)."""

        with self._lock:
            changes = self._expire_if_due(fix.timestamp_ms)
            if changes:
                return changes
            if fix.has_accuracy and fix.accuracy_m > self._params.max_accuracy_m:
                logger.debug("Ignoring fix at %s: accuracy %.1fm", fix.timestamp_ms, fix.accuracy_m)
                return []

            for cp in self._checkpoints.values():
                progress = self._progress[cp.id]
                # seen checkpoints wait for confirmations; later states are final for fixes
                if progress.state is not CheckpointState.LOCKED:
                    continue
                if not check_geofence(fix.coordinate, cp.center, cp.radius_m).inside:
                    continue
                progress.geofence = GeofenceEvidence(
                    entered_at_ms=fix.timestamp_ms,
                    lat_hint=fix.coordinate.lat,
                    lng_hint=fix.coordinate.lng,
                    accuracy_m=fix.accuracy_m if fix.has_accuracy else None,
                )
                changes.append(self._move(cp, progress, CheckpointState.SEEN, fix.timestamp_ms, "geofence"))
                changes.extend(self._maybe_activate(cp, progress, fix.timestamp_ms))

        self._deliver(changes)
        return changes

    def confirm_nfc(self, checkpoint_id: str, wire: str, secret: str, now_ms: int) -> list[StateChange]:
        """Apply an NFC tap (challenge wire string + tag secret).

        Raises:
            VerificationFailure: The checkpoint was not seen yet, or the tag id or
                signature does not match. State is unchanged and the tap can be retried.
        """

        cp = self._require(checkpoint_id)
        with self._lock:
            changes = self._expire_if_due(now_ms)
            progress = self._progress[cp.id]
            if changes or progress.state.order >= CheckpointState.ACTIVE.order:
                return changes
            if progress.state is CheckpointState.LOCKED:
                raise VerificationFailure(cp.id, "checkpoint not reached yet")
            if cp.nfc_tag_id is None:
                raise VerificationFailure(cp.id, "checkpoint has no NFC tag")

            parsed = parse_nfc_challenge(wire)
            if parsed is None or parsed[0] != cp.nfc_tag_id or not verify_nfc_challenge(wire, secret):
                logger.info("NFC verification failed for checkpoint %s", cp.id)
                raise VerificationFailure(cp.id, "NFC challenge did not verify")

            progress.nfc = NfcEvidence(tag_id=parsed[0], nonce=parsed[2], challenge=wire, verified=True)
            changes = self._maybe_activate(cp, progress, now_ms)

        self._deliver(changes)
        return changes

    def answer_question(self, checkpoint_id: str, answer: str, now_ms: int) -> list[StateChange]:
        """Apply a quiz answer.

        Raises:
            VerificationFailure: Not seen yet, no question, or wrong answer.
        """

        cp = self._require(checkpoint_id)
        with self._lock:
            changes = self._expire_if_due(now_ms)
            progress = self._progress[cp.id]
            if changes or progress.state.order >= CheckpointState.ACTIVE.order:
                return changes
            if progress.state is CheckpointState.LOCKED:
                raise VerificationFailure(cp.id, "checkpoint not reached yet")
            if cp.question is None:
                raise VerificationFailure(cp.id, "checkpoint has no question")
            if hash_answer(answer) != cp.question.answer_hash:
                raise VerificationFailure(cp.id, "wrong answer")

            progress.question_answered = True
            changes = self._maybe_activate(cp, progress, now_ms)

        self._deliver(changes)
        return changes

    def redeem(self, checkpoint_id: str, now_ms: int) -> list[StateChange]:
        """Claim the reward of an active checkpoint. Redeeming twice is a no-op."""

        cp = self._require(checkpoint_id)
        with self._lock:
            changes = self._expire_if_due(now_ms)
            progress = self._progress[cp.id]
            if changes or progress.state is CheckpointState.REDEEMED:
                return changes
            if progress.state is not CheckpointState.ACTIVE:
                raise VerificationFailure(cp.id, f"cannot redeem in state {progress.state.value}")
            change = self._move(cp, progress, CheckpointState.REDEEMED, now_ms, "reward")
            changes = [self._with_proof(cp, progress, change)]

        self._deliver(changes)
        return changes

    def expire(self, now_ms: int) -> list[StateChange]:
        """Expire every checkpoint that is not redeemed or already expired."""

        with self._lock:
            return self._expire_all(now_ms)

    def _require(self, checkpoint_id: str) -> Checkpoint:
        try:
            return self._checkpoints[checkpoint_id]
        except KeyError:
            raise KeyError(f"Unknown checkpoint: {checkpoint_id!r}") from None

    def _expire_if_due(self, now_ms: int) -> list[StateChange]:
        end = self._params.window_end_ms
        if end is None or now_ms <= end:
            return []
        return self._expire_all(now_ms)

    def _expire_all(self, now_ms: int) -> list[StateChange]:
        changes = []
        for cp in self._checkpoints.values():
            progress = self._progress[cp.id]
            if not progress.state.is_terminal:
                changes.append(self._move(cp, progress, CheckpointState.EXPIRED, now_ms, "window_elapsed"))
        return changes

    @staticmethod
    def _pending(cp: Checkpoint, progress: _Progress) -> frozenset[ProofMethod]:
        done = set()
        if progress.geofence is not None:
            done.add(ProofMethod.GEOFENCE)
        if progress.nfc is not None and progress.nfc.verified:
            done.add(ProofMethod.NFC)
        if progress.question_answered:
            done.add(ProofMethod.QUESTION)
        # reward is claimed after activation, it never gates it
        done.add(ProofMethod.REWARD)
        return cp.required_methods - done

    def _maybe_activate(self, cp: Checkpoint, progress: _Progress, now_ms: int) -> list[StateChange]:
        if progress.state is not CheckpointState.SEEN or self._pending(cp, progress):
            return []
        change = self._move(cp, progress, CheckpointState.ACTIVE, now_ms, "all_methods_satisfied")
        return [self._with_proof(cp, progress, change)]

    @staticmethod
    def _move(
        cp: Checkpoint,
        progress: _Progress,
        new_state: CheckpointState,
        now_ms: int,
        reason: str,
    ) -> StateChange:
        previous = progress.state
        if previous.is_terminal or new_state.order <= previous.order:
            raise RuntimeError(f"illegal transition {previous.value} -> {new_state.value} on {cp.id}")
        progress.state = new_state
        logger.info("Checkpoint %s: %s -> %s (%s)", cp.id, previous.value, new_state.value, reason)
        return StateChange(cp.id, previous, new_state, now_ms, reason)

    def _with_proof(self, cp: Checkpoint, progress: _Progress, change: StateChange) -> StateChange:
        return StateChange(
            checkpoint_id=change.checkpoint_id,
            previous=change.previous,
            current=change.current,
            timestamp_ms=change.timestamp_ms,
            reason=change.reason,
            proof=self._build_proof(cp, progress, change.current, change.timestamp_ms),
        )

    def _build_proof(
        self,
        cp: Checkpoint,
        progress: _Progress,
        state: CheckpointState,
        now_ms: int,
    ) -> ProofEvent:
        geo = progress.geofence
        location = Coordinate(lat=geo.lat_hint, lng=geo.lng_hint) if geo is not None else cp.center
        nfc = progress.nfc
        proof_hash = hash_proof_data(
            ProofData(
                timestamp_ms=now_ms,
                location=location,
                accuracy_m=geo.accuracy_m if geo is not None else None,
                nfc=NfcPayload(tag_id=nfc.tag_id, nonce=nfc.nonce) if nfc is not None else None,
            )
        )
        who = self._participant
        event_id = compute_proof_id(cp.id, who.team_id, who.author, state, now_ms, proof_hash)

        pow_nonce = None
        if self._params.pow_difficulty > 0:
            try:
                pow_nonce = generate_proof_of_work(
                    event_id, self._params.pow_difficulty, self._params.pow_max_iterations
                ).nonce
            except ThrottleExhaustion as exc:
                # the visit still counts locally; relays / scorers decide what to do without PoW
                logger.warning("Proof for %s sent without proof-of-work: %s", cp.id, exc)

        return ProofEvent(
            id=event_id,
            checkpoint_id=cp.id,
            team_id=who.team_id,
            author=who.author,
            state=state,
            timestamp_ms=now_ms,
            proof_hash=proof_hash,
            geofence=geo,
            nfc=nfc,
            question_answered=progress.question_answered,
            device=self._params.device,
            pow_nonce=pow_nonce,
            challenge_ref=who.challenge_ref,
            route_ref=who.route_ref,
        )

    def _deliver(self, changes: Iterable[StateChange]) -> None:
        if self._on_proof is None:
            return
        for change in changes:
            if change.proof is None:
                continue
            try:
                self._on_proof(change.proof)
            except Exception:
                logger.exception("Proof delivery failed for checkpoint %s", change.checkpoint_id)


class LocationSource(Protocol):
    """External position provider (device GPS, replayed file, ...)."""

    def request_permission(self) -> bool: ...

    def watch(self, callback: Callable[[PositionFix], None]) -> str: ...

    def clear_watch(self, watch_id: str) -> None: ...


class TrackingSession:
    """Start/stop lifecycle around one location watch feeding one tracker.

    ``start`` raises SensorError and leaves nothing running if permission is
    denied or the watch cannot be created. ``stop`` releases the watch.
    """

    def __init__(
        self,
        source: LocationSource,
        tracker: CheckpointTracker,
        on_change: Callable[[StateChange], None] | None = None,
    ) -> None:
        self._source = source
        self._tracker = tracker
        self._on_change = on_change
        self._watch_id: str | None = None

    @property
    def is_tracking(self) -> bool:
        return self._watch_id is not None

    def start(self) -> None:
        if self._watch_id is not None:
            return
        if not self._source.request_permission():
            raise SensorError("location permission not granted")
        try:
            self._watch_id = self._source.watch(self._handle_fix)
        except OSError as exc:
            raise SensorError(f"location source unavailable: {exc}") from exc
        logger.info("Tracking started for %s", self._tracker.participant.author)

    def stop(self) -> None:
        if self._watch_id is None:
            return
        watch_id, self._watch_id = self._watch_id, None
        self._source.clear_watch(watch_id)
        logger.info("Tracking stopped for %s", self._tracker.participant.author)

    def __enter__(self) -> TrackingSession:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def _handle_fix(self, fix: PositionFix) -> None:
        for change in self._tracker.process_fix(fix):
            if self._on_change is not None:
                self._on_change(change)


@dataclass(slots=True)
class ReplayLocationSource:
    """Location source that replays recorded fixes to its watchers in order."""

    fixes: Sequence[PositionFix]
    permission: bool = True
    _watchers: dict[str, Callable[[PositionFix], None]] = field(default_factory=dict, init=False, repr=False)
    _ids: count = field(default_factory=lambda: count(1), init=False, repr=False)

    def request_permission(self) -> bool:
        return self.permission

    def watch(self, callback: Callable[[PositionFix], None]) -> str:
        watch_id = f"replay-{next(self._ids)}"
        self._watchers[watch_id] = callback
        return watch_id

    def clear_watch(self, watch_id: str) -> None:
        self._watchers.pop(watch_id, None)

    @property
    def active_watches(self) -> int:
        return len(self._watchers)

    def replay(self) -> int:
        """Push every fix to the current watchers. Returns the number of fixes sent."""

        sent = 0
        for fix in self.fixes:
            for callback in list(self._watchers.values()):
                callback(fix)
            sent += 1
        return sent
