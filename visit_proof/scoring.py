"""Team scores and leaderboard, folded from a set of proof events.

Every function here is a pure fold over *distinct* proof ids: feeding the same
proofs in another order, or with repeats, gives the same leaderboard.
"""

from __future__ import annotations

import dataclasses
from collections import defaultdict
from typing import Final, Iterable, Mapping

from visit_proof.events import proof_preference_key
from visit_proof.models import (
    CheckpointState,
    LeaderboardEntry,
    LeaderboardStats,
    ProofEvent,
    ScoringRules,
    ScoringType,
    TeamScore,
    Tiebreak,
)
from visit_proof.proofs import parse_nfc_challenge, verify_nfc_challenge, verify_proof_of_work

BASE_POINTS: Final[int] = 100
NFC_POINTS: Final[int] = 50
TIME_BASED_MAX: Final[float] = 10_000.0
SPEED_BONUS_WINDOW_MS: Final[int] = 60 * 60 * 1000


def _nfc_checks_out(event: ProofEvent, nfc_secrets: Mapping[str, str] | None) -> bool:
    if not event.nfc_verified:
        return False
    if nfc_secrets is None:
        return True
    secret = nfc_secrets.get(event.nfc.tag_id)
    if secret is None:
        return False
    parsed = parse_nfc_challenge(event.nfc.challenge)
    return parsed is not None and parsed[0] == event.nfc.tag_id and verify_nfc_challenge(event.nfc.challenge, secret)


def is_valid_proof_event(
    event: ProofEvent,
    rules: ScoringRules,
    nfc_secrets: Mapping[str, str] | None = None,
) -> bool:
    """Whether a proof counts towards a score under ``rules``.

    Only ``active`` proofs score; seen/redeemed/expired are informational.
    """

    if event.state is not CheckpointState.ACTIVE:
        return False
    if event.timestamp_ms <= 0 or not event.checkpoint_id or not event.team_id:
        return False
    if rules.nfc_required and not _nfc_checks_out(event, nfc_secrets):
        return False
    if rules.pow_difficulty > 0:
        if event.pow_nonce is None or not verify_proof_of_work(event.id, event.pow_nonce, rules.pow_difficulty):
            return False
    return True


def filter_scoring_events(
    events: Iterable[ProofEvent],
    rules: ScoringRules,
    nfc_secrets: Mapping[str, str] | None = None,
) -> list[ProofEvent]:
    """De-duplicate by id and keep the proofs that score, ordered by id.

    With ``nfc_secrets`` (tag id -> secret) the NFC wire string is re-verified;
    a proof whose NFC evidence does not check out is treated as not NFC-verified.

    Copies of one id that differ in evidence are tried in
    ``proof_preference_key`` order and the first one that scores is kept.
    """

    copies: dict[str, set[ProofEvent]] = defaultdict(set)
    for event in events:
        copies[event.id].add(event)

    kept = []
    for event_id in sorted(copies):
        for event in sorted(copies[event_id], key=proof_preference_key):
            if nfc_secrets is not None and event.nfc_verified and not _nfc_checks_out(event, nfc_secrets):
                event = dataclasses.replace(event, nfc=dataclasses.replace(event.nfc, verified=False))
            if is_valid_proof_event(event, rules, nfc_secrets):
                kept.append(event)
                break
    return kept


def event_points(event: ProofEvent) -> int:
    return BASE_POINTS + (NFC_POINTS if event.nfc_verified else 0)


def score_team(team_id: str, events: Iterable[ProofEvent], rules: ScoringRules) -> TeamScore:
    """Score one team's (already filtered) proofs."""

    evs = list(events)
    unique = frozenset(e.checkpoint_id for e in evs)
    first = min((e.timestamp_ms for e in evs), default=0)
    last = max((e.timestamp_ms for e in evs), default=0)
    elapsed = last - first

    score: float
    if rules.scoring_type is ScoringType.UNIQUE_CHECKPOINTS:
        score = float(len(unique))
    elif rules.scoring_type is ScoringType.TIME_BASED:
        score = max(0.0, TIME_BASED_MAX - elapsed / 1000.0) if elapsed > 0 else 0.0
    else:
        score = float(sum(event_points(e) for e in evs))

    bonus = rules.bonus
    if bonus is not None and evs:
        if elapsed < SPEED_BONUS_WINDOW_MS:
            score += bonus.speed_bonus
        if unique:
            score += bonus.completion_bonus
        if rules.total_checkpoints and len(unique) >= rules.total_checkpoints:
            score += bonus.perfect_score_bonus

    return TeamScore(
        team_id=team_id,
        score=score,
        elapsed_ms=elapsed,
        first_activation_ms=first,
        last_activation_ms=last,
        total_proofs=len(evs),
        unique_checkpoints=unique,
    )


def aggregate_team_scores(
    events: Iterable[ProofEvent],
    rules: ScoringRules,
    nfc_secrets: Mapping[str, str] | None = None,
) -> dict[str, TeamScore]:
    """Filter, group by team and score. Recomputed from scratch on every call."""

    by_team: dict[str, list[ProofEvent]] = defaultdict(list)
    for event in filter_scoring_events(events, rules, nfc_secrets):
        by_team[event.team_id].append(event)
    return {team_id: score_team(team_id, evs, rules) for team_id, evs in sorted(by_team.items())}


def _tiebreak_value(score: TeamScore, tiebreak: Tiebreak) -> int:
    if tiebreak is Tiebreak.ELAPSED_TIME:
        return score.elapsed_ms
    if tiebreak is Tiebreak.TOTAL_TIME:
        return score.last_activation_ms
    return score.first_activation_ms


def rank_teams(scores: Iterable[TeamScore], rules: ScoringRules) -> list[LeaderboardEntry]:
    """Sort by score (desc) then tiebreak (asc) and assign competition ranks (1, 1, 3).

    Teams equal on both keys share a rank; their listing order is by team id.
    """

    ordered = sorted(scores, key=lambda s: (-s.score, _tiebreak_value(s, rules.tiebreak), s.team_id))
    entries: list[LeaderboardEntry] = []
    prev_key: tuple[float, int] | None = None
    rank = 0
    for position, s in enumerate(ordered, start=1):
        key = (s.score, _tiebreak_value(s, rules.tiebreak))
        if key != prev_key:
            rank = position
            prev_key = key
        entries.append(
            LeaderboardEntry(
                team_id=s.team_id,
                score=s.score,
                rank=rank,
                elapsed_ms=s.elapsed_ms,
                total_proofs=s.total_proofs,
                unique_checkpoints=len(s.unique_checkpoints),
                first_activation_ms=s.first_activation_ms,
                last_activation_ms=s.last_activation_ms,
            )
        )
    return entries


def build_leaderboard(
    events: Iterable[ProofEvent],
    rules: ScoringRules,
    nfc_secrets: Mapping[str, str] | None = None,
) -> list[LeaderboardEntry]:
    return rank_teams(aggregate_team_scores(events, rules, nfc_secrets).values(), rules)


def leaderboard_stats(scores: Mapping[str, TeamScore]) -> LeaderboardStats:
    values = list(scores.values())
    if not values:
        return LeaderboardStats(
            total_teams=0,
            average_score=0.0,
            highest_score=0.0,
            total_checkpoints=0,
            average_elapsed_ms=0.0,
        )
    checkpoints: set[str] = set()
    for s in values:
        checkpoints |= s.unique_checkpoints
    return LeaderboardStats(
        total_teams=len(values),
        average_score=sum(s.score for s in values) / len(values),
        highest_score=max(s.score for s in values),
        total_checkpoints=len(checkpoints),
        average_elapsed_ms=sum(s.elapsed_ms for s in values) / len(values),
    )
