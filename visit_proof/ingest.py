"""Event log ingestion: de-duplicate, validate and index envelopes from any number of relays."""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from typing import Any, AsyncIterator, Iterable, Mapping

from visit_proof.errors import ValidationError
from visit_proof.events import (
    Envelope,
    EventKind,
    TeamJoin,
    envelope_from_dict,
    join_from_envelope,
    proof_from_envelope,
    proof_preference_key,
    team_from_envelope,
)
from visit_proof.models import ProofEvent, Route, Team
from visit_proof.proofs import create_merkle_root
from visit_proof.routes import route_from_envelope

logger = logging.getLogger(__name__)


class EventLog:
    """Append-only set of envelopes keyed by content id.

    Adding the same envelope again (from another relay, or a retransmission)
    is a no-op, and nothing is ever removed, so every view derived from the log
    depends only on the set of ids it holds, not on arrival order.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._envelopes: dict[str, Envelope] = {}
        self._proofs: dict[str, set[ProofEvent]] = defaultdict(set)
        self._team_defs: dict[str, list[tuple[Team, str]]] = defaultdict(list)
        self._joins: dict[str, TeamJoin] = {}
        self._dropped = 0

    def __len__(self) -> int:
        return len(self._envelopes)

    def __contains__(self, envelope_id: object) -> bool:
        return envelope_id in self._envelopes

    @property
    def dropped(self) -> int:
        """Number of envelopes rejected by validation so far."""

        return self._dropped

    def add(self, item: Envelope | Mapping[str, Any]) -> bool:
        """Ingest one envelope (parsed or raw dict).

        Returns:
            True if the envelope was new and valid, False if it was a duplicate
            or was dropped by validation.
        """

        try:
            env = item if isinstance(item, Envelope) else envelope_from_dict(item)
        except ValidationError as exc:
            self._drop(exc)
            return False

        with self._lock:
            if env.id in self._envelopes:
                return False
            try:
                self._index(env)
            except ValidationError as exc:
                self._drop(exc)
                return False
            self._envelopes[env.id] = env
            return True

    def add_many(self, items: Iterable[Envelope | Mapping[str, Any]]) -> int:
        return sum(1 for item in items if self.add(item))

    async def consume(self, stream: AsyncIterator[Envelope], limit: int | None = None) -> int:
        """Drain an async envelope stream into the log.

        Args:
            stream: E.g. ``RelayPool.subscribe(...)``.
            limit: Stop after this many *new* envelopes (None: until the stream ends).

        Returns:
            Number of new envelopes added.
        """

        added = 0
        async for env in stream:
            if self.add(env):
                added += 1
                if limit is not None and added >= limit:
                    break
        return added

    def _drop(self, exc: ValidationError) -> None:
        self._dropped += 1
        logger.info("Dropping envelope: %s", exc)

    def _index(self, env: Envelope) -> None:
        if env.kind == EventKind.PROOF:
            proof = proof_from_envelope(env)
            if proof.team_id is None:
                raise ValidationError(f"envelope {env.id}: proof without team id")
            self._proofs[proof.id].add(proof)
        elif env.kind == EventKind.TEAM:
            team = team_from_envelope(env)
            self._team_defs[team.id].append((team, env.id))
        elif env.kind == EventKind.TEAM_JOIN:
            join = join_from_envelope(env)
            self._joins[join.envelope_id] = join
        elif env.kind == EventKind.ROUTE:
            route_from_envelope(env)

    def envelopes(self) -> list[Envelope]:
        with self._lock:
            return sorted(self._envelopes.values(), key=lambda e: (e.created_at_ms, e.id))

    def proofs(self) -> list[ProofEvent]:
        """One proof per id, ordered by (timestamp, id).

        When relays hold copies of a proof id with different evidence, the copy
        ranked first by ``proof_preference_key`` stands for it.
        """

        with self._lock:
            chosen = [min(copies, key=proof_preference_key) for copies in self._proofs.values()]
        return sorted(chosen, key=lambda p: (p.timestamp_ms, p.id))

    def proof_copies(self) -> list[ProofEvent]:
        """Every distinct copy of every proof, for scoring to choose from."""

        with self._lock:
            copies = [p for group in self._proofs.values() for p in group]
        return sorted(copies, key=lambda p: (p.timestamp_ms, p.id, proof_preference_key(p)))

    def teams(self) -> dict[str, Team]:
        """Teams with their member sets folded from join events.

        The earliest definition of a team id wins (ties by envelope id). Joins
        are applied in (time, envelope id) order; a join needs the right invite
        code and is ignored once the team is full.
        """

        with self._lock:
            defs = {team_id: min(entries, key=lambda e: (e[0].created_at_ms, e[1]))[0]
                    for team_id, entries in self._team_defs.items()}
            joins = sorted(self._joins.values(), key=lambda j: (j.joined_at_ms, j.envelope_id))

        members: dict[str, set[str]] = {team_id: set() for team_id in defs}
        for join in joins:
            team = defs.get(join.team_id)
            if team is None or join.invite_code != team.invite_code:
                continue
            roster = members[team.id] | {team.captain}
            if join.member in roster:
                continue
            if len(roster) >= team.max_members:
                logger.debug("Team %s is full, ignoring join by %s", team.id, join.member)
                continue
            members[team.id].add(join.member)

        return {
            team_id: Team(
                id=team.id,
                name=team.name,
                captain=team.captain,
                invite_code=team.invite_code,
                created_at_ms=team.created_at_ms,
                max_members=team.max_members,
                members=frozenset(members[team_id]),
                challenge_ref=team.challenge_ref,
            )
            for team_id, team in sorted(defs.items())
        }

    def routes(self) -> dict[str, Route]:
        """Published routes by id. For a repeated id the latest envelope wins."""

        latest: dict[str, tuple[int, str, Route]] = {}
        for env in self.envelopes():
            if env.kind != EventKind.ROUTE:
                continue
            route = route_from_envelope(env)
            key = (env.created_at_ms, env.id)
            if route.id not in latest or key > latest[route.id][:2]:
                latest[route.id] = (env.created_at_ms, env.id, route)
        return {route_id: item[2] for route_id, item in latest.items()}

    def merkle_root(self) -> str:
        """Merkle root over the sorted proof ids; one digest attests the whole batch."""

        with self._lock:
            ids = sorted(self._proofs)
        return create_merkle_root(ids)
