"""Event envelopes exchanged over relays, and their JSON codec.

An envelope is author-identified and content-addressed: its id is a digest of
kind, author, timestamp, tags and content, so the same logical event fetched
from several relays always has the same id. The ``signature`` field is opaque
here; signing belongs to the identity/transport layer.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Iterable, Mapping

from visit_proof.errors import ValidationError
from visit_proof.models import (
    CheckpointState,
    DeviceInfo,
    GeofenceEvidence,
    NfcEvidence,
    ProofEvent,
    Team,
)
from visit_proof.proofs import canonical_json, compute_proof_id, create_deterministic_id


class EventKind(IntEnum):
    ROUTE = 30880
    CHECKPOINTS = 30881
    CHALLENGE = 30882
    TEAM = 30883
    PROOF = 20880
    TEAM_JOIN = 20881


PROOF_SCHEMA = "visit_proof.proof.v1"
TEAM_SCHEMA = "visit_proof.team.v1"
JOIN_SCHEMA = "visit_proof.team_join.v1"


@dataclass(frozen=True, slots=True)
class Envelope:
    id: str
    kind: int
    author: str
    created_at_ms: int
    tags: tuple[tuple[str, str], ...]
    content: str
    signature: str | None = None

    def tag_values(self, name: str) -> list[str]:
        return [value for key, value in self.tags if key == name]

    def first_tag(self, name: str) -> str | None:
        values = self.tag_values(name)
        return values[0] if values else None

    def content_json(self) -> dict[str, Any]:
        try:
            data = json.loads(self.content)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"envelope {self.id}: content is not JSON") from exc
        if not isinstance(data, dict):
            raise ValidationError(f"envelope {self.id}: content is not an object")
        return data

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "author": self.author,
            "created_at": self.created_at_ms,
            "tags": [list(t) for t in self.tags],
            "content": self.content,
            "sig": self.signature,
        }


def envelope_id(kind: int, author: str, created_at_ms: int, tags: Iterable[tuple[str, str]], content: str) -> str:
    return create_deterministic_id(
        str(int(kind)),
        author,
        str(created_at_ms),
        canonical_json([list(t) for t in tags]),
        content,
    )


def make_envelope(
    kind: int,
    author: str,
    created_at_ms: int,
    tags: Iterable[tuple[str, str]],
    content: Mapping[str, Any],
    signature: str | None = None,
) -> Envelope:
    tag_tuple = tuple((str(k), str(v)) for k, v in tags)
    text = canonical_json(dict(content))
    return Envelope(
        id=envelope_id(kind, author, created_at_ms, tag_tuple, text),
        kind=int(kind),
        author=author,
        created_at_ms=created_at_ms,
        tags=tag_tuple,
        content=text,
        signature=signature,
    )


def envelope_from_dict(data: Mapping[str, Any]) -> Envelope:
    """Parse and check an envelope received from a relay.

    Raises:
        ValidationError: Missing fields, wrong types, or an id that does not
            match the content.
    """

    try:
        raw_tags = data.get("tags") or []
        env = Envelope(
            id=str(data["id"]),
            kind=int(data["kind"]),
            author=str(data["author"]),
            created_at_ms=int(data["created_at"]),
            tags=tuple((str(t[0]), str(t[1])) for t in raw_tags),
            content=str(data["content"]),
            signature=data.get("sig"),
        )
    except (KeyError, TypeError, ValueError, IndexError) as exc:
        raise ValidationError(f"malformed envelope: {exc}") from exc

    if not env.author:
        raise ValidationError(f"envelope {env.id}: empty author")
    expected = envelope_id(env.kind, env.author, env.created_at_ms, env.tags, env.content)
    if expected != env.id:
        raise ValidationError(f"envelope {env.id}: id does not match content")
    return env


def dumps_envelope(env: Envelope) -> str:
    return json.dumps(env.to_dict(), ensure_ascii=False, sort_keys=True)


def loads_envelope(line: str) -> Envelope:
    try:
        data = json.loads(line)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"envelope line is not JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ValidationError("envelope line is not an object")
    return envelope_from_dict(data)


@dataclass(frozen=True, slots=True)
class EventFilter:
    """Subscription filter. Empty criteria match everything."""

    kinds: frozenset[int] = frozenset()
    authors: frozenset[str] = frozenset()
    refs: frozenset[str] = frozenset()
    checkpoint_ids: frozenset[str] = frozenset()
    team_ids: frozenset[str] = frozenset()

    def matches(self, env: Envelope) -> bool:
        if self.kinds and env.kind not in self.kinds:
            return False
        if self.authors and env.author not in self.authors:
            return False
        if self.refs and not self.refs.intersection(env.tag_values("a")):
            return False
        if self.checkpoint_ids and not self.checkpoint_ids.intersection(env.tag_values("checkpoint")):
            return False
        if self.team_ids and not self.team_ids.intersection(env.tag_values("team")):
            return False
        return True


def _evidence_dict(proof: ProofEvent) -> dict[str, Any]:
    out: dict[str, Any] = {}
    if proof.geofence is not None:
        g = proof.geofence
        out["geofence"] = {
            "entered_at": g.entered_at_ms,
            "lat_hint": g.lat_hint,
            "lng_hint": g.lng_hint,
            "accuracy_m": g.accuracy_m,
        }
    if proof.nfc is not None:
        n = proof.nfc
        out["nfc"] = {"tag_id": n.tag_id, "nonce": n.nonce, "challenge": n.challenge, "verified": n.verified}
    out["question_answered"] = proof.question_answered
    return out


def proof_to_envelope(proof: ProofEvent, signature: str | None = None) -> Envelope:
    """Wrap a proof for publication. Refs go into ``a`` tags untouched."""

    tags: list[tuple[str, str]] = []
    if proof.challenge_ref:
        tags.append(("a", proof.challenge_ref))
    if proof.route_ref:
        tags.append(("a", proof.route_ref))
    if proof.team_id:
        tags.append(("team", proof.team_id))
    tags.append(("checkpoint", proof.checkpoint_id))
    tags.append(("method", "geofence"))
    if proof.nfc is not None:
        tags.append(("method", "nfc"))
    tags.append(("state", proof.state.value))
    return make_envelope(EventKind.PROOF, proof.author, proof.timestamp_ms, tags, _proof_content(proof), signature)


def _proof_content(proof: ProofEvent) -> dict[str, Any]:
    device = proof.device
    return {
        "schema": PROOF_SCHEMA,
        "proof_id": proof.id,
        "checkpoint_id": proof.checkpoint_id,
        "team_id": proof.team_id,
        "state": proof.state.value,
        "timestamp": proof.timestamp_ms,
        "evidence": _evidence_dict(proof),
        "device": None
        if device is None
        else {"platform": device.platform, "app_version": device.app_version, "attestation": device.attestation},
        "proof_hash": proof.proof_hash,
        "pow_nonce": proof.pow_nonce,
        "challenge_ref": proof.challenge_ref,
        "route_ref": proof.route_ref,
        "version": 1,
    }


def proof_preference_key(proof: ProofEvent) -> tuple[int, int, int, str]:
    """Sort key choosing between copies of one proof id; lowest wins.

    The id does not cover evidence (the proof-of-work is computed over it), so
    a proof can be republished with NFC evidence or a PoW nonce attached. The
    copy carrying more evidence is preferred, then the smallest canonical
    content, so every reader settles on the same copy whatever the arrival order.
    """

    return (
        0 if proof.nfc_verified else 1,
        0 if proof.pow_nonce is not None else 1,
        0 if proof.question_answered else 1,
        canonical_json(_proof_content(proof)),
    )


def _opt_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def proof_from_envelope(env: Envelope) -> ProofEvent:
    """Decode a proof envelope.

    Raises:
        ValidationError: Wrong kind, missing checkpoint id, non-positive
            timestamp, unknown state, or a proof id that does not match.
    """

    if env.kind != EventKind.PROOF:
        raise ValidationError(f"envelope {env.id}: kind {env.kind} is not a proof")
    data = env.content_json()

    checkpoint_id = _opt_str(data.get("checkpoint_id"))
    if checkpoint_id is None:
        raise ValidationError(f"envelope {env.id}: missing checkpoint_id")
    try:
        timestamp_ms = int(data.get("timestamp", 0))
        state = CheckpointState(data.get("state"))
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"envelope {env.id}: {exc}") from exc
    if timestamp_ms <= 0:
        raise ValidationError(f"envelope {env.id}: non-positive timestamp")

    evidence = data.get("evidence") or {}
    try:
        geofence = None
        if evidence.get("geofence"):
            g = evidence["geofence"]
            geofence = GeofenceEvidence(
                entered_at_ms=int(g["entered_at"]),
                lat_hint=float(g["lat_hint"]),
                lng_hint=float(g["lng_hint"]),
                accuracy_m=None if g.get("accuracy_m") is None else float(g["accuracy_m"]),
            )
        nfc = None
        if evidence.get("nfc"):
            n = evidence["nfc"]
            nfc = NfcEvidence(
                tag_id=str(n["tag_id"]),
                nonce=str(n["nonce"]),
                challenge=str(n.get("challenge", "")),
                verified=bool(n.get("verified", False)),
            )
        dev = data.get("device")
        device = (
            None
            if not dev
            else DeviceInfo(
                platform=str(dev.get("platform", "")),
                app_version=str(dev.get("app_version", "")),
                attestation=dev.get("attestation"),
            )
        )
        pow_nonce = None if data.get("pow_nonce") is None else int(data["pow_nonce"])
    except (AttributeError, KeyError, TypeError, ValueError) as exc:
        raise ValidationError(f"envelope {env.id}: bad evidence: {exc}") from exc

    team_id = _opt_str(data.get("team_id"))
    proof_hash = str(data.get("proof_hash", ""))
    proof_id = compute_proof_id(checkpoint_id, team_id, env.author, state, timestamp_ms, proof_hash)
    if data.get("proof_id") != proof_id:
        raise ValidationError(f"envelope {env.id}: proof id does not match content")

    return ProofEvent(
        id=proof_id,
        checkpoint_id=checkpoint_id,
        team_id=team_id,
        author=env.author,
        state=state,
        timestamp_ms=timestamp_ms,
        proof_hash=proof_hash,
        geofence=geofence,
        nfc=nfc,
        question_answered=bool(evidence.get("question_answered", False)),
        device=device,
        pow_nonce=pow_nonce,
        challenge_ref=_opt_str(data.get("challenge_ref")),
        route_ref=_opt_str(data.get("route_ref")),
    )


def team_to_envelope(team: Team, signature: str | None = None) -> Envelope:
    tags = [("d", f"team:{team.id}")]
    if team.challenge_ref:
        tags.append(("a", team.challenge_ref))
    tags.append(("team", team.id))
    content = {
        "schema": TEAM_SCHEMA,
        "team_id": team.id,
        "name": team.name,
        "captain": team.captain,
        "max_members": team.max_members,
        "invite_code": team.invite_code,
        "created_at": team.created_at_ms,
        "challenge_ref": team.challenge_ref,
        "version": 1,
    }
    return make_envelope(EventKind.TEAM, team.captain, team.created_at_ms, tags, content, signature)


def team_from_envelope(env: Envelope) -> Team:
    """Decode a team definition; only the captain may publish it."""

    if env.kind != EventKind.TEAM:
        raise ValidationError(f"envelope {env.id}: kind {env.kind} is not a team")
    data = env.content_json()
    try:
        team = Team(
            id=str(data["team_id"]),
            name=str(data.get("name", "")),
            captain=str(data["captain"]),
            invite_code=str(data["invite_code"]),
            created_at_ms=int(data["created_at"]),
            max_members=int(data.get("max_members", 5)),
            challenge_ref=_opt_str(data.get("challenge_ref")),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise ValidationError(f"envelope {env.id}: bad team: {exc}") from exc
    if not team.id:
        raise ValidationError(f"envelope {env.id}: missing team id")
    if team.captain != env.author:
        raise ValidationError(f"envelope {env.id}: team published by non-captain")
    return team


@dataclass(frozen=True, slots=True)
class TeamJoin:
    team_id: str
    member: str
    invite_code: str
    joined_at_ms: int
    envelope_id: str


def join_to_envelope(team_id: str, member: str, invite_code: str, joined_at_ms: int) -> Envelope:
    content = {"schema": JOIN_SCHEMA, "team_id": team_id, "invite_code": invite_code, "version": 1}
    return make_envelope(EventKind.TEAM_JOIN, member, joined_at_ms, [("team", team_id)], content)


def join_from_envelope(env: Envelope) -> TeamJoin:
    if env.kind != EventKind.TEAM_JOIN:
        raise ValidationError(f"envelope {env.id}: kind {env.kind} is not a team join")
    data = env.content_json()
    team_id = _opt_str(data.get("team_id"))
    if team_id is None:
        raise ValidationError(f"envelope {env.id}: missing team id")
    return TeamJoin(
        team_id=team_id,
        member=env.author,
        invite_code=str(data.get("invite_code", "")),
        joined_at_ms=env.created_at_ms,
        envelope_id=env.id,
    )
