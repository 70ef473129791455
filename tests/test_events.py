"""
Tests for envelopes, proof/team codecs and the de-duplicating event log.
"""

from __future__ import annotations

import asyncio
import dataclasses
import itertools
import unittest

from visit_proof.errors import ValidationError
from visit_proof.events import (
    EventFilter,
    EventKind,
    dumps_envelope,
    envelope_from_dict,
    join_to_envelope,
    loads_envelope,
    make_envelope,
    proof_from_envelope,
    proof_to_envelope,
    team_from_envelope,
    team_to_envelope,
)
from visit_proof.ingest import EventLog
from visit_proof.models import ScoringRules, ScoringType, Team
from visit_proof.proofs import create_merkle_root, generate_proof_of_work, sha256_hex
from visit_proof.routes import route_to_envelope
from visit_proof.scoring import build_leaderboard

from .test_common import AUTHOR, T0, make_checkpoint, make_fix, make_proof, make_route, make_tracker

CAPTAIN = sha256_hex("captain")
MEMBER_1 = sha256_hex("member-1")
MEMBER_2 = sha256_hex("member-2")


def make_team(team_id: str = "team-a", created_at_ms: int = T0, **kwargs) -> Team:
    defaults = dict(
        id=team_id,
        name=f"Team {team_id}",
        captain=CAPTAIN,
        invite_code="join-me",
        created_at_ms=created_at_ms,
        max_members=3,
    )
    defaults.update(kwargs)
    return Team(**defaults)


class TestEnvelope(unittest.TestCase):

    def test_id_depends_on_content(self):
        a = make_envelope(EventKind.PROOF, AUTHOR, T0, [("t", "x")], {"k": 1})
        b = make_envelope(EventKind.PROOF, AUTHOR, T0, [("t", "x")], {"k": 1})
        c = make_envelope(EventKind.PROOF, AUTHOR, T0, [("t", "x")], {"k": 2})
        self.assertEqual(a.id, b.id)
        self.assertNotEqual(a.id, c.id)

    def test_json_line_round_trip(self):
        env = proof_to_envelope(make_proof())
        self.assertEqual(loads_envelope(dumps_envelope(env)), env)

    def test_tampered_content_rejected(self):
        data = proof_to_envelope(make_proof()).to_dict()
        data["content"] = data["content"].replace("cp1", "cp2")
        with self.assertRaises(ValidationError):
            envelope_from_dict(data)

    def test_malformed_envelopes_rejected(self):
        with self.assertRaises(ValidationError):
            envelope_from_dict({"kind": 1})
        with self.assertRaises(ValidationError):
            loads_envelope("not json")
        with self.assertRaises(ValidationError):
            loads_envelope("[1, 2]")

    def test_filter(self):
        env = proof_to_envelope(dataclasses.replace(make_proof(), challenge_ref="challenge:1"))
        self.assertTrue(EventFilter().matches(env))
        self.assertTrue(EventFilter(kinds=frozenset({EventKind.PROOF}), refs=frozenset({"challenge:1"})).matches(env))
        self.assertTrue(EventFilter(team_ids=frozenset({"team-a"}), checkpoint_ids=frozenset({"cp1"})).matches(env))
        self.assertFalse(EventFilter(kinds=frozenset({EventKind.TEAM})).matches(env))
        self.assertFalse(EventFilter(authors=frozenset({"someone"})).matches(env))
        self.assertFalse(EventFilter(refs=frozenset({"challenge:2"})).matches(env))


class TestProofCodec(unittest.TestCase):

    def test_tracker_proof_survives_transport(self):
        tracker = make_tracker([make_checkpoint()])
        proof = tracker.process_fix(make_fix())[1].proof
        env = proof_to_envelope(proof)
        self.assertEqual(env.kind, EventKind.PROOF)
        self.assertEqual(env.tag_values("a"), ["challenge:1", "route:r1"])
        self.assertEqual(env.first_tag("state"), "active")
        self.assertEqual(proof_from_envelope(loads_envelope(dumps_envelope(env))), proof)

    def test_forged_proof_id_rejected(self):
        env = proof_to_envelope(make_proof())
        content = env.content_json()
        content["team_id"] = "team-b"
        forged = make_envelope(env.kind, env.author, env.created_at_ms, env.tags, content)
        with self.assertRaises(ValidationError):
            proof_from_envelope(forged)

    def test_missing_fields_rejected(self):
        env = proof_to_envelope(make_proof())
        for key, value in (("checkpoint_id", ""), ("timestamp", 0), ("state", "bogus")):
            content = env.content_json()
            content[key] = value
            broken = make_envelope(env.kind, env.author, env.created_at_ms, env.tags, content)
            with self.subTest(key=key), self.assertRaises(ValidationError):
                proof_from_envelope(broken)

    def test_team_must_come_from_captain(self):
        env = team_to_envelope(make_team())
        self.assertEqual(team_from_envelope(env), make_team())
        content = env.content_json()
        hijacked = make_envelope(EventKind.TEAM, MEMBER_1, env.created_at_ms, env.tags, content)
        with self.assertRaises(ValidationError):
            team_from_envelope(hijacked)


class TestEventLog(unittest.TestCase):

    def test_duplicates_collapse(self):
        log = EventLog()
        env = proof_to_envelope(make_proof())
        self.assertTrue(log.add(env))
        self.assertFalse(log.add(env))
        self.assertFalse(log.add(env.to_dict()))
        self.assertEqual(len(log), 1)
        self.assertEqual(len(log.proofs()), 1)
        self.assertIn(env.id, log)

    def test_invalid_envelopes_dropped(self):
        log = EventLog()
        bad = proof_to_envelope(make_proof()).to_dict()
        bad["id"] = "0" * 64
        self.assertFalse(log.add(bad))
        self.assertFalse(log.add(proof_to_envelope(make_proof(team_id=None))))
        self.assertEqual(log.dropped, 2)
        self.assertEqual(len(log), 0)

    def test_order_independent(self):
        envs = [proof_to_envelope(make_proof(checkpoint_id=f"cp{i}", timestamp_ms=T0 + i)) for i in range(5)]
        forward = EventLog()
        forward.add_many(envs)
        backward = EventLog()
        backward.add_many(reversed(envs + envs))
        self.assertEqual(forward.proofs(), backward.proofs())
        self.assertEqual(forward.merkle_root(), backward.merkle_root())
        self.assertEqual(forward.merkle_root(), create_merkle_root(sorted(p.id for p in forward.proofs())))

    def test_copies_with_different_evidence_settle_the_same_way(self):
        plain = make_proof()
        with_nfc = make_proof(nfc_verified=True)
        with_pow = make_proof(pow_nonce=generate_proof_of_work(plain.id, 2).nonce)
        envs = [proof_to_envelope(p) for p in (plain, with_nfc, with_pow)]
        self.assertEqual(len({e.id for e in envs}), 3)

        points = ScoringRules(scoring_type=ScoringType.POINTS)
        pow_rules = ScoringRules(scoring_type=ScoringType.POINTS, pow_difficulty=2)
        for order in itertools.permutations(envs):
            log = EventLog()
            log.add_many(order)
            self.assertEqual(log.proofs(), [with_nfc])
            self.assertEqual(set(log.proof_copies()), {plain, with_nfc, with_pow})
            self.assertEqual(log.merkle_root(), create_merkle_root([plain.id]))
            self.assertEqual([e.score for e in build_leaderboard(log.proof_copies(), points)], [150.0])
            self.assertEqual([e.score for e in build_leaderboard(log.proof_copies(), pow_rules)], [100.0])

    def test_empty_log_merkle_root(self):
        self.assertEqual(EventLog().merkle_root(), "")

    def test_team_membership_from_joins(self):
        log = EventLog()
        log.add(team_to_envelope(make_team()))
        log.add(join_to_envelope("team-a", MEMBER_1, "join-me", T0 + 10))
        log.add(join_to_envelope("team-a", MEMBER_2, "wrong-code", T0 + 20))
        team = log.teams()["team-a"]
        self.assertEqual(team.members, frozenset({MEMBER_1}))
        self.assertEqual(team.roster, frozenset({CAPTAIN, MEMBER_1}))

    def test_team_capacity_enforced(self):
        log = EventLog()
        log.add(team_to_envelope(make_team(max_members=2)))
        log.add(join_to_envelope("team-a", MEMBER_2, "join-me", T0 + 20))
        log.add(join_to_envelope("team-a", MEMBER_1, "join-me", T0 + 10))
        team = log.teams()["team-a"]
        # the earlier join wins the last seat
        self.assertEqual(team.members, frozenset({MEMBER_1}))
        self.assertTrue(team.is_full)

    def test_earliest_team_definition_wins(self):
        log = EventLog()
        log.add(team_to_envelope(make_team(created_at_ms=T0 + 100, name="Later")))
        log.add(team_to_envelope(make_team(created_at_ms=T0, name="First")))
        self.assertEqual(log.teams()["team-a"].name, "First")

    def test_routes_indexed(self):
        log = EventLog()
        route = make_route([make_checkpoint()])
        self.assertTrue(log.add(route_to_envelope(route, AUTHOR, T0)))
        self.assertEqual(log.routes(), {"r1": route})

    def test_consume_async_stream(self):
        envs = [proof_to_envelope(make_proof(checkpoint_id=f"cp{i}")) for i in range(3)]

        async def stream():
            for env in envs + envs:
                yield env

        log = EventLog()
        self.assertEqual(asyncio.run(log.consume(stream())), 3)

        limited = EventLog()
        self.assertEqual(asyncio.run(limited.consume(stream(), limit=2)), 2)


if __name__ == "__main__":
    unittest.main()
