"""
Tests for CheckpointTracker transitions and the TrackingSession lifecycle.
"""

from __future__ import annotations

import threading
import unittest
from unittest.mock import MagicMock

from visit_proof.errors import SensorError, VerificationFailure
from visit_proof.geofence import ReplayLocationSource, TrackerParams, TrackingSession
from visit_proof.models import CheckpointState, ProofMethod, QuestionSpec
from visit_proof.proofs import generate_nfc_challenge, hash_answer, verify_proof_of_work

from .test_common import (
    AUTHOR,
    T0,
    TAG_SECRET,
    make_checkpoint,
    make_fix,
    make_nfc_checkpoint,
    make_tracker,
)

INSIDE_LNG = 8.48722  # ~1.4 m east of the checkpoint center


class TestFixProcessing(unittest.TestCase):

    def test_accurate_fix_inside_marks_seen(self):
        tracker = make_tracker([make_nfc_checkpoint()])
        changes = tracker.process_fix(make_fix(lng=INSIDE_LNG, accuracy_m=10.0))
        self.assertEqual(len(changes), 1)
        self.assertEqual(changes[0].previous, CheckpointState.LOCKED)
        self.assertEqual(changes[0].current, CheckpointState.SEEN)
        self.assertIsNone(changes[0].proof)
        self.assertEqual(tracker.state("cp1"), CheckpointState.SEEN)
        self.assertEqual(tracker.pending_methods("cp1"), frozenset({ProofMethod.NFC}))

    def test_inaccurate_fix_is_ignored(self):
        tracker = make_tracker([make_nfc_checkpoint()])
        self.assertEqual(tracker.process_fix(make_fix(lng=INSIDE_LNG, accuracy_m=80.0)), [])
        self.assertEqual(tracker.state("cp1"), CheckpointState.LOCKED)

    def test_accuracy_threshold_is_configurable(self):
        tracker = make_tracker([make_nfc_checkpoint()], params=TrackerParams(max_accuracy_m=100.0))
        self.assertEqual(len(tracker.process_fix(make_fix(accuracy_m=80.0))), 1)

    def test_missing_accuracy_counts_as_usable(self):
        tracker = make_tracker([make_nfc_checkpoint()])
        self.assertEqual(len(tracker.process_fix(make_fix(accuracy_m=None))), 1)

    def test_fix_outside_does_nothing(self):
        tracker = make_tracker([make_nfc_checkpoint()])
        self.assertEqual(tracker.process_fix(make_fix(lat=51.19)), [])
        self.assertEqual(tracker.state("cp1"), CheckpointState.LOCKED)

    def test_geofence_only_checkpoint_activates_with_proof(self):
        delivered = []
        tracker = make_tracker([make_checkpoint()], on_proof=delivered.append)
        changes = tracker.process_fix(make_fix(lng=INSIDE_LNG))
        self.assertEqual([c.current for c in changes], [CheckpointState.SEEN, CheckpointState.ACTIVE])
        proof = changes[1].proof
        self.assertIsNotNone(proof)
        self.assertEqual(delivered, [proof])
        self.assertEqual(proof.state, CheckpointState.ACTIVE)
        self.assertEqual(proof.team_id, "team-a")
        self.assertEqual(proof.author, AUTHOR)
        self.assertEqual(proof.route_ref, "route:r1")
        self.assertEqual(proof.geofence.entered_at_ms, T0)

    def test_states_never_move_backwards(self):
        tracker = make_tracker([make_checkpoint()])
        tracker.process_fix(make_fix(ts=T0))
        tracker.process_fix(make_fix(lat=51.19, ts=T0 + 1000))
        tracker.process_fix(make_fix(ts=T0 + 2000))
        self.assertEqual(tracker.state("cp1"), CheckpointState.ACTIVE)

    def test_one_fix_can_hit_several_checkpoints(self):
        tracker = make_tracker([make_checkpoint("a"), make_nfc_checkpoint("b", lng=8.48725)])
        changes = tracker.process_fix(make_fix(lng=INSIDE_LNG))
        self.assertEqual(tracker.states(), {"a": CheckpointState.ACTIVE, "b": CheckpointState.SEEN})
        self.assertEqual(len(changes), 3)

    def test_failing_proof_callback_keeps_state(self):
        def boom(_proof):
            raise RuntimeError("sink down")

        tracker = make_tracker([make_checkpoint()], on_proof=boom)
        with self.assertLogs("visit_proof.geofence", level="ERROR"):
            tracker.process_fix(make_fix())
        self.assertEqual(tracker.state("cp1"), CheckpointState.ACTIVE)

    def test_unknown_checkpoint(self):
        tracker = make_tracker([make_checkpoint()])
        with self.assertRaises(KeyError):
            tracker.state("nope")

    def test_state_read_waits_for_update_in_progress(self):
        tracker = make_tracker([make_checkpoint()])
        result = []
        reader = threading.Thread(target=lambda: result.append(tracker.state("cp1")))
        with tracker._lock:
            reader.start()
            reader.join(0.05)
            self.assertTrue(reader.is_alive())
        reader.join(5)
        self.assertEqual(result, [CheckpointState.LOCKED])

    def test_nearby_sorted_by_distance(self):
        tracker = make_tracker([make_checkpoint("far", lat=51.1830), make_checkpoint("near")])
        hits = tracker.nearby(make_fix(), 200.0)
        self.assertEqual([cp.id for cp, _ in hits], ["near", "far"])


class TestConfirmations(unittest.TestCase):

    def _seen_nfc_tracker(self, **kwargs):
        tracker = make_tracker([make_nfc_checkpoint()], **kwargs)
        tracker.process_fix(make_fix(lng=INSIDE_LNG))
        return tracker

    def test_nfc_activates(self):
        tracker = self._seen_nfc_tracker()
        wire = generate_nfc_challenge("tag-cp1", T0 + 5000, TAG_SECRET)
        changes = tracker.confirm_nfc("cp1", wire, TAG_SECRET, T0 + 5000)
        self.assertEqual([c.current for c in changes], [CheckpointState.ACTIVE])
        self.assertTrue(changes[0].proof.nfc_verified)
        self.assertEqual(changes[0].proof.nfc.challenge, wire)

    def test_nfc_wrong_secret_stays_seen(self):
        tracker = self._seen_nfc_tracker()
        wire = generate_nfc_challenge("tag-cp1", T0, "forged")
        with self.assertRaises(VerificationFailure):
            tracker.confirm_nfc("cp1", wire, TAG_SECRET, T0)
        self.assertEqual(tracker.state("cp1"), CheckpointState.SEEN)

    def test_nfc_wrong_tag_stays_seen(self):
        tracker = self._seen_nfc_tracker()
        wire = generate_nfc_challenge("tag-other", T0, TAG_SECRET)
        with self.assertRaises(VerificationFailure):
            tracker.confirm_nfc("cp1", wire, TAG_SECRET, T0)
        self.assertEqual(tracker.state("cp1"), CheckpointState.SEEN)

    def test_nfc_before_geofence_rejected(self):
        tracker = make_tracker([make_nfc_checkpoint()])
        wire = generate_nfc_challenge("tag-cp1", T0, TAG_SECRET)
        with self.assertRaises(VerificationFailure):
            tracker.confirm_nfc("cp1", wire, TAG_SECRET, T0)
        self.assertEqual(tracker.state("cp1"), CheckpointState.LOCKED)

    def test_repeat_confirmation_is_noop(self):
        tracker = self._seen_nfc_tracker()
        wire = generate_nfc_challenge("tag-cp1", T0, TAG_SECRET)
        tracker.confirm_nfc("cp1", wire, TAG_SECRET, T0)
        self.assertEqual(tracker.confirm_nfc("cp1", wire, TAG_SECRET, T0 + 1), [])

    def test_question_answer(self):
        cp = make_checkpoint(
            required_methods=frozenset({ProofMethod.GEOFENCE, ProofMethod.QUESTION}),
            question=QuestionSpec(prompt="Door colour?", answer_hash=hash_answer("blue")),
        )
        tracker = make_tracker([cp])
        tracker.process_fix(make_fix())
        with self.assertRaises(VerificationFailure):
            tracker.answer_question("cp1", "red", T0 + 1)
        self.assertEqual(tracker.state("cp1"), CheckpointState.SEEN)
        changes = tracker.answer_question("cp1", " Blue ", T0 + 2)
        self.assertEqual(changes[0].current, CheckpointState.ACTIVE)
        self.assertTrue(changes[0].proof.question_answered)

    def test_redeem(self):
        tracker = make_tracker([make_checkpoint()])
        with self.assertRaises(VerificationFailure):
            tracker.redeem("cp1", T0)
        tracker.process_fix(make_fix())
        changes = tracker.redeem("cp1", T0 + 10)
        self.assertEqual(changes[0].current, CheckpointState.REDEEMED)
        self.assertEqual(changes[0].proof.state, CheckpointState.REDEEMED)
        self.assertEqual(tracker.redeem("cp1", T0 + 20), [])

    def test_pow_attached_when_configured(self):
        tracker = make_tracker([make_checkpoint()], params=TrackerParams(pow_difficulty=2))
        proof = tracker.process_fix(make_fix())[1].proof
        self.assertIsNotNone(proof.pow_nonce)
        self.assertTrue(verify_proof_of_work(proof.id, proof.pow_nonce, 2))

    def test_pow_exhaustion_still_activates(self):
        params = TrackerParams(pow_difficulty=64, pow_max_iterations=5)
        tracker = make_tracker([make_checkpoint()], params=params)
        with self.assertLogs("visit_proof.geofence", level="WARNING"):
            changes = tracker.process_fix(make_fix())
        self.assertEqual(changes[-1].current, CheckpointState.ACTIVE)
        self.assertIsNone(changes[-1].proof.pow_nonce)


class TestExpiry(unittest.TestCase):

    def test_window_end_expires_open_checkpoints(self):
        tracker = make_tracker(
            [make_nfc_checkpoint("a"), make_checkpoint("b", lat=51.19)],
            params=TrackerParams(window_end_ms=T0 + 1000),
        )
        tracker.process_fix(make_fix(ts=T0))
        changes = tracker.process_fix(make_fix(ts=T0 + 2000))
        self.assertEqual({c.checkpoint_id: c.current for c in changes}, {"a": CheckpointState.EXPIRED, "b": CheckpointState.EXPIRED})
        self.assertEqual(tracker.state("a"), CheckpointState.EXPIRED)

    def test_nfc_after_window_is_not_applied(self):
        tracker = make_tracker([make_nfc_checkpoint()], params=TrackerParams(window_end_ms=T0 + 1000))
        tracker.process_fix(make_fix(ts=T0))
        wire = generate_nfc_challenge("tag-cp1", T0 + 5000, TAG_SECRET)
        changes = tracker.confirm_nfc("cp1", wire, TAG_SECRET, T0 + 5000)
        self.assertEqual([c.current for c in changes], [CheckpointState.EXPIRED])

    def test_redeemed_never_expires(self):
        tracker = make_tracker([make_checkpoint()])
        tracker.process_fix(make_fix())
        tracker.redeem("cp1", T0 + 1)
        self.assertEqual(tracker.expire(T0 + 2), [])
        self.assertEqual(tracker.state("cp1"), CheckpointState.REDEEMED)


class TestTrackingSession(unittest.TestCase):

    def test_replay_drives_tracker(self):
        tracker = make_tracker([make_checkpoint()])
        source = ReplayLocationSource([make_fix(lat=51.19, ts=T0), make_fix(ts=T0 + 1000)])
        seen = []
        with TrackingSession(source, tracker, on_change=seen.append) as session:
            self.assertTrue(session.is_tracking)
            self.assertEqual(source.replay(), 2)
        self.assertEqual([c.current for c in seen], [CheckpointState.SEEN, CheckpointState.ACTIVE])
        self.assertEqual(source.active_watches, 0)

    def test_permission_denied(self):
        tracker = make_tracker([make_checkpoint()])
        source = ReplayLocationSource([], permission=False)
        session = TrackingSession(source, tracker)
        with self.assertRaises(SensorError):
            session.start()
        self.assertFalse(session.is_tracking)

    def test_unavailable_source(self):
        source = MagicMock()
        source.request_permission.return_value = True
        source.watch.side_effect = OSError("no gps")
        session = TrackingSession(source, make_tracker([make_checkpoint()]))
        with self.assertRaises(SensorError):
            session.start()
        self.assertFalse(session.is_tracking)

    def test_stop_releases_watch_and_is_idempotent(self):
        source = ReplayLocationSource([make_fix()])
        session = TrackingSession(source, make_tracker([make_checkpoint()]))
        session.start()
        self.assertEqual(source.active_watches, 1)
        session.stop()
        session.stop()
        self.assertEqual(source.active_watches, 0)
        self.assertEqual(source.replay(), 1)


if __name__ == "__main__":
    unittest.main()
