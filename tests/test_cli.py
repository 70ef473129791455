"""
End-to-end tests for the command-line interface on temporary files.
"""

from __future__ import annotations

import contextlib
import io
import json
import tempfile
import unittest
from pathlib import Path

from visit_proof.cli import main
from visit_proof.csv_io import write_position_fixes
from visit_proof.routes import load_route, save_route

from .test_common import T0, make_checkpoint, make_fix, make_nfc_checkpoint, make_route


def _run(argv: list[str]) -> tuple[int, str]:
    out = io.StringIO()
    with contextlib.redirect_stdout(out), contextlib.redirect_stderr(io.StringIO()):
        code = main(argv)
    return code, out.getvalue()


class TestCli(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)
        self.events = str(self.tmp / "events.jsonl")

    def tearDown(self):
        self._tmp.cleanup()

    def _track(self, route, fixes, team: str, identity: str, *extra: str) -> int:
        route_path = self.tmp / "route.json"
        csv_path = self.tmp / f"{team}.csv"
        save_route(route, route_path)
        write_position_fixes(fixes, csv_path)
        code, _ = _run(
            [
                "track",
                "--route", str(route_path),
                "--csv", str(csv_path),
                "--identity", str(self.tmp / identity),
                "--team", team,
                "--relay", self.events,
                *extra,
            ]
        )
        return code

    def test_sample_writes_checkpoints(self):
        src = self.tmp / "route.json"
        out = self.tmp / "placed.json"
        save_route(make_route(), src)
        code, stdout = _run(["sample", "--route", str(src), "--out", str(out), "--count", "3", "--min-distance-m", "100", "--seed", "5"])
        self.assertEqual(code, 0)
        self.assertEqual(len(load_route(out).checkpoints), 3)
        self.assertIn("3/3", stdout)

    def test_track_then_leaderboard(self):
        route = make_route([make_checkpoint("cp-a"), make_checkpoint("cp-b", lat=51.1845, lng=8.4920)])
        self.assertEqual(self._track(route, [make_fix(ts=T0), make_fix(lat=51.1845, lng=8.4920, ts=T0 + 60_000)], "A", "a.json"), 0)
        self.assertEqual(self._track(route, [make_fix(ts=T0 + 1000)], "B", "b.json"), 0)

        code, stdout = _run(["leaderboard", "--relay", self.events, "--json"])
        self.assertEqual(code, 0)
        payload = json.loads(stdout)
        board = [(e["team_id"], e["score"], e["rank"]) for e in payload["leaderboard"]]
        self.assertEqual(board, [("A", 2.0, 1), ("B", 1.0, 2)])
        self.assertEqual(payload["stats"]["total_teams"], 2)

        code, stdout = _run(["merkle", "--relay", self.events])
        self.assertEqual(code, 0)
        self.assertIn("proofs=3", stdout)

    def test_track_with_nfc_secret(self):
        route = make_route([make_nfc_checkpoint("cp-a")])
        self._track(route, [make_fix(ts=T0)], "A", "a.json", "--nfc-secret", "tag-cp-a=s3cret")
        self._track(route, [make_fix(ts=T0)], "B", "b.json")

        code, stdout = _run(["leaderboard", "--relay", self.events, "--json", "--nfc-required", "--nfc-secret", "tag-cp-a=s3cret"])
        self.assertEqual(code, 0)
        self.assertEqual([e["team_id"] for e in json.loads(stdout)["leaderboard"]], ["A"])

    def test_teams(self):
        ident = str(self.tmp / "captain.json")
        code, stdout = _run(["team-create", "--team-id", "t1", "--name", "Red", "--invite-code", "abc", "--identity", ident, "--relay", self.events])
        self.assertEqual(code, 0)
        self.assertIn("abc", stdout)
        code, _ = _run(["team-join", "--team-id", "t1", "--invite-code", "abc", "--identity", str(self.tmp / "m.json"), "--relay", self.events])
        self.assertEqual(code, 0)
        self.assertEqual(len(Path(self.events).read_text(encoding="utf-8").splitlines()), 2)

    def test_identity_backup(self):
        ident = str(self.tmp / "id.json")
        code, stdout = _run(["identity", "--identity", ident, "--export-backup", "--password", "pw"])
        self.assertEqual(code, 0)
        author_line, blob = stdout.strip().splitlines()
        restored = str(self.tmp / "restored.json")
        code, stdout = _run(["identity", "--identity", restored, "--import-backup", blob, "--password", "pw"])
        self.assertEqual(code, 0)
        self.assertIn(author_line.split("=", 1)[1], stdout)
        code, _ = _run(["identity", "--identity", restored, "--import-backup", blob, "--password", "bad"])
        self.assertEqual(code, 1)

    def test_missing_route_file(self):
        code, _ = _run(["sample", "--route", str(self.tmp / "nope.json")])
        self.assertEqual(code, 1)


if __name__ == "__main__":
    unittest.main()
