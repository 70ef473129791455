"""
Tests for identity creation, file storage and encrypted backups.
"""

from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from visit_proof.identity import (
    JsonFileIdentityStore,
    MemoryIdentityStore,
    export_backup,
    generate_identity,
    identity_from_secret,
    import_backup,
    load_or_create_identity,
)
from visit_proof.proofs import sha256_hex


class TestIdentity(unittest.TestCase):

    def test_author_derived_from_secret(self):
        identity = generate_identity()
        self.assertEqual(identity.author, sha256_hex(identity.secret))
        self.assertEqual(identity_from_secret(identity.secret), identity)

    def test_load_or_create_is_stable(self):
        store = MemoryIdentityStore()
        first = load_or_create_identity(store)
        self.assertEqual(load_or_create_identity(store), first)

    def test_file_store_persists(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "id" / "identity.json"
            created = load_or_create_identity(JsonFileIdentityStore(path))
            self.assertTrue(path.exists())
            self.assertEqual(JsonFileIdentityStore(path).get_identity(), created)

    def test_corrupt_file_raises(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "identity.json"
            path.write_text("{not json", encoding="utf-8")
            with self.assertRaises(ValueError):
                JsonFileIdentityStore(path).get_identity()

    def test_empty_file_means_no_identity(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "identity.json"
            path.write_text("", encoding="utf-8")
            self.assertIsNone(JsonFileIdentityStore(path).get_identity())

    def test_backup_round_trip(self):
        identity = generate_identity()
        blob = export_backup(identity, "correct horse")
        self.assertNotIn(identity.secret, blob)
        self.assertEqual(import_backup(blob, "correct horse"), identity)

    def test_backup_wrong_password(self):
        blob = export_backup(generate_identity(), "correct horse")
        self.assertIsNone(import_backup(blob, "battery staple"))


if __name__ == "__main__":
    unittest.main()
