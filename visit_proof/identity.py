"""Participant identity, its storage, and encrypted key backup.

The identity scheme here is a placeholder: the author id is the SHA-256 of a
random secret. A real deployment swaps in an asymmetric keypair at the
transport boundary; nothing else in the engine depends on how ids are made.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from visit_proof.proofs import decrypt_data, encrypt_data, generate_nonce, sha256_hex

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Identity:
    author: str
    secret: str

    def to_dict(self) -> dict[str, str]:
        return {"author": self.author, "secret": self.secret}


def generate_identity() -> Identity:
    secret = generate_nonce(32)
    return Identity(author=sha256_hex(secret), secret=secret)


def identity_from_secret(secret: str) -> Identity:
    return Identity(author=sha256_hex(secret), secret=secret)


class IdentityStore(Protocol):
    """Where the engine keeps its identity. Injected, never global."""

    def get_identity(self) -> Identity | None: ...

    def set_identity(self, identity: Identity) -> None: ...


class MemoryIdentityStore:
    def __init__(self, identity: Identity | None = None) -> None:
        self._identity = identity

    def get_identity(self) -> Identity | None:
        return self._identity

    def set_identity(self, identity: Identity) -> None:
        self._identity = identity


class JsonFileIdentityStore:
    """Identity persisted as a small JSON file (written atomically)."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    def get_identity(self) -> Identity | None:
        if not self._path.exists():
            return None
        text = self._path.read_text(encoding="utf-8").strip()
        if not text:
            return None
        try:
            data = json.loads(text)
            return identity_from_secret(str(data["secret"]))
        except (json.JSONDecodeError, KeyError, TypeError) as exc:
            raise ValueError(f"身份文件损坏：{self._path}") from exc

    def set_identity(self, identity: Identity) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(json.dumps(identity.to_dict(), indent=2), encoding="utf-8")
        tmp.replace(self._path)


def load_or_create_identity(store: IdentityStore) -> Identity:
    identity = store.get_identity()
    if identity is None:
        identity = generate_identity()
        store.set_identity(identity)
        logger.info("Created new identity %s", identity.author[:12])
    return identity


def export_backup(identity: Identity, password: str) -> str:
    """Encrypt the identity secret for backup."""

    return encrypt_data(json.dumps({"secret": identity.secret}), password)


def import_backup(blob: str, password: str) -> Identity | None:
    """Restore an identity from ``export_backup`` output. Wrong password gives None."""

    plaintext = decrypt_data(blob, password)
    if plaintext is None:
        return None
    try:
        return identity_from_secret(str(json.loads(plaintext)["secret"]))
    except (json.JSONDecodeError, KeyError, TypeError):
        return None
