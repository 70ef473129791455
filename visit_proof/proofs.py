"""Proof protocol: hashing, NFC challenge-response, Merkle roots, proof-of-work, key backup crypto.

Digests are SHA-256 hex strings throughout. The symmetric cipher used for
local key backup is AES-256-GCM from ``cryptography``.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass
from typing import Final

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from visit_proof.errors import ThrottleExhaustion
from visit_proof.models import CheckpointState, Coordinate

ID_SEPARATOR: Final[str] = "|"
LOCATION_DECIMALS: Final[int] = 6  # ~0.11 m
POW_MAX_ITERATIONS: Final[int] = 1_000_000
KDF_ITERATIONS: Final[int] = 100_000
KDF_KEY_BYTES: Final[int] = 32
_SALT_BYTES: Final[int] = 16
_GCM_NONCE_BYTES: Final[int] = 12


@dataclass(frozen=True, slots=True)
class NfcPayload:
    tag_id: str
    nonce: str


@dataclass(frozen=True, slots=True)
class ProofData:
    """The raw observation a proof hash commits to."""

    timestamp_ms: int
    location: Coordinate
    accuracy_m: float | None = None
    nfc: NfcPayload | None = None


@dataclass(frozen=True, slots=True)
class ProofOfWork:
    hash: str
    nonce: int


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def canonical_json(value: object) -> str:
    """Stable serialization: sorted keys, no whitespace, UTF-8 kept as is."""

    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def hash_proof_data(proof: ProofData) -> str:
    """Hash the canonical form of a proof observation.

    The location is rounded to 6 decimal places so float jitter below ~0.1 m
    does not change the hash.
    """

    payload = {
        "timestamp": proof.timestamp_ms,
        "location": {
            "lat": round(proof.location.lat, LOCATION_DECIMALS),
            "lng": round(proof.location.lng, LOCATION_DECIMALS),
        },
        "accuracy": proof.accuracy_m,
        "nfc": None if proof.nfc is None else {"tagId": proof.nfc.tag_id, "nonce": proof.nfc.nonce},
    }
    return sha256_hex(canonical_json(payload))


def verify_proof_integrity(proof: ProofData, expected_hash: str) -> bool:
    return hmac.compare_digest(hash_proof_data(proof), expected_hash)


def generate_nonce(length_bytes: int = 16) -> str:
    """Cryptographically random nonce as hex."""

    return secrets.token_hex(length_bytes)


def create_deterministic_id(*inputs: str) -> str:
    """Digest of the inputs joined by ``|``. Same inputs, same id, on every relay."""

    return sha256_hex(ID_SEPARATOR.join(inputs))


def compute_proof_id(
    checkpoint_id: str,
    team_id: str | None,
    author: str,
    state: CheckpointState | str,
    timestamp_ms: int,
    proof_hash: str,
) -> str:
    """Content id of a proof event; retransmissions of the same proof share it."""

    return create_deterministic_id(
        checkpoint_id,
        team_id or "",
        author,
        CheckpointState(state).value,
        str(timestamp_ms),
        proof_hash,
    )


def _nfc_signature(challenge: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), challenge.encode("utf-8"), hashlib.sha256).hexdigest()


def generate_nfc_challenge(tag_id: str, timestamp_ms: int, secret: str, nonce: str | None = None) -> str:
    """Build the NFC wire string ``tagId:timestamp:nonce:signature``.

    The signature is HMAC-SHA256 of ``tagId:timestamp:nonce`` keyed with the
    tag secret.
    """

    if ":" in tag_id:
        raise ValueError(f"NFC tag id must not contain ':', got {tag_id!r}")
    challenge = f"{tag_id}:{timestamp_ms}:{nonce or generate_nonce()}"
    return f"{challenge}:{_nfc_signature(challenge, secret)}"


def parse_nfc_challenge(wire: str) -> tuple[str, int, str, str] | None:
    """Split a wire string into (tag_id, timestamp_ms, nonce, signature), or None if malformed."""

    parts = wire.split(":")
    if len(parts) != 4:
        return None
    tag_id, ts, nonce, signature = parts
    try:
        timestamp_ms = int(ts)
    except ValueError:
        return None
    return tag_id, timestamp_ms, nonce, signature


def verify_nfc_challenge(wire: str, secret: str) -> bool:
    """Recompute the HMAC over the first three fields and compare in constant time.

    Malformed input returns False instead of raising.
    """

    parts = wire.split(":")
    if len(parts) != 4:
        return False
    expected = _nfc_signature(":".join(parts[:3]), secret)
    return hmac.compare_digest(expected, parts[3])


def create_merkle_root(hashes: list[str]) -> str:
    """Binary Merkle root over ordered leaf hashes.

    Empty list gives "", a single leaf is its own root, and an odd node at any
    level is paired with itself.
    """

    if not hashes:
        return ""
    level = list(hashes)
    while len(level) > 1:
        nxt: list[str] = []
        for i in range(0, len(level), 2):
            left = level[i]
            right = level[i + 1] if i + 1 < len(level) else left
            nxt.append(sha256_hex(left + right))
        level = nxt
    return level[0]


def _pow_hash(data: str, nonce: int) -> str:
    return sha256_hex(f"{data}:{nonce}")


def generate_proof_of_work(data: str, difficulty: int, max_iterations: int = POW_MAX_ITERATIONS) -> ProofOfWork:
    """Find a nonce whose ``sha256(data:nonce)`` starts with ``difficulty`` zero hex digits.

    Raises:
        ThrottleExhaustion: If no nonce was found within ``max_iterations``.
    """

    target = "0" * difficulty
    for nonce in range(max_iterations):
        digest = _pow_hash(data, nonce)
        if digest.startswith(target):
            return ProofOfWork(hash=digest, nonce=nonce)
    raise ThrottleExhaustion(difficulty, max_iterations)


def verify_proof_of_work(data: str, nonce: int, difficulty: int) -> bool:
    return _pow_hash(data, nonce).startswith("0" * difficulty)


def hash_answer(answer: str) -> str:
    """Hash a quiz answer after trimming and case folding."""

    return sha256_hex(answer.strip().casefold())


def _derive_key_bytes(seed: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=KDF_KEY_BYTES, salt=salt, iterations=KDF_ITERATIONS)
    return kdf.derive(seed.encode("utf-8"))


def derive_key(seed: str, salt: str | bytes = "") -> str:
    """PBKDF2-HMAC-SHA256 with a fixed iteration count; 256-bit key as hex."""

    salt_bytes = salt.encode("utf-8") if isinstance(salt, str) else salt
    return _derive_key_bytes(seed, salt_bytes).hex()


def encrypt_data(plaintext: str, password: str) -> str:
    """Encrypt with AES-256-GCM under a password-derived key.

    Returns:
        URL-safe base64 of ``salt | nonce | ciphertext``.
    """

    salt = secrets.token_bytes(_SALT_BYTES)
    nonce = secrets.token_bytes(_GCM_NONCE_BYTES)
    key = _derive_key_bytes(password, salt)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    return base64.urlsafe_b64encode(salt + nonce + ciphertext).decode("ascii")


def decrypt_data(blob: str, password: str) -> str | None:
    """Inverse of ``encrypt_data``. Wrong password or damaged input returns None."""

    try:
        raw = base64.urlsafe_b64decode(blob.encode("ascii"))
    except (binascii.Error, ValueError):
        return None
    if len(raw) <= _SALT_BYTES + _GCM_NONCE_BYTES:
        return None

    salt = raw[:_SALT_BYTES]
    nonce = raw[_SALT_BYTES : _SALT_BYTES + _GCM_NONCE_BYTES]
    key = _derive_key_bytes(password, salt)
    try:
        plaintext = AESGCM(key).decrypt(nonce, raw[_SALT_BYTES + _GCM_NONCE_BYTES :], None)
        return plaintext.decode("utf-8")
    except (InvalidTag, UnicodeDecodeError):
        return None
