"""Exception hierarchy.

Only ``SensorError`` ends a session; everything else is handled by dropping the
input, keeping the current state, or retrying at the transport layer.
"""

from __future__ import annotations


class ProofOfVisitError(Exception):
    """Base class for engine errors."""


class SensorError(ProofOfVisitError):
    """Location permission denied or position source unavailable."""


class ValidationError(ProofOfVisitError, ValueError):
    """Malformed proof or event shape."""


class VerificationFailure(ProofOfVisitError):
    """An NFC or question proof did not match. The checkpoint keeps its state."""

    def __init__(self, checkpoint_id: str, reason: str) -> None:
        super().__init__(f"{checkpoint_id}: {reason}")
        self.checkpoint_id = checkpoint_id
        self.reason = reason


class TransportFailure(ProofOfVisitError):
    """An endpoint could not be reached during publish or subscribe."""

    def __init__(self, endpoint: str, reason: str) -> None:
        super().__init__(f"{endpoint}: {reason}")
        self.endpoint = endpoint
        self.reason = reason


class ThrottleExhaustion(ProofOfVisitError):
    """Proof-of-work search ran out of its iteration budget."""

    def __init__(self, difficulty: int, iterations: int) -> None:
        super().__init__(f"no proof-of-work at difficulty {difficulty} within {iterations} iterations")
        self.difficulty = difficulty
        self.iterations = iterations
