"""Stateless proof-of-work challenges.

Nothing about an issued challenge is stored. A submission is checked
only for freshness and for the leading zeros of sha256(token + nonce),
so a solved challenge can be replayed until it goes stale.
"""

from __future__ import annotations

import hashlib
import itertools
import secrets
import time
from collections.abc import Callable

from veilgate.models import Challenge, PowResult

DEFAULT_DIFFICULTY = 4
DEFAULT_FRESHNESS_MS = 30_000
EXPIRED_REASON = "Challenge expired"


def _now_ms() -> float:
    return time.time() * 1000


def pow_digest(token: str, nonce: int | str) -> str:
    """Hex sha256 digest of the token followed by the nonce."""
    return hashlib.sha256(f"{token}{nonce}".encode()).hexdigest()


def leading_zeros(digest: str) -> int:
    """Count leading zero hex digits."""
    return len(digest) - len(digest.lstrip("0"))


class ProofOfWork:
    """Issues and verifies hash-based challenges."""

    def __init__(
        self,
        difficulty: int = DEFAULT_DIFFICULTY,
        freshness_ms: float = DEFAULT_FRESHNESS_MS,
        clock: Callable[[], float] = _now_ms,
    ) -> None:
        """Initialize the service.

        Args:
            difficulty: Leading zero hex digits a solution must produce.
            freshness_ms: How long a challenge stays valid after issue.
            clock: Wall clock in epoch milliseconds.
        """
        self.difficulty = difficulty
        self.freshness_ms = freshness_ms
        self._clock = clock

    def issue(self) -> Challenge:
        """Create a new challenge with an unguessable 128-bit token."""
        return Challenge(
            token=secrets.token_hex(16),
            difficulty=self.difficulty,
            issued_at=self._clock(),
        )

    def verify(self, token: str, nonce: int | str, issued_at: float) -> PowResult:
        """Check a submitted solution.

        Args:
            token: The challenge token as issued.
            nonce: The client's solution.
            issued_at: The issue timestamp echoed back by the client.

        Returns:
            A PowResult; expired submissions carry a reason.
        """
        if self._clock() - issued_at > self.freshness_ms:
            return PowResult(valid=False, reason=EXPIRED_REASON)
        return PowResult(valid=leading_zeros(pow_digest(token, nonce)) >= self.difficulty)


def solve(
    token: str,
    difficulty: int = DEFAULT_DIFFICULTY,
    max_iterations: int | None = None,
) -> int:
    """Find the smallest nonce that satisfies a challenge.

    Args:
        token: The challenge token.
        difficulty: Required leading zero hex digits.
        max_iterations: Give up after this many attempts.

    Returns:
        The nonce.

    Raises:
        RuntimeError: If max_iterations is reached without a solution.
    """
    attempts = itertools.count() if max_iterations is None else range(max_iterations)
    for nonce in attempts:
        if leading_zeros(pow_digest(token, nonce)) >= difficulty:
            return nonce
    raise RuntimeError(f"No solution for difficulty {difficulty} in {max_iterations} attempts")
