"""Fingerprint ledger for spotting one fingerprint used from many IPs."""

from __future__ import annotations

import hashlib
import json
import logging
import random
import threading
import time
from collections.abc import Callable
from typing import Any

from veilgate.models import FingerprintRecord, Observation

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE_SECONDS = 24 * 60 * 60


def fingerprint_hash(fingerprint: dict[str, Any]) -> str:
    """Return a stable content hash of a client-reported fingerprint.

    Keys are sorted before hashing so two clients reporting the same
    properties in a different order share a hash.

    Args:
        fingerprint: The fingerprint object posted by the client.

    Returns:
        An MD5 hex digest.
    """
    canonical = json.dumps(fingerprint, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.md5(canonical.encode("utf-8")).hexdigest()


class FingerprintLedger:
    """In-memory map of fingerprint hash to observation metadata.

    The IP that first reported a fingerprint owns it for the life of the
    record. Later observations from other IPs are flagged, never
    reassigned. Records idle longer than max_age_seconds are swept.
    """

    def __init__(
        self,
        max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS,
        sweep_probability: float = 0.01,
        clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
    ) -> None:
        self.max_age_seconds = max_age_seconds
        self.sweep_probability = sweep_probability
        self._clock = clock
        self._rng = rng or random.Random()
        self._records: dict[str, FingerprintRecord] = {}
        self._lock = threading.Lock()

    def observe(self, fp_hash: str, ip: str) -> Observation:
        """Record that a fingerprint hash was reported by an IP.

        Args:
            fp_hash: Hash from fingerprint_hash().
            ip: The reporting client's IP.

        Returns:
            Whether the hash was new and whether it was previously owned
            by a different IP.
        """
        now = self._clock()
        with self._lock:
            record = self._records.get(fp_hash)
            if record is None:
                self._records[fp_hash] = FingerprintRecord(
                    owning_ip=ip, first_seen=now, last_seen=now
                )
                observation = Observation(is_new=True)
            else:
                record.occurrence_count += 1
                record.last_seen = max(now, record.last_seen)
                observation = Observation(
                    is_new=False, reused_from_different_ip=record.owning_ip != ip
                )

        if self._rng.random() < self.sweep_probability:
            self.sweep()
        return observation

    def get(self, fp_hash: str) -> FingerprintRecord | None:
        """Return a copy of the record for a hash, if any."""
        with self._lock:
            record = self._records.get(fp_hash)
            return record.model_copy() if record else None

    def sweep(self) -> int:
        """Purge records not seen within max_age_seconds.

        Returns:
            The number of records removed.
        """
        now = self._clock()
        with self._lock:
            stale = [
                h for h, r in self._records.items() if now - r.last_seen > self.max_age_seconds
            ]
            for h in stale:
                del self._records[h]
        if stale:
            logger.debug("Fingerprint ledger sweep removed %d stale records", len(stale))
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
