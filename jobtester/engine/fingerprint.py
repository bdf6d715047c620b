"""
Run Fingerprinting and the persisted Fingerprint Cache.

A fingerprint is a deterministic identity for a RunRequest:
- Canonical JSON (sorted keys, compact separators) of every request field
- Plus the retry epoch, so a retry pass re-invokes instead of reusing
- Hashed with 64-bit BLAKE2b (fast, non-cryptographic use)

The cache maps fingerprint -> RunRecord and is persisted as one named
record. It never persists on its own; the orchestrator calls flush().
"""

import hashlib
import json
import logging
from typing import Iterator, Optional

from .entities import RunRecord, RunRequest
from jobtester.infra.storage import KeyValueStore

logger = logging.getLogger(__name__)

CALLS_KEY = "CALLS"
FINGERPRINT_DIGEST_SIZE = 8


def canonical_request_json(request: RunRequest, retry_epoch: int = 0) -> str:
    """
    Serialize a request deterministically.

    Non-JSON values (callables in input, for example) fall back to str() so
    serialization never fails; they still contribute to identity.
    """
    payload = {
        "request": request.to_dict(),
        "retry_epoch": retry_epoch,
    }
    return json.dumps(
        payload,
        sort_keys=True,
        ensure_ascii=False,
        separators=(',', ':'),
        default=str,
    )


def compute_fingerprint(request: RunRequest, retry_epoch: int = 0) -> str:
    """
    Compute the deduplication key for a request.

    Returns:
        16-character hex digest
    """
    json_str = canonical_request_json(request, retry_epoch)
    return hashlib.blake2b(
        json_str.encode('utf-8'),
        digest_size=FINGERPRINT_DIGEST_SIZE,
    ).hexdigest()


class FingerprintCache:
    """
    Insertion-ordered fingerprint -> RunRecord map with explicit persistence.

    Serialized form is an ordered list of [fingerprint, record] pairs.
    """

    def __init__(self, store: KeyValueStore, key: str = CALLS_KEY):
        self.store = store
        self.key = key
        self._records: dict[str, RunRecord] = {}

    @classmethod
    async def load(cls, store: KeyValueStore, key: str = CALLS_KEY) -> "FingerprintCache":
        """
        Load the cache from storage.

        Missing, empty or malformed storage yields an empty cache.
        """
        cache = cls(store, key)
        raw = await store.get_value(key)
        cache._records = cls.deserialize(raw)

        if cache._records:
            logger.info(f"[FingerprintCache] Restored {len(cache._records)} recorded runs")

        return cache

    @staticmethod
    def deserialize(raw) -> dict[str, RunRecord]:
        records: dict[str, RunRecord] = {}
        if not raw:
            return records

        if not isinstance(raw, list):
            logger.warning(f"[FingerprintCache] Ignoring malformed {CALLS_KEY} record")
            return records

        for entry in raw:
            try:
                fingerprint, record_data = entry
                records[fingerprint] = RunRecord.from_dict(record_data)
            except (TypeError, ValueError, KeyError, AttributeError) as e:
                logger.warning(f"[FingerprintCache] Skipping malformed entry: {e}")

        return records

    def serialize(self) -> list:
        return [[fingerprint, record.to_dict()] for fingerprint, record in self._records.items()]

    def get(self, fingerprint: str) -> Optional[RunRecord]:
        return self._records.get(fingerprint)

    def put(self, fingerprint: str, record: RunRecord) -> None:
        self._records[fingerprint] = record

    def __contains__(self, fingerprint: str) -> bool:
        return fingerprint in self._records

    def __len__(self) -> int:
        return len(self._records)

    def records(self) -> Iterator[RunRecord]:
        return iter(list(self._records.values()))

    async def flush(self) -> None:
        """Persist the current map."""
        await self.store.set_value(self.key, self.serialize())
