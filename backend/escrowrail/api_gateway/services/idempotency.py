"""Idempotency keys for booking creation - a repeated request gets the first response back.

Keys are scoped to the calling actor, so two requesters that happen to pick
the same key never see each other's bookings.
"""

import hashlib
import json
import os
from datetime import datetime, timedelta
from typing import Callable, Optional

from escrowrail.shared.file_store import FileStore
from escrowrail.shared.models import utcnow

TTL_HOURS = 24


class IdempotencyConflictError(Exception):
    pass


class CachedResponse:
    def __init__(self, response: dict, status_code: int):
        self.response = response
        self.status_code = status_code


class IdempotencyService:

    def __init__(self, data_dir: str, ttl_hours: int = TTL_HOURS, clock: Callable[[], datetime] = utcnow):
        self.keys_path = os.path.join(data_dir, "idempotency", "idempotency_keys.json")
        self.ttl = timedelta(hours=ttl_hours)
        self._clock = clock

    @staticmethod
    def compute_hash(body: dict) -> str:
        serialized = json.dumps(body, sort_keys=True, default=str)
        return hashlib.sha256(serialized.encode()).hexdigest()

    @staticmethod
    def _scoped(actor_id: str, key: str) -> str:
        return f"{actor_id}:{key}"

    def _expired(self, record: dict) -> bool:
        return self._clock() - datetime.fromisoformat(record["created_at"]) > self.ttl

    def check(self, actor_id: str, key: str, request_hash: str) -> Optional[CachedResponse]:
        record = FileStore.read_json(self.keys_path, default={}).get(self._scoped(actor_id, key))
        if record is None or self._expired(record):
            return None

        if record["request_hash"] != request_hash:
            raise IdempotencyConflictError(
                f"Idempotency key '{key}' already used with a different request body"
            )
        return CachedResponse(response=record["response"], status_code=record["status_code"])

    def store(self, actor_id: str, key: str, request_hash: str, response: dict, status_code: int) -> None:
        def _put(keys: dict) -> None:
            for stale in [k for k, v in keys.items() if self._expired(v)]:
                del keys[stale]
            keys[self._scoped(actor_id, key)] = {
                "request_hash": request_hash,
                "response": response,
                "status_code": status_code,
                "created_at": self._clock().isoformat(),
            }

        FileStore.update_json(self.keys_path, _put)
