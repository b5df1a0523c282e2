from __future__ import annotations

import json
from typing import Any, Optional

from redis import Redis

from tollgate.logging import get_logger
from tollgate.storage.common import LockoutMutator, lockout_from_dict, lockout_to_dict
from tollgate.storage.models import LockoutWindow


class RedisLockoutStore:
    """Failed-login windows kept in Redis so every API worker shares them.

    Updates run as optimistic ``WATCH``/``MULTI`` transactions; redis-py retries
    the mutator when another worker touched the key in between, so mutators
    must stay free of side effects.
    """

    # Default operation timeout for Redis commands
    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str | None = None,
        *,
        ttl_seconds: int,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Any = None,
    ) -> None:
        if client is None and not redis_url:
            raise ValueError("redis_url or client is required")
        self.redis_url = redis_url
        self.ttl_seconds = max(int(ttl_seconds), 1)
        self.logger = get_logger(__name__)
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _key(credential_id: str) -> str:
        return f"auth:lockout:{credential_id}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self.client.ping()

    def get_lockout(self, credential_id: str) -> Optional[LockoutWindow]:
        raw = self.client.get(self._key(credential_id))
        return lockout_from_dict(json.loads(raw)) if raw else None

    def update_lockout(self, credential_id: str, mutate: LockoutMutator) -> Any:
        key = self._key(credential_id)

        def _run(pipe) -> Any:
            raw = pipe.get(key)
            current = lockout_from_dict(json.loads(raw)) if raw else None
            updated, result = mutate(current)
            pipe.multi()
            if updated is None or updated.is_empty:
                pipe.delete(key)
            else:
                pipe.set(key, json.dumps(lockout_to_dict(updated)), ex=self.ttl_seconds)
            return result

        return self.client.transaction(_run, key, value_from_callable=True)
