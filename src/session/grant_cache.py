from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Optional

from pydantic import ValidationError

from .grant_store import GrantStore, InMemoryGrantStore
from .models import DecryptionGrant, GrantKey


logger = logging.getLogger(__name__)


class GrantCache:
    """
    Holds at most one live decryption grant per (signer, contract set).

    - Created once per application and injected where needed; tests build their own.
    - `get` hands back a grant only while it is unexpired and was signed for the
      exact key and chain; anything else is dropped from memory and the store.
    - The backing `GrantStore` lets grants outlive the process (see
      `EncryptedFileGrantStore`); the default keeps them in memory only.
    - Only the session manager mutates the cache.
    """

    def __init__(
        self,
        store: Optional[GrantStore] = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store if store is not None else InMemoryGrantStore()
        self._grants: Dict[GrantKey, DecryptionGrant] = {}
        self._clock = clock

    @property
    def store(self) -> GrantStore:
        return self._store

    def now(self) -> float:
        return self._clock()

    def get(self, key: GrantKey, *, chain_id: int) -> Optional[DecryptionGrant]:
        grant = self._grants.get(key)
        if grant is None:
            grant = self._load(key)
        if grant is None:
            return None
        if not grant.is_valid_for(key, chain_id=chain_id, now=self.now()):
            logger.debug("Dropping stale grant for %s", key.storage_key())
            self.discard(key)
            return None
        self._grants[key] = grant
        return grant

    def put(self, grant: DecryptionGrant) -> None:
        self._grants[grant.key] = grant
        self._store.save(grant.key.storage_key(), grant.to_json())

    def discard(self, key: GrantKey) -> None:
        self._grants.pop(key, None)
        self._store.remove(key.storage_key())

    def clear(self) -> None:
        self._grants.clear()
        self._store.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._grants

    def __len__(self) -> int:
        return len(self._grants)

    def _load(self, key: GrantKey) -> Optional[DecryptionGrant]:
        raw = self._store.load(key.storage_key())
        if raw is None:
            return None
        try:
            return DecryptionGrant.from_json(raw)
        except ValidationError:
            logger.warning("Discarding malformed stored grant for %s", key.storage_key())
            self._store.remove(key.storage_key())
            return None


__all__ = ["GrantCache"]
