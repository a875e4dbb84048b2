from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, Iterable, Optional, Protocol, Sequence, Tuple

import httpx

from common.config import ClientSettings
from common.contracts import normalize_address, normalize_handle
from common.relayer import DecryptionFailed, GrantRejected, HandleContractPair, RelayerClient
from common.signer import GrantRequest, Signer, SigningUnavailable

from .grant_cache import GrantCache
from .grant_store import EncryptedFileGrantStore, GrantStore
from .models import DecryptionGrant, GrantKey, KeyPair, generate_keypair


logger = logging.getLogger(__name__)

DEFAULT_GRANT_DURATION_DAYS = 365


class MissingPlaintext(RuntimeError):
    """The decrypt response had no entry for a requested handle."""


class DecryptService(Protocol):
    async def user_decrypt(
        self, pairs: Sequence[HandleContractPair], grant: DecryptionGrant
    ) -> Dict[str, int]: ...


class DecryptionSessionManager:
    """
    Turns ciphertext handles into plaintext integers with as few signature
    prompts as possible.

    Per (signer, contract set) the manager keeps one grant in `GrantCache`:
    absent -> sign on first use, valid -> reuse silently, expired or wrong
    identity -> sign again. `connect()` with a different signer address or chain
    wipes every cached grant, and a signature that completes after such a
    change is thrown away instead of being cached.

    Concurrent requests that need the same new grant share a single signing
    task. Each waiter is shielded, so cancelling one waiter leaves the prompt
    and the other waiters alone.

    Decrypt failures surface as `DecryptionFailed` and are not retried; signing
    failures propagate and leave nothing cached, so the next request prompts again.
    """

    def __init__(
        self,
        decrypt_service: DecryptService,
        cache: Optional[GrantCache] = None,
        *,
        duration_days: int = DEFAULT_GRANT_DURATION_DAYS,
        keypair_factory: Callable[[], KeyPair] = generate_keypair,
    ) -> None:
        if duration_days < 1:
            raise ValueError("duration_days must be >= 1")
        self._service = decrypt_service
        self._cache = cache if cache is not None else GrantCache()
        self._duration_days = duration_days
        self._keypair_factory = keypair_factory
        self._signer: Optional[Signer] = None
        self._chain_id: Optional[int] = None
        self._epoch = 0
        self._inflight: Dict[GrantKey, asyncio.Task[DecryptionGrant]] = {}

    # --------------- Identity ---------------
    @property
    def cache(self) -> GrantCache:
        return self._cache

    @property
    def signer_address(self) -> Optional[str]:
        return normalize_address(self._signer.address) if self._signer is not None else None

    @property
    def chain_id(self) -> Optional[int]:
        return self._chain_id

    def connect(self, signer: Signer, chain_id: int) -> None:
        """
        Set the active identity.

        Switching from one address or chain to another invalidates every cached
        grant. The first connection keeps what the store already holds, since
        stored grants are keyed by signer and checked against the chain on use.
        """
        new_address = normalize_address(signer.address)
        previous = self.signer_address
        if previous is not None and (new_address != previous or chain_id != self._chain_id):
            logger.info(
                "Identity changed (%s@%s -> %s@%s); dropping cached grants",
                previous,
                self._chain_id,
                new_address,
                chain_id,
            )
            self._invalidate()
        self._signer = signer
        self._chain_id = chain_id

    def disconnect(self) -> None:
        if self._signer is not None:
            logger.info("Signer %s disconnected; dropping cached grants", self.signer_address)
        self._invalidate()
        self._signer = None
        self._chain_id = None

    def _invalidate(self) -> None:
        self._epoch += 1
        self._inflight.clear()
        self._cache.clear()

    # --------------- Grants ---------------
    async def get_grant(self, contract_addresses: Iterable[str]) -> DecryptionGrant:
        """Return a valid grant for the active signer and `contract_addresses`."""
        signer, chain_id = self._require_identity()
        key = GrantKey.of(signer.address, contract_addresses)

        grant = self._cache.get(key, chain_id=chain_id)
        if grant is not None:
            return grant

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._sign(signer, key, chain_id, self._epoch))
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._signing_done(k, t))
        return await asyncio.shield(task)

    def _require_identity(self) -> tuple[Signer, int]:
        if self._signer is None or self._chain_id is None:
            raise SigningUnavailable("No signer connected")
        return self._signer, self._chain_id

    def _signing_done(self, key: GrantKey, task: asyncio.Task[DecryptionGrant]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Mark the outcome as retrieved even if every waiter went away
        if not task.cancelled():
            task.exception()

    async def _sign(
        self, signer: Signer, key: GrantKey, chain_id: int, epoch: int
    ) -> DecryptionGrant:
        keypair = self._keypair_factory()
        request = GrantRequest(
            contract_addresses=list(key.contract_addresses),
            public_key=keypair.public_key,
            start_timestamp=int(self._cache.now()),
            duration_days=self._duration_days,
            chain_id=chain_id,
        )
        logger.debug("await-signature: %s", key.storage_key())
        signature = await signer.sign_grant(request)

        if epoch != self._epoch:
            raise SigningUnavailable("Signer changed while the grant was being signed")

        grant = DecryptionGrant(
            public_key=keypair.public_key,
            private_key=keypair.private_key,
            signature=signature,
            user_address=key.user_address,
            contract_addresses=key.contract_addresses,
            start_timestamp=request.start_timestamp,
            duration_days=request.duration_days,
            chain_id=chain_id,
        )
        self._cache.put(grant)
        logger.info(
            "Signed decryption grant for %s (expires at %d)", key.storage_key(), grant.expires_at
        )
        return grant

    # --------------- Decryption ---------------
    async def resolve_plaintext(self, handle: str, contract_address: str) -> int:
        """Return the plaintext integer behind `handle` stored by `contract_address`."""
        h = normalize_handle(handle)
        c = normalize_address(contract_address)
        results = await self.resolve_many([(h, c)])
        return results[h]

    async def resolve_many(self, pairs: Sequence[HandleContractPair]) -> Dict[str, int]:
        """
        Decrypt several handles in one call.

        The grant covers the union of the contracts involved. Raises
        `MissingPlaintext` if any requested handle is absent from the answer.
        """
        norm = [(normalize_handle(h), normalize_address(c)) for h, c in pairs]
        if not norm:
            return {}
        grant = await self.get_grant(c for _, c in norm)

        logger.debug("await-decrypt: %d handle(s)", len(norm))
        try:
            results = await self._service.user_decrypt(norm, grant)
        except GrantRejected:
            self._cache.discard(grant.key)
            raise
        except DecryptionFailed:
            raise
        except Exception as exc:
            raise DecryptionFailed(f"Decrypt service error: {exc}") from exc

        out: Dict[str, int] = {}
        for h, _ in norm:
            if h not in results:
                raise MissingPlaintext(f"Decrypt response has no entry for handle {h}")
            out[h] = results[h]
        return out


def session_from_settings(
    settings: ClientSettings,
    *,
    client: Optional[httpx.AsyncClient] = None,
) -> Tuple[DecryptionSessionManager, RelayerClient]:
    """
    Wire a session manager to a relayer client as configured.

    Returns both so the caller can close the relayer (`await relayer.aclose()`).
    Grants persist to an encrypted file when `grant_store_path` is set.
    """
    relayer = RelayerClient(
        settings.relayer_url,
        chain_id=settings.chain_id,
        timeout=settings.relayer_timeout,
        max_per_second=settings.relayer_max_per_second,
        client=client,
    )
    store: Optional[GrantStore] = None
    if settings.grant_store_path:
        store = EncryptedFileGrantStore(
            settings.grant_store_path, _require_key(settings.grant_store_key)
        )
    manager = DecryptionSessionManager(
        relayer,
        GrantCache(store),
        duration_days=settings.grant_duration_days,
    )
    return manager, relayer


def _require_key(key: Optional[str]) -> str:
    if not key:
        raise RuntimeError("Missing required configuration: GRANT_STORE_KEY")
    return key


__all__ = [
    "DecryptionSessionManager",
    "DecryptService",
    "MissingPlaintext",
    "DEFAULT_GRANT_DURATION_DAYS",
    "session_from_settings",
]
