from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence, Tuple

import httpx

from .contracts import normalize_address, normalize_handle
from .rate_limiter import AsyncSlidingWindowRateLimiter

if TYPE_CHECKING:
    from session.models import DecryptionGrant


logger = logging.getLogger(__name__)

USER_DECRYPT_PATH = "/v1/user-decrypt"


class DecryptionFailed(RuntimeError):
    """The decrypt service call failed or returned an unusable answer."""


class GrantRejected(DecryptionFailed):
    """The decrypt service refused the grant (invalid, expired or mis-scoped)."""


HandleContractPair = Tuple[str, str]


def _parse_plaintext(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("boolean is not a plaintext integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        s = value.strip()
        if s.lower().startswith("0x"):
            return int(s, 16)
        return int(s, 10)
    raise ValueError(f"unexpected plaintext type {type(value).__name__}")


class RelayerClient:
    """
    Async client for the relayer's user-decrypt endpoint.

    Notes
    - One POST per call; failures surface as `DecryptionFailed` and are never
      retried here. Retrying is the caller's decision.
    - 401/403 raise `GrantRejected` so the caller can drop the cached grant.
    - A local sliding-window limiter (default 5 req/s) smooths bursts of
      parallel reveals.
    """

    def __init__(
        self,
        base_url: str,
        *,
        chain_id: int,
        timeout: float = 15.0,
        max_per_second: int = 5,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        self._base_url = base_url.rstrip("/")
        self._chain_id = chain_id
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._limiter = AsyncSlidingWindowRateLimiter(max_calls=max_per_second, per_seconds=1.0)

    @property
    def chain_id(self) -> int:
        return self._chain_id

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "RelayerClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    # --------------- Public API ---------------
    async def user_decrypt(
        self,
        pairs: Sequence[HandleContractPair],
        grant: "DecryptionGrant",
    ) -> Dict[str, int]:
        """
        Ask the service for the plaintexts of `pairs` under `grant`.

        Returns a mapping of normalized handle -> plaintext integer. Handles the
        service left out are simply absent; callers decide whether that is an error.
        """
        body = self._build_body(pairs, grant)
        payload = await self._request(body)
        return self._parse_response(payload)

    # --------------- Internal ---------------
    def _build_body(
        self, pairs: Sequence[HandleContractPair], grant: "DecryptionGrant"
    ) -> Dict[str, Any]:
        items: List[Dict[str, str]] = [
            {"handle": normalize_handle(h), "contractAddress": normalize_address(c)}
            for h, c in pairs
        ]
        return {
            "handleContractPairs": items,
            "requestValidity": {
                "startTimestamp": str(grant.start_timestamp),
                "durationDays": str(grant.duration_days),
            },
            "contractsChainId": str(self._chain_id),
            "contractAddresses": list(grant.contract_addresses),
            "userAddress": grant.user_address,
            "signature": grant.signature.removeprefix("0x"),
            "publicKey": grant.public_key.removeprefix("0x"),
        }

    async def _request(self, body: Dict[str, Any]) -> Dict[str, Any]:
        await self._limiter.acquire(blocking=True)
        try:
            resp = await self._client.post(f"{self._base_url}{USER_DECRYPT_PATH}", json=body)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise DecryptionFailed(f"Relayer request failed: {exc}") from exc

        if resp.status_code in (401, 403):
            raise GrantRejected(f"HTTP {resp.status_code} from relayer: {resp.text[:200]}")
        if resp.status_code != 200:
            raise DecryptionFailed(f"HTTP {resp.status_code} from relayer: {resp.text[:200]}")
        try:
            payload = resp.json()
        except ValueError as exc:
            raise DecryptionFailed("Failed to parse JSON from relayer") from exc
        if not isinstance(payload, dict):
            raise DecryptionFailed("Malformed response from relayer")
        return payload

    @staticmethod
    def _parse_response(payload: Dict[str, Any]) -> Dict[str, int]:
        # Envelope: { "response": { handle: plaintext, ... } }
        if payload.get("status") == "failed":
            raise DecryptionFailed(str(payload.get("message") or "Relayer reported failure"))
        results = payload.get("response")
        if not isinstance(results, dict):
            raise DecryptionFailed("Relayer response missing 'response' map")
        out: Dict[str, int] = {}
        for handle, value in results.items():
            try:
                out[normalize_handle(handle)] = _parse_plaintext(value)
            except ValueError as exc:
                raise DecryptionFailed(f"Unparseable plaintext for {handle}") from exc
        logger.debug("Relayer returned %d plaintext(s)", len(out))
        return out


__all__ = [
    "RelayerClient",
    "DecryptionFailed",
    "GrantRejected",
    "HandleContractPair",
    "USER_DECRYPT_PATH",
]
