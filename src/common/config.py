from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


# Environment variable names
ENV_RELAYER_URL = "RELAYER_URL"
ENV_CHAIN_ID = "CHAIN_ID"
ENV_GRANT_DURATION_DAYS = "GRANT_DURATION_DAYS"
ENV_RELAYER_TIMEOUT = "RELAYER_TIMEOUT"
ENV_RELAYER_MAX_PER_SECOND = "RELAYER_MAX_PER_SECOND"
ENV_GRANT_STORE_PATH = "GRANT_STORE_PATH"
ENV_GRANT_STORE_KEY = "GRANT_STORE_KEY"

# Prefixed fallbacks, for deployments sharing one environment with other apps
FALLBACK_PREFIX = "FHE_"


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    for candidate in (name, FALLBACK_PREFIX + name):
        val = os.environ.get(candidate)
        if val not in (None, ""):
            return val
    return default


def _require(v: Optional[str], what: str) -> str:
    if not v:
        raise RuntimeError(f"Missing required configuration: {what}")
    return v


def _to_int(raw: str, what: str) -> int:
    try:
        return int(raw, 0)
    except ValueError as exc:
        raise ValueError(f"{what} must be an integer, got {raw!r}") from exc


@dataclass(frozen=True)
class ClientSettings:
    """
    Runtime configuration for the content client.

    Environment variables (each also accepted with an `FHE_` prefix)
    - `RELAYER_URL`:            base URL of the decrypt relayer (required)
    - `CHAIN_ID`:               chain id the contracts live on (required)
    - `GRANT_DURATION_DAYS`:    validity window of new grants (default 365)
    - `RELAYER_TIMEOUT`:        HTTP timeout in seconds (default 15)
    - `RELAYER_MAX_PER_SECOND`: local throttle for decrypt calls (default 5)
    - `GRANT_STORE_PATH`:       file to persist grants in (optional)
    - `GRANT_STORE_KEY`:        Fernet key for that file (required with the path)
    """

    relayer_url: str
    chain_id: int
    grant_duration_days: int = 365
    relayer_timeout: float = 15.0
    relayer_max_per_second: int = 5
    grant_store_path: Optional[str] = None
    grant_store_key: Optional[str] = None

    def __post_init__(self) -> None:
        if self.grant_duration_days < 1:
            raise ValueError("grant_duration_days must be >= 1")
        if self.relayer_timeout <= 0:
            raise ValueError("relayer_timeout must be > 0")
        if self.relayer_max_per_second <= 0:
            raise ValueError("relayer_max_per_second must be > 0")
        if self.grant_store_path and not self.grant_store_key:
            raise RuntimeError(f"Missing required configuration: {ENV_GRANT_STORE_KEY}")

    @classmethod
    def from_env(cls) -> "ClientSettings":
        url = _require(_getenv(ENV_RELAYER_URL), ENV_RELAYER_URL)
        chain_id = _to_int(_require(_getenv(ENV_CHAIN_ID), ENV_CHAIN_ID), ENV_CHAIN_ID)
        duration = _to_int(_getenv(ENV_GRANT_DURATION_DAYS, "365"), ENV_GRANT_DURATION_DAYS)
        max_ps = _to_int(_getenv(ENV_RELAYER_MAX_PER_SECOND, "5"), ENV_RELAYER_MAX_PER_SECOND)
        raw_timeout = _getenv(ENV_RELAYER_TIMEOUT, "15")
        try:
            timeout = float(raw_timeout)
        except ValueError as exc:
            raise ValueError(f"{ENV_RELAYER_TIMEOUT} must be a number, got {raw_timeout!r}") from exc
        return cls(
            relayer_url=url,
            chain_id=chain_id,
            grant_duration_days=duration,
            relayer_timeout=timeout,
            relayer_max_per_second=max_ps,
            grant_store_path=_getenv(ENV_GRANT_STORE_PATH),
            grant_store_key=_getenv(ENV_GRANT_STORE_KEY),
        )


__all__ = ["ClientSettings"]
