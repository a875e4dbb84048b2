from __future__ import annotations

import json
from typing import List, Optional, Protocol, Union, runtime_checkable

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from pydantic import BaseModel, Field

from .contracts import normalize_address, normalize_addresses


class SigningError(RuntimeError):
    """Base error for decryption-grant signing."""


class AuthorizationDenied(SigningError):
    """The signer declined the signature request."""


class SigningUnavailable(SigningError):
    """No signer is connected."""


class GrantRequest(BaseModel):
    """
    The tuple a signer authorizes when issuing a decryption grant.

    Fields
    - contract_addresses: sorted, lower-cased contract set the grant covers.
    - public_key: hex public key the decrypt service re-encrypts results to.
    - start_timestamp: Unix seconds when the validity window opens.
    - duration_days: length of the validity window.
    - chain_id: chain the contracts live on.
    """

    contract_addresses: List[str]
    public_key: str
    start_timestamp: int
    duration_days: int = Field(..., ge=1)
    chain_id: int

    def canonical_bytes(self) -> bytes:
        # Deterministic JSON: stable key order, no extra whitespace
        payload = {
            "contractAddresses": list(normalize_addresses(self.contract_addresses)),
            "publicKey": self.public_key,
            "startTimestamp": self.start_timestamp,
            "durationDays": self.duration_days,
            "chainId": self.chain_id,
        }
        return json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")


@runtime_checkable
class Signer(Protocol):
    """External identity able to sign a decryption-grant request."""

    @property
    def address(self) -> str: ...

    async def sign_grant(self, request: GrantRequest) -> str:
        """Return a hex signature or raise AuthorizationDenied when declined."""
        ...


class LocalKeySigner:
    """
    Software signer holding a secp256k1 key in process.

    Signs the canonical JSON of a `GrantRequest` with ECDSA/SHA-256 and returns
    the DER signature as 0x-hex. Useful for scripts and tests; a wallet-backed
    signer implements the same `Signer` protocol.

    Set `declines=True` to model a user who rejects every prompt.
    """

    def __init__(
        self,
        address: str,
        private_key: Optional[Union[ec.EllipticCurvePrivateKey, str]] = None,
        *,
        declines: bool = False,
    ) -> None:
        self._address = normalize_address(address)
        if private_key is None:
            private_key = ec.generate_private_key(ec.SECP256K1())
        elif isinstance(private_key, str):
            secret = int(private_key.removeprefix("0x"), 16)
            private_key = ec.derive_private_key(secret, ec.SECP256K1())
        self._key = private_key
        self.declines = declines
        self.prompts = 0

    @property
    def address(self) -> str:
        return self._address

    async def sign_grant(self, request: GrantRequest) -> str:
        self.prompts += 1
        if self.declines:
            raise AuthorizationDenied(f"{self._address} declined the decryption grant")
        sig = self._key.sign(request.canonical_bytes(), ec.ECDSA(hashes.SHA256()))
        return "0x" + sig.hex()

    def verify(self, request: GrantRequest, signature: str) -> bool:
        """Return True if `signature` was produced by this key over `request`."""
        try:
            self._key.public_key().verify(
                bytes.fromhex(signature.removeprefix("0x")),
                request.canonical_bytes(),
                ec.ECDSA(hashes.SHA256()),
            )
        except (InvalidSignature, ValueError):
            return False
        return True


__all__ = [
    "SigningError",
    "AuthorizationDenied",
    "SigningUnavailable",
    "GrantRequest",
    "Signer",
    "LocalKeySigner",
]
