from __future__ import annotations

from typing import Iterable, NamedTuple, Tuple

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey
from pydantic import BaseModel, ConfigDict, Field, field_validator

from common.contracts import normalize_address, normalize_addresses
from common.signer import GrantRequest


SECONDS_PER_DAY = 86_400


class GrantKey(NamedTuple):
    """Cache key: (signing address, sorted contract-address set)."""

    user_address: str
    contract_addresses: Tuple[str, ...]

    @classmethod
    def of(cls, user_address: str, contract_addresses: Iterable[str]) -> "GrantKey":
        contracts = normalize_addresses(contract_addresses)
        if not contracts:
            raise ValueError("a grant needs at least one contract address")
        return cls(normalize_address(user_address), contracts)

    def storage_key(self) -> str:
        return f"{self.user_address}:{','.join(self.contract_addresses)}"


class KeyPair(NamedTuple):
    public_key: str
    private_key: str


def generate_keypair() -> KeyPair:
    """Generate a fresh X25519 key pair, hex-encoded (raw 32-byte form)."""
    sk = X25519PrivateKey.generate()
    pk_raw = sk.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    sk_raw = sk.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return KeyPair(public_key="0x" + pk_raw.hex(), private_key="0x" + sk_raw.hex())


class DecryptionGrant(BaseModel):
    """
    Time-boxed authorization to decrypt handles of a fixed contract set.

    Fields
    - public_key / private_key: ephemeral key pair bound into the signature.
      The private key stays client-side and is hidden from repr.
    - signature: signer's signature over the `GrantRequest`.
    - user_address: the address that signed.
    - contract_addresses: sorted, lower-cased set the signature covers.
    - start_timestamp: Unix seconds when the window opened.
    - duration_days: window length.
    - chain_id: chain the signature was produced for.

    Notes
    - Expired once `now > start_timestamp + duration_days * 86400`.
    - Valid only for the exact signer and contract set it was signed for.
    """

    model_config = ConfigDict(frozen=True)

    public_key: str
    private_key: str = Field(..., repr=False)
    signature: str = Field(..., repr=False)
    user_address: str
    contract_addresses: Tuple[str, ...]
    start_timestamp: int
    duration_days: int = Field(..., ge=1)
    chain_id: int

    @field_validator("user_address", mode="before")
    @classmethod
    def _norm_user(cls, v: str) -> str:
        return normalize_address(v)

    @field_validator("contract_addresses", mode="before")
    @classmethod
    def _norm_contracts(cls, v: Iterable[str]) -> Tuple[str, ...]:
        return normalize_addresses(v)

    @property
    def key(self) -> GrantKey:
        return GrantKey(self.user_address, self.contract_addresses)

    @property
    def expires_at(self) -> int:
        return self.start_timestamp + self.duration_days * SECONDS_PER_DAY

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def covers(self, contract_address: str) -> bool:
        return normalize_address(contract_address) in self.contract_addresses

    def is_valid_for(self, key: GrantKey, *, chain_id: int, now: float) -> bool:
        """True when this grant may serve `key` on `chain_id` at time `now`."""
        return (
            self.key == key
            and self.chain_id == chain_id
            and not self.is_expired(now)
        )

    def request(self) -> GrantRequest:
        """The signed tuple, as it was presented to the signer."""
        return GrantRequest(
            contract_addresses=list(self.contract_addresses),
            public_key=self.public_key,
            start_timestamp=self.start_timestamp,
            duration_days=self.duration_days,
            chain_id=self.chain_id,
        )

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw: str) -> "DecryptionGrant":
        return cls.model_validate_json(raw)
