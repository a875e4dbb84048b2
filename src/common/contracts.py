from __future__ import annotations

import re
from typing import Iterable, List, Protocol, Tuple, Union, runtime_checkable

from pydantic import BaseModel, Field, field_validator


ZERO_ADDRESS = "0x" + "0" * 40
UINT256_BITS = 256

_ADDRESS_RE = re.compile(r"^0x[0-9a-f]{40}$")
_HANDLE_RE = re.compile(r"^0x[0-9a-f]{64}$")


def normalize_address(address: str) -> str:
    """Lower-case a 0x-prefixed 20-byte hex address; raise ValueError otherwise."""
    if not isinstance(address, str):
        raise ValueError(f"address must be str, got {type(address).__name__}")
    a = address.strip().lower()
    if not _ADDRESS_RE.match(a):
        raise ValueError(f"Invalid address: {address!r}")
    return a


def normalize_addresses(addresses: Iterable[str]) -> Tuple[str, ...]:
    """Normalize, dedup and sort a set of contract addresses."""
    return tuple(sorted({normalize_address(a) for a in addresses}))


def normalize_handle(handle: Union[str, bytes]) -> str:
    """Return a ciphertext handle as 0x-prefixed lower-case hex (32 bytes)."""
    if isinstance(handle, (bytes, bytearray)):
        if len(handle) != 32:
            raise ValueError(f"handle must be 32 bytes, got {len(handle)}")
        return "0x" + bytes(handle).hex()
    if not isinstance(handle, str):
        raise ValueError(f"handle must be str or bytes, got {type(handle).__name__}")
    h = handle.strip().lower()
    if not h.startswith("0x"):
        h = "0x" + h
    if not _HANDLE_RE.match(h):
        raise ValueError(f"Invalid ciphertext handle: {handle!r}")
    return h


class EncryptedInput(BaseModel):
    """Opaque encrypted value plus its validity proof, ready for a transaction."""

    handle: str
    proof: bytes

    @field_validator("handle", mode="before")
    @classmethod
    def _norm_handle(cls, v: Union[str, bytes]) -> str:
        return normalize_handle(v)


class TxReceipt(BaseModel):
    tx_hash: str
    status: int = Field(1, description="1 on success, 0 on revert")
    block_number: int | None = None

    def ok(self) -> bool:
        return self.status == 1


class BlogPost(BaseModel):
    id: int
    title: str
    author: str
    created_at: int = Field(..., description="Unix seconds")
    is_public: bool
    like_count: int | None = None
    has_liked: bool | None = None

    @field_validator("author", mode="before")
    @classmethod
    def _norm_author(cls, v: str) -> str:
        return normalize_address(v)


class Creation(BaseModel):
    id: int
    title: str
    creator: str
    minted_at: int = Field(..., description="Unix seconds")
    is_exhibited: bool
    tags: List[str] = Field(default_factory=list)
    is_premium: bool = False
    appreciations: int | None = None

    @field_validator("creator", mode="before")
    @classmethod
    def _norm_creator(cls, v: str) -> str:
        return normalize_address(v)


@runtime_checkable
class EncryptedInputBuilder(Protocol):
    """Turns a plaintext integer into an encrypted input for one contract/user."""

    slot_bits: int

    async def encrypt_uint(
        self, contract_address: str, user_address: str, value: int
    ) -> EncryptedInput: ...


@runtime_checkable
class BlogContract(Protocol):
    """Typed view of the FHEBlog contract; one method per on-chain call."""

    address: str

    async def create_blog(
        self, title: str, content: EncryptedInput, is_public: bool
    ) -> str: ...

    async def wait_for_receipt(self, tx_hash: str) -> TxReceipt: ...

    async def get_blog(self, blog_id: int) -> BlogPost: ...

    async def get_blog_content(self, blog_id: int) -> str: ...

    async def like_blog(self, blog_id: int) -> str: ...

    async def unlike_blog(self, blog_id: int) -> str: ...

    async def get_user_blogs(self, user_address: str) -> List[int]: ...

    async def get_total_blogs(self) -> int: ...

    async def get_like_count(self, blog_id: int) -> str: ...

    async def has_liked(self, blog_id: int, user_address: str) -> bool: ...


@runtime_checkable
class CanvasContract(Protocol):
    """Typed view of the EncryptedCanvas contract; one method per on-chain call."""

    address: str

    async def mint_creation(
        self,
        title: str,
        content: EncryptedInput,
        is_exhibited: bool,
        tags: List[str],
    ) -> str: ...

    async def wait_for_receipt(self, tx_hash: str) -> TxReceipt: ...

    async def get_creation(self, creation_id: int) -> Creation: ...

    async def get_creation_content(self, creation_id: int) -> str: ...

    async def appreciate_creation(self, creation_id: int) -> str: ...

    async def withdraw_appreciation(self, creation_id: int) -> str: ...

    async def get_creator_works(self, creator: str) -> List[int]: ...

    async def get_total_creations(self) -> int: ...

    async def get_appreciation_count(self, creation_id: int) -> str: ...

    async def has_appreciated(self, creation_id: int, user_address: str) -> bool: ...

    async def is_premium_creator(self, creator: str) -> bool: ...


__all__ = [
    "ZERO_ADDRESS",
    "UINT256_BITS",
    "normalize_address",
    "normalize_addresses",
    "normalize_handle",
    "EncryptedInput",
    "TxReceipt",
    "BlogPost",
    "Creation",
    "EncryptedInputBuilder",
    "BlogContract",
    "CanvasContract",
]
