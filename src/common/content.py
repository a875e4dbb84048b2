from __future__ import annotations

import logging
from collections import Counter
from contextlib import contextmanager
from typing import TYPE_CHECKING, Awaitable, Callable, Iterator, Optional, Tuple

from pydantic import BaseModel

from .content_codec import (
    DecodeError,
    EncodeError,
    decode,
    encode,
    fallback_display,
    is_empty_content,
)
from .contracts import EncryptedInput, EncryptedInputBuilder, TxReceipt
from .signer import SigningUnavailable

if TYPE_CHECKING:
    from session.manager import DecryptionSessionManager


logger = logging.getLogger(__name__)


class ContentUnavailable(RuntimeError):
    """An on-chain read for a content item failed."""


class TransactionReverted(RuntimeError):
    """A submitted transaction was mined with a failure status."""


class RevealedContent(BaseModel):
    """
    Decrypted content as it should be shown.

    - text: decoded text, `EMPTY_CONTENT` for a zero plaintext, or the
      fallback "Content value: <n>" when the bytes are not UTF-8.
    - raw_value: the plaintext integer, kept for diagnostics.
    - decoded: False when the fallback was used.
    """

    text: str
    raw_value: int
    decoded: bool = True

    @property
    def is_empty(self) -> bool:
        return self.decoded and self.raw_value == 0

    @classmethod
    def from_plaintext(cls, value: int) -> "RevealedContent":
        try:
            text = decode(value)
        except DecodeError as exc:
            logger.warning("Could not decode plaintext %d: %s", value, exc)
            return cls(text=fallback_display(value), raw_value=value, decoded=False)
        if is_empty_content(text):
            return cls(text=str(text), raw_value=0)
        return cls(text=text, raw_value=value)


def encode_for_slot(text: str, slot_bits: int) -> int:
    """Encode `text` and check the result fits an encrypted slot of `slot_bits`."""
    value = encode(text)
    if value.bit_length() > slot_bits:
        raise EncodeError(
            f"Content needs {value.bit_length()} bits; the encrypted slot holds {slot_bits}"
        )
    return value


class ContentService:
    """
    Shared create/reveal plumbing for the blog and canvas workflows.

    Every long-running operation counts itself in `pending` for its whole
    duration and is released in `finally`. A marker stays set while any
    operation holding it is still running, and a failure never leaves an
    in-progress indicator behind.
    """

    def __init__(
        self,
        contract_address: str,
        builder: EncryptedInputBuilder,
        session: "DecryptionSessionManager",
    ) -> None:
        self._contract_address = contract_address
        self._builder = builder
        self._session = session
        self.pending: Counter[Tuple[str, Optional[int]]] = Counter()

    @property
    def session(self) -> "DecryptionSessionManager":
        return self._session

    def is_pending(self, operation: str, item_id: Optional[int] = None) -> bool:
        return self.pending[(operation, item_id)] > 0

    @contextmanager
    def _track(self, operation: str, item_id: Optional[int] = None) -> Iterator[None]:
        marker = (operation, item_id)
        self.pending[marker] += 1
        try:
            yield
        finally:
            self.pending[marker] -= 1
            if self.pending[marker] <= 0:
                del self.pending[marker]

    def _current_user(self) -> str:
        user = self._session.signer_address
        if user is None:
            raise SigningUnavailable("Wallet not connected")
        return user

    async def _publish(
        self,
        content: str,
        submit: Callable[[EncryptedInput], Awaitable[str]],
        wait: Callable[[str], Awaitable[TxReceipt]],
    ) -> TxReceipt:
        # Size and identity checks happen before anything leaves the process
        value = encode_for_slot(content, self._builder.slot_bits)
        user = self._current_user()

        with self._track("publish"):
            logger.debug("await-encryption: %d byte(s) for %s", (value.bit_length() + 7) // 8, user)
            encrypted = await self._builder.encrypt_uint(self._contract_address, user, value)
            logger.debug("await-submit")
            tx_hash = await submit(encrypted)
            return await self._confirm(tx_hash, wait)

    async def _transact(
        self,
        operation: str,
        item_id: int,
        send: Callable[[], Awaitable[str]],
        wait: Callable[[str], Awaitable[TxReceipt]],
    ) -> TxReceipt:
        with self._track(operation, item_id):
            logger.debug("await-submit: %s %d", operation, item_id)
            tx_hash = await send()
            return await self._confirm(tx_hash, wait)

    @staticmethod
    async def _confirm(
        tx_hash: str, wait: Callable[[str], Awaitable[TxReceipt]]
    ) -> TxReceipt:
        logger.debug("await-confirmation: %s", tx_hash)
        receipt = await wait(tx_hash)
        if not receipt.ok():
            raise TransactionReverted(f"Transaction {tx_hash} reverted (status={receipt.status})")
        logger.info("Transaction %s confirmed", tx_hash)
        return receipt

    async def _reveal(
        self, item_id: int, fetch_handle: Callable[[], Awaitable[str]]
    ) -> RevealedContent:
        with self._track("decrypt", item_id):
            handle = await self._read(f"content handle of item {item_id}", fetch_handle)
            value = await self._session.resolve_plaintext(handle, self._contract_address)
            return RevealedContent.from_plaintext(value)

    async def _decrypt_counter(
        self, item_id: int, fetch_handle: Callable[[], Awaitable[str]]
    ) -> int:
        with self._track("count", item_id):
            handle = await self._read(f"counter handle of item {item_id}", fetch_handle)
            return await self._session.resolve_plaintext(handle, self._contract_address)

    @staticmethod
    async def _read(what: str, call: Callable[[], Awaitable]):
        try:
            return await call()
        except Exception as exc:
            raise ContentUnavailable(f"Failed to read {what}: {exc}") from exc


__all__ = [
    "ContentService",
    "ContentUnavailable",
    "RevealedContent",
    "TransactionReverted",
    "encode_for_slot",
]
