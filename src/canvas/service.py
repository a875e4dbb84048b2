from __future__ import annotations

import asyncio
from typing import Iterable, List, Optional, Union

from common.content import ContentService, RevealedContent
from common.contracts import (
    CanvasContract,
    Creation,
    EncryptedInputBuilder,
    TxReceipt,
    normalize_address,
)
from session.manager import DecryptionSessionManager


def parse_tags(raw: Optional[Union[str, Iterable[str]]]) -> List[str]:
    """Split comma-separated tags (or clean a list), dropping blanks and duplicates."""
    if not raw:
        return []
    items = raw.split(",") if isinstance(raw, str) else list(raw)
    seen: set[str] = set()
    out: List[str] = []
    for t in items:
        tag = t.strip()
        if tag and tag not in seen:
            seen.add(tag)
            out.append(tag)
    return out


class CanvasService(ContentService):
    """Creative-canvas workflow: mint encrypted creations, reveal and appreciate them."""

    def __init__(
        self,
        contract: CanvasContract,
        builder: EncryptedInputBuilder,
        session: DecryptionSessionManager,
    ) -> None:
        super().__init__(normalize_address(contract.address), builder, session)
        self._contract = contract

    async def mint_creation(
        self,
        title: str,
        content: str,
        tags: Optional[Union[str, Iterable[str]]] = None,
        is_exhibited: bool = True,
    ) -> TxReceipt:
        """
        Encrypt `content` and mint it as a new creation.

        `tags` may be a comma-separated string or a list. The content is
        encoded before anything is sent, so oversize content fails without a
        transaction.
        """
        title = title.strip()
        if not title:
            raise ValueError("title is required")
        tag_list = parse_tags(tags)

        async def submit(encrypted):
            return await self._contract.mint_creation(title, encrypted, is_exhibited, tag_list)

        return await self._publish(content, submit, self._contract.wait_for_receipt)

    async def get_creation(self, creation_id: int) -> Creation:
        return await self._read(
            f"creation {creation_id}", lambda: self._contract.get_creation(creation_id)
        )

    async def read_creation_content(self, creation_id: int) -> RevealedContent:
        return await self._reveal(
            creation_id, lambda: self._contract.get_creation_content(creation_id)
        )

    async def list_creator_works(self, creator: str) -> List[Creation]:
        who = normalize_address(creator)
        ids = await self._read(f"works of {who}", lambda: self._contract.get_creator_works(who))
        return list(await asyncio.gather(*(self.get_creation(i) for i in ids)))

    async def list_creations(self, *, exhibited_only: bool = False) -> List[Creation]:
        total = int(await self._read("total creations", self._contract.get_total_creations))
        items = await asyncio.gather(*(self.get_creation(i) for i in range(total)))
        if exhibited_only:
            return [c for c in items if c.is_exhibited]
        return list(items)

    async def appreciate_creation(self, creation_id: int) -> TxReceipt:
        return await self._transact(
            "appreciate",
            creation_id,
            lambda: self._contract.appreciate_creation(creation_id),
            self._contract.wait_for_receipt,
        )

    async def withdraw_appreciation(self, creation_id: int) -> TxReceipt:
        return await self._transact(
            "withdraw",
            creation_id,
            lambda: self._contract.withdraw_appreciation(creation_id),
            self._contract.wait_for_receipt,
        )

    async def get_appreciation_count(self, creation_id: int) -> int:
        return await self._decrypt_counter(
            creation_id, lambda: self._contract.get_appreciation_count(creation_id)
        )

    async def has_appreciated(self, creation_id: int, user_address: str) -> bool:
        user = normalize_address(user_address)
        return bool(
            await self._read(
                f"appreciation of {user} on creation {creation_id}",
                lambda: self._contract.has_appreciated(creation_id, user),
            )
        )

    async def is_premium_creator(self, creator: str) -> bool:
        who = normalize_address(creator)
        return bool(await self._read(f"premium flag of {who}", lambda: self._contract.is_premium_creator(who)))
