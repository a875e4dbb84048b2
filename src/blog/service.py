from __future__ import annotations

import asyncio
from typing import List

from common.content import ContentService, RevealedContent
from common.contracts import BlogContract, BlogPost, EncryptedInputBuilder, TxReceipt, normalize_address
from session.manager import DecryptionSessionManager


class BlogService(ContentService):
    """
    Blog workflow over an FHEBlog contract.

    Post bodies are packed with the content codec and stored encrypted;
    titles, authors, timestamps and visibility are plaintext metadata.
    """

    def __init__(
        self,
        contract: BlogContract,
        builder: EncryptedInputBuilder,
        session: DecryptionSessionManager,
    ) -> None:
        super().__init__(normalize_address(contract.address), builder, session)
        self._contract = contract

    async def create_blog(self, title: str, content: str, is_public: bool) -> TxReceipt:
        """Encrypt `content` and publish a new post; returns the mined receipt."""
        title = title.strip()
        if not title:
            raise ValueError("title is required")

        async def submit(encrypted):
            return await self._contract.create_blog(title, encrypted, is_public)

        return await self._publish(content, submit, self._contract.wait_for_receipt)

    async def get_blog(self, blog_id: int) -> BlogPost:
        return await self._read(f"blog {blog_id}", lambda: self._contract.get_blog(blog_id))

    async def read_blog_content(self, blog_id: int) -> RevealedContent:
        """Decrypt and decode the body of `blog_id` for the connected signer."""
        return await self._reveal(blog_id, lambda: self._contract.get_blog_content(blog_id))

    async def list_user_blogs(self, user_address: str) -> List[BlogPost]:
        user = normalize_address(user_address)
        ids = await self._read(f"blogs of {user}", lambda: self._contract.get_user_blogs(user))
        return list(await asyncio.gather(*(self.get_blog(i) for i in ids)))

    async def list_blogs(self) -> List[BlogPost]:
        total = await self.get_total_blogs()
        return list(await asyncio.gather(*(self.get_blog(i) for i in range(total))))

    async def get_total_blogs(self) -> int:
        return int(await self._read("total blogs", self._contract.get_total_blogs))

    async def like_blog(self, blog_id: int) -> TxReceipt:
        return await self._transact(
            "like", blog_id, lambda: self._contract.like_blog(blog_id), self._contract.wait_for_receipt
        )

    async def unlike_blog(self, blog_id: int) -> TxReceipt:
        return await self._transact(
            "unlike", blog_id, lambda: self._contract.unlike_blog(blog_id), self._contract.wait_for_receipt
        )

    async def get_like_count(self, blog_id: int) -> int:
        """Decrypt the encrypted like counter of `blog_id`."""
        return await self._decrypt_counter(blog_id, lambda: self._contract.get_like_count(blog_id))

    async def has_liked(self, blog_id: int, user_address: str) -> bool:
        user = normalize_address(user_address)
        return bool(
            await self._read(f"like of {user} on blog {blog_id}", lambda: self._contract.has_liked(blog_id, user))
        )
