"""
Decryption sessions: grants, their cache and persistence, and the manager
that resolves ciphertext handles to plaintext integers.
"""

from .grant_cache import GrantCache
from .grant_store import EncryptedFileGrantStore, InMemoryGrantStore
from .manager import DecryptionSessionManager, MissingPlaintext, session_from_settings
from .models import DecryptionGrant, GrantKey

__all__ = [
    "DecryptionGrant",
    "DecryptionSessionManager",
    "EncryptedFileGrantStore",
    "GrantCache",
    "GrantKey",
    "InMemoryGrantStore",
    "MissingPlaintext",
    "session_from_settings",
]
