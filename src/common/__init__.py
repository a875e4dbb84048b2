"""
Common utilities for the FHE content client.

Modules:
- content_codec: pack short UTF-8 text into one integer and back
- contracts: typed contract interfaces, models and address/handle helpers
- signer: decryption-grant signing (protocol, local software signer)
- relayer: async decrypt-service client
- content: shared publish/reveal workflow plumbing
- config: environment-driven settings
"""

__all__ = [
    "config",
    "content",
    "content_codec",
    "contracts",
    "rate_limiter",
    "relayer",
    "signer",
]
