import os
import sys

import pytest


def pytest_configure():
    # Ensure `src/` is importable as top-level for `common.*` / `session.*` imports
    root = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    src_path = os.path.join(root, "src")
    if src_path not in sys.path:
        sys.path.insert(0, src_path)


ALICE = "0x" + "a1" * 20
BOB = "0x" + "b2" * 20
BLOG_ADDR = "0x" + "0b" * 20
CANVAS_ADDR = "0x" + "0c" * 20


class FakeClock:
    def __init__(self, t: float = 1_700_000_000.0) -> None:
        self.t = t

    def __call__(self) -> float:  # acts like time.time
        return self.t

    def advance(self, dt: float) -> None:
        self.t += dt


class FakeDecryptService:
    """Decrypt service backed by a dict of handle -> plaintext."""

    def __init__(self, plaintexts=None) -> None:
        self.plaintexts = dict(plaintexts or {})
        self.calls = []
        self.error = None

    async def user_decrypt(self, pairs, grant):
        self.calls.append((list(pairs), grant))
        if self.error is not None:
            raise self.error
        return {h: self.plaintexts[h] for h, _ in pairs if h in self.plaintexts}


def handle_of(n: int) -> str:
    return "0x" + format(n, "064x")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def decrypt_service():
    return FakeDecryptService()
