from __future__ import annotations

import asyncio

import pytest
from cryptography.fernet import Fernet

from common.relayer import DecryptionFailed, GrantRejected
from common.signer import AuthorizationDenied, LocalKeySigner, SigningUnavailable
from conftest import ALICE, BLOG_ADDR, BOB, CANVAS_ADDR, FakeDecryptService, handle_of
from session.grant_cache import GrantCache
from session.grant_store import EncryptedFileGrantStore
from session.manager import DecryptionSessionManager, MissingPlaintext
from session.models import SECONDS_PER_DAY, GrantKey


H1 = handle_of(1)
H2 = handle_of(2)


def _manager(service, clock, *, duration_days: int = 365, store=None):
    return DecryptionSessionManager(
        service, GrantCache(store, clock=clock), duration_days=duration_days
    )


class GatedSigner(LocalKeySigner):
    """Signer that waits for `release` before answering."""

    def __init__(self, address: str) -> None:
        super().__init__(address)
        self.release: asyncio.Event | None = None

    async def sign_grant(self, request):
        self.prompts += 1
        assert self.release is not None
        await self.release.wait()
        self.prompts -= 1
        return await super().sign_grant(request)


def test_two_resolves_in_window_prompt_once(clock):
    service = FakeDecryptService({H1: 42, H2: 7})
    mgr = _manager(service, clock)
    signer = LocalKeySigner(ALICE)
    mgr.connect(signer, chain_id=31337)

    async def run():
        a = await mgr.resolve_plaintext(H1, BLOG_ADDR)
        clock.advance(3600)
        b = await mgr.resolve_plaintext(H2, BLOG_ADDR)
        return a, b

    assert asyncio.run(run()) == (42, 7)
    assert signer.prompts == 1
    assert len(service.calls) == 2
    # Both calls used the same grant
    assert service.calls[0][1] is service.calls[1][1]


def test_signing_address_change_forces_new_prompt(clock):
    service = FakeDecryptService({H1: 1})
    mgr = _manager(service, clock)
    alice, bob = LocalKeySigner(ALICE), LocalKeySigner(BOB)

    async def run():
        mgr.connect(alice, chain_id=1)
        await mgr.resolve_plaintext(H1, BLOG_ADDR)
        mgr.connect(bob, chain_id=1)
        await mgr.resolve_plaintext(H1, BLOG_ADDR)

    asyncio.run(run())
    assert alice.prompts == 1
    assert bob.prompts == 1
    first, second = service.calls[0][1], service.calls[1][1]
    assert first.user_address == ALICE
    assert second.user_address == BOB
    assert GrantKey.of(ALICE, [BLOG_ADDR]) not in mgr.cache


def test_chain_change_forces_new_prompt(clock):
    service = FakeDecryptService({H1: 1})
    mgr = _manager(service, clock)
    signer = LocalKeySigner(ALICE)

    async def run():
        mgr.connect(signer, chain_id=1)
        await mgr.resolve_plaintext(H1, BLOG_ADDR)
        mgr.connect(signer, chain_id=11155111)
        await mgr.resolve_plaintext(H1, BLOG_ADDR)

    asyncio.run(run())
    assert signer.prompts == 2
    assert service.calls[1][1].chain_id == 11155111


def test_reconnecting_same_identity_keeps_grant(clock):
    service = FakeDecryptService({H1: 1})
    mgr = _manager(service, clock)
    signer = LocalKeySigner(ALICE)

    async def run():
        mgr.connect(signer, chain_id=1)
        await mgr.resolve_plaintext(H1, BLOG_ADDR)
        mgr.connect(signer, chain_id=1)
        await mgr.resolve_plaintext(H1, BLOG_ADDR)

    asyncio.run(run())
    assert signer.prompts == 1


def test_expired_grant_is_replaced_transparently(clock):
    service = FakeDecryptService({H1: 5})
    mgr = _manager(service, clock, duration_days=1)
    signer = LocalKeySigner(ALICE)
    mgr.connect(signer, chain_id=1)

    async def run():
        await mgr.resolve_plaintext(H1, BLOG_ADDR)
        clock.advance(SECONDS_PER_DAY)  # exactly at the end: still valid
        await mgr.resolve_plaintext(H1, BLOG_ADDR)
        assert signer.prompts == 1
        clock.advance(1)
        return await mgr.resolve_plaintext(H1, BLOG_ADDR)

    assert asyncio.run(run()) == 5
    assert signer.prompts == 2
    old, new = service.calls[0][1], service.calls[2][1]
    assert new.start_timestamp == old.start_timestamp + SECONDS_PER_DAY + 1
    assert new.public_key != old.public_key


def test_grant_scoped_per_contract_set(clock):
    service = FakeDecryptService({H1: 1, H2: 2})
    mgr = _manager(service, clock)
    signer = LocalKeySigner(ALICE)
    mgr.connect(signer, chain_id=1)

    async def run():
        await mgr.resolve_plaintext(H1, BLOG_ADDR)
        await mgr.resolve_plaintext(H2, CANVAS_ADDR)

    asyncio.run(run())
    assert signer.prompts == 2
    assert service.calls[0][1].contract_addresses == (BLOG_ADDR,)
    assert service.calls[1][1].contract_addresses == (CANVAS_ADDR,)


def test_no_signer_raises_signing_unavailable(clock, decrypt_service):
    mgr = _manager(decrypt_service, clock)
    with pytest.raises(SigningUnavailable):
        asyncio.run(mgr.resolve_plaintext(H1, BLOG_ADDR))
    assert decrypt_service.calls == []


def test_disconnect_drops_grants_and_signer(clock):
    service = FakeDecryptService({H1: 1})
    mgr = _manager(service, clock)
    mgr.connect(LocalKeySigner(ALICE), chain_id=1)
    asyncio.run(mgr.resolve_plaintext(H1, BLOG_ADDR))
    assert len(mgr.cache) == 1

    mgr.disconnect()
    assert len(mgr.cache) == 0
    assert mgr.signer_address is None
    with pytest.raises(SigningUnavailable):
        asyncio.run(mgr.resolve_plaintext(H1, BLOG_ADDR))


def test_declined_signature_does_not_poison_cache(clock):
    service = FakeDecryptService({H1: 9})
    mgr = _manager(service, clock)
    signer = LocalKeySigner(ALICE, declines=True)
    mgr.connect(signer, chain_id=1)

    with pytest.raises(AuthorizationDenied):
        asyncio.run(mgr.resolve_plaintext(H1, BLOG_ADDR))
    assert len(mgr.cache) == 0
    assert service.calls == []

    signer.declines = False
    assert asyncio.run(mgr.resolve_plaintext(H1, BLOG_ADDR)) == 9
    assert signer.prompts == 2


def test_missing_plaintext_raises(clock):
    service = FakeDecryptService({H2: 3})
    mgr = _manager(service, clock)
    mgr.connect(LocalKeySigner(ALICE), chain_id=1)
    with pytest.raises(MissingPlaintext):
        asyncio.run(mgr.resolve_plaintext(H1, BLOG_ADDR))


def test_decrypt_failure_surfaces_without_retry(clock):
    service = FakeDecryptService({H1: 3})
    service.error = DecryptionFailed("HTTP 503 from relayer")
    mgr = _manager(service, clock)
    signer = LocalKeySigner(ALICE)
    mgr.connect(signer, chain_id=1)

    with pytest.raises(DecryptionFailed):
        asyncio.run(mgr.resolve_plaintext(H1, BLOG_ADDR))
    assert len(service.calls) == 1
    # Grant stays usable for the caller's own retry
    assert len(mgr.cache) == 1


def test_unexpected_service_error_is_wrapped(clock):
    service = FakeDecryptService()
    service.error = ConnectionResetError("peer reset")
    mgr = _manager(service, clock)
    mgr.connect(LocalKeySigner(ALICE), chain_id=1)

    with pytest.raises(DecryptionFailed) as ei:
        asyncio.run(mgr.resolve_plaintext(H1, BLOG_ADDR))
    assert isinstance(ei.value.__cause__, ConnectionResetError)


def test_rejected_grant_is_discarded(clock):
    service = FakeDecryptService({H1: 3})
    service.error = GrantRejected("HTTP 403 from relayer")
    mgr = _manager(service, clock)
    signer = LocalKeySigner(ALICE)
    mgr.connect(signer, chain_id=1)

    with pytest.raises(GrantRejected):
        asyncio.run(mgr.resolve_plaintext(H1, BLOG_ADDR))
    assert len(mgr.cache) == 0

    service.error = None
    assert asyncio.run(mgr.resolve_plaintext(H1, BLOG_ADDR)) == 3
    assert signer.prompts == 2


def test_concurrent_requests_share_one_prompt(clock):
    service = FakeDecryptService({handle_of(i): i for i in range(1, 4)})
    mgr = _manager(service, clock)
    signer = GatedSigner(ALICE)
    mgr.connect(signer, chain_id=1)

    async def run():
        signer.release = asyncio.Event()
        tasks = [
            asyncio.ensure_future(mgr.resolve_plaintext(handle_of(i), BLOG_ADDR))
            for i in range(1, 4)
        ]
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert signer.prompts == 1
        signer.release.set()
        return await asyncio.gather(*tasks)

    assert asyncio.run(run()) == [1, 2, 3]
    assert len(service.calls) == 3
    assert len({id(grant) for _, grant in service.calls}) == 1


def test_cancelled_waiter_does_not_cancel_signing(clock):
    service = FakeDecryptService({H1: 11})
    mgr = _manager(service, clock)
    signer = GatedSigner(ALICE)
    mgr.connect(signer, chain_id=1)

    async def run():
        signer.release = asyncio.Event()
        doomed = asyncio.ensure_future(mgr.resolve_plaintext(H1, BLOG_ADDR))
        survivor = asyncio.ensure_future(mgr.resolve_plaintext(H1, BLOG_ADDR))
        await asyncio.sleep(0)
        doomed.cancel()
        await asyncio.sleep(0)
        signer.release.set()
        value = await survivor
        return doomed.cancelled(), value

    cancelled, value = asyncio.run(run())
    assert cancelled is True
    assert value == 11
    assert len(mgr.cache) == 1


def test_identity_change_during_signing_discards_grant(clock):
    service = FakeDecryptService({H1: 1})
    mgr = _manager(service, clock)
    alice = GatedSigner(ALICE)
    mgr.connect(alice, chain_id=1)

    async def run():
        alice.release = asyncio.Event()
        pending = asyncio.ensure_future(mgr.resolve_plaintext(H1, BLOG_ADDR))
        await asyncio.sleep(0)
        mgr.connect(LocalKeySigner(BOB), chain_id=1)
        alice.release.set()
        with pytest.raises(SigningUnavailable):
            await pending

    asyncio.run(run())
    assert len(mgr.cache) == 0
    assert service.calls == []


def test_grant_signature_covers_request(clock):
    service = FakeDecryptService({H1: 1})
    mgr = _manager(service, clock, duration_days=10)
    signer = LocalKeySigner(ALICE)
    mgr.connect(signer, chain_id=31337)

    grant = asyncio.run(mgr.get_grant([BLOG_ADDR]))
    assert grant.duration_days == 10
    assert grant.start_timestamp == int(clock())
    assert grant.chain_id == 31337
    assert signer.verify(grant.request(), grant.signature)
    assert "private_key" not in repr(grant)


def test_resolve_many_uses_union_grant(clock):
    service = FakeDecryptService({H1: 1, H2: 2})
    mgr = _manager(service, clock)
    signer = LocalKeySigner(ALICE)
    mgr.connect(signer, chain_id=1)

    out = asyncio.run(mgr.resolve_many([(H1, BLOG_ADDR), (H2, CANVAS_ADDR)]))
    assert out == {H1: 1, H2: 2}
    assert signer.prompts == 1
    grant = service.calls[0][1]
    assert grant.contract_addresses == tuple(sorted([BLOG_ADDR, CANVAS_ADDR]))


def test_persisted_grant_survives_restart(clock, tmp_path):
    key = Fernet.generate_key()
    path = tmp_path / "grants.json"
    service = FakeDecryptService({H1: 4})
    signer = LocalKeySigner(ALICE)

    first = _manager(service, clock, store=EncryptedFileGrantStore(path, key))
    first.connect(signer, chain_id=1)
    asyncio.run(first.resolve_plaintext(H1, BLOG_ADDR))

    second = _manager(service, clock, store=EncryptedFileGrantStore(path, key))
    # First connection of a fresh manager keeps stored grants
    second.connect(signer, chain_id=1)
    assert asyncio.run(second.resolve_plaintext(H1, BLOG_ADDR)) == 4
    assert signer.prompts == 1
