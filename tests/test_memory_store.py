import threading

import pytest

from authkernel.logging import hash_email
from authkernel.storage.errors import DuplicateEmail, UserNotFound
from authkernel.storage.memory import MemoryRevocationCache, MemoryStore

from conftest import FakeClock


def test_create_and_lookup_user():
    store = MemoryStore()
    created = store.create_user("a@example.com", "cred-1")
    fetched = store.get_user_by_email("a@example.com")

    assert fetched.id == created.id
    assert fetched.password_credential == "cred-1"
    assert fetched.updated_at is None


def test_duplicate_email_rejected():
    store = MemoryStore()
    store.create_user("a@example.com", "cred-1")
    with pytest.raises(DuplicateEmail) as exc_info:
        store.create_user("a@example.com", "cred-2")
    assert exc_info.value.error_code == "duplicate_email"
    assert store.get_user_by_email("a@example.com").password_credential == "cred-1"


def test_unknown_email_detail_carries_digest_not_address():
    store = MemoryStore()
    with pytest.raises(UserNotFound) as exc_info:
        store.get_user_by_email("ghost@example.com")
    assert exc_info.value.detail == {"email_hash": hash_email("ghost@example.com")}
    assert "ghost@example.com" not in str(exc_info.value.detail)


def test_set_user_password_updates_in_place():
    store = MemoryStore()
    user = store.create_user("a@example.com", "cred-1")
    store.set_user_password("a@example.com", "cred-2")

    fetched = store.get_user_by_email("a@example.com")
    assert fetched.id == user.id
    assert fetched.password_credential == "cred-2"
    assert fetched.updated_at is not None


def test_set_user_password_unknown_email():
    with pytest.raises(UserNotFound):
        MemoryStore().set_user_password("ghost@example.com", "cred")


def test_concurrent_creates_yield_single_user():
    store = MemoryStore()
    barrier = threading.Barrier(8)
    outcomes = []

    def worker(i):
        barrier.wait()
        try:
            store.create_user("race@example.com", f"cred-{i}")
            outcomes.append("created")
        except DuplicateEmail:
            outcomes.append("duplicate")

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("created") == 1
    assert outcomes.count("duplicate") == 7
    assert len(store.users) == 1


async def test_revoke_is_insert_if_absent():
    cache = MemoryRevocationCache(clock=FakeClock())
    assert await cache.revoke_token("jti-1", 60) is True
    assert await cache.revoke_token("jti-1", 60) is False
    assert (await cache.token_status("jti-1", "user-1"))[0] is True
    assert (await cache.token_status("jti-2", "user-1"))[0] is False


async def test_revocations_prune_after_ttl():
    clock = FakeClock()
    cache = MemoryRevocationCache(clock=clock)
    await cache.revoke_token("jti-1", 10)
    clock.advance(10)

    assert (await cache.token_status("jti-1", "user-1"))[0] is False
    await cache.revoke_token("jti-2", 10)
    assert "jti-1" not in cache._revoked


async def test_zero_ttl_revocation_still_recorded():
    cache = MemoryRevocationCache(clock=FakeClock())
    assert await cache.revoke_token("jti-1", 0) is True
    assert (await cache.token_status("jti-1", "user-1"))[0] is True


async def test_token_status_reads_flag_and_version_together():
    cache = MemoryRevocationCache(clock=FakeClock())
    assert await cache.token_status("jti-1", "user-1") == (False, 0)

    await cache.revoke_token("jti-1", 60)
    assert await cache.bump_credential_version("user-1") == 1
    assert await cache.bump_credential_version("user-1") == 2

    assert await cache.token_status("jti-1", "user-1") == (True, 2)
    assert await cache.credential_version("user-1") == 2
    assert await cache.credential_version("user-2") == 0
