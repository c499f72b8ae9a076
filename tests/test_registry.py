from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

from graphgen.registry import ActiveTaskRegistry, LeaseTaskRegistry


def test_second_acquire_for_same_user_fails() -> None:
    registry = ActiveTaskRegistry()

    assert registry.try_acquire("u1") is True
    assert registry.try_acquire("u1") is False
    assert registry.try_acquire("u2") is True
    assert registry.is_active("u1")


def test_release_is_idempotent() -> None:
    registry = ActiveTaskRegistry()
    registry.try_acquire("u1")

    registry.release("u1")
    registry.release("u1")
    registry.release("never-acquired")

    assert registry.is_active("u1") is False
    assert registry.try_acquire("u1") is True


def test_kinds_hold_separate_slots() -> None:
    registry = ActiveTaskRegistry()

    assert registry.try_acquire("u1", "graph") is True
    assert registry.try_acquire("u1", "summary") is True
    registry.release("u1", "summary")

    assert registry.is_active("u1", "graph") is True
    assert registry.active_count() == 1


def test_concurrent_acquire_grants_exactly_one_slot() -> None:
    registry = ActiveTaskRegistry()

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: registry.try_acquire("u1"), range(64)))

    assert results.count(True) == 1


def test_concurrent_acquire_across_users() -> None:
    registry = ActiveTaskRegistry()
    users = [f"user-{index}" for index in range(32)]

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(registry.try_acquire, users))

    assert all(results)
    assert registry.active_count() == 32


def test_lease_registry_is_shared_through_the_store(store) -> None:
    first = LeaseTaskRegistry(store, ttl_seconds=60, owner="instance-a")
    second = LeaseTaskRegistry(store, ttl_seconds=60, owner="instance-b")

    assert first.try_acquire("u1") is True
    assert second.try_acquire("u1") is False
    assert second.is_active("u1") is True

    second.release("u1")
    assert first.is_active("u1") is True

    first.release("u1")
    first.release("u1")
    assert second.try_acquire("u1") is True


def test_expired_lease_can_be_taken_over(store) -> None:
    store.acquire_lease("u1", "graph", "crashed-instance", 10, now=0.0)
    registry = LeaseTaskRegistry(store, ttl_seconds=60, owner="instance-a")

    assert registry.try_acquire("u1") is True
