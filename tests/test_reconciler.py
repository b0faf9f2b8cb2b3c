"""Tests for change-driven re-fetching."""

import asyncio

import pytest

from estate_messaging.database.base import CONVERSATIONS, MESSAGES
from estate_messaging.errors import StoreUnavailable
from estate_messaging.services.reconciler import ChangeReconciler


@pytest.mark.asyncio
async def test_refetches_are_coalesced(gateway):
    """Notifications during an in-flight fetch share it."""
    calls = 0
    release = asyncio.Event()

    async def refresh():
        nonlocal calls
        calls += 1
        await release.wait()

    reconciler = ChangeReconciler("u1", gateway, refresh, retry_seconds=0.01)
    first = reconciler.schedule()
    second = reconciler.schedule()
    third = reconciler.schedule()
    await asyncio.sleep(0)

    assert first is second is third
    assert calls == 1
    release.set()
    await first
    assert reconciler.coalesced == 2

    # once settled, the next notification fetches again
    await reconciler.schedule()
    assert calls == 2


@pytest.mark.asyncio
async def test_relevant_changes_trigger_refresh(gateway, wait_until):
    """Rows involving the user cause a re-fetch; other users' rows do not."""
    calls = []

    async def refresh():
        calls.append(1)

    reconciler = ChangeReconciler("u1", gateway, refresh, retry_seconds=0.01)
    reconciler.start()
    try:
        await wait_until(lambda: gateway.calls["subscribe"] == 2 and reconciler.refreshes >= 1)
        await asyncio.sleep(0.05)
        settled = reconciler.refreshes

        await gateway.insert_one(CONVERSATIONS, {"pair_key": "u3|u4", "participants": ["u3", "u4"]})
        await gateway.insert_one(MESSAGES, {"conversation_id": "x", "sender_id": "u3", "receiver_id": "u4"})
        await asyncio.sleep(0.05)
        assert reconciler.refreshes == settled

        await gateway.insert_one(MESSAGES, {"conversation_id": "c1", "sender_id": "u2", "receiver_id": "u1"})
        await wait_until(lambda: reconciler.refreshes > settled)
    finally:
        await reconciler.stop()
    assert not reconciler.running


@pytest.mark.asyncio
async def test_reconnect_forces_full_refetch(gateway, wait_until):
    """After the change stream drops, the reconciler resubscribes and re-fetches."""

    async def refresh():
        return None

    reconciler = ChangeReconciler("u1", gateway, refresh, retry_seconds=0.01)
    reconciler.start()
    try:
        await wait_until(lambda: gateway.calls["subscribe"] == 2 and reconciler.refreshes >= 1)
        await asyncio.sleep(0.05)
        before = reconciler.refreshes

        gateway.fail_next("subscribe")
        gateway.drop_subscriptions()

        await wait_until(lambda: gateway.calls["subscribe"] >= 5)
        await wait_until(lambda: reconciler.refreshes > before)
    finally:
        await reconciler.stop()


@pytest.mark.asyncio
async def test_refresh_failures_do_not_stop_tracking(gateway, wait_until):
    """A failing re-fetch is logged and the next change fetches again."""
    attempts = []

    async def refresh():
        attempts.append(1)
        if len(attempts) == 1:
            raise StoreUnavailable("store is down")

    reconciler = ChangeReconciler("u1", gateway, refresh, retry_seconds=0.01)
    await reconciler.schedule()
    assert len(attempts) == 1

    await reconciler.schedule()
    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_unexpected_refresh_error_is_logged_not_raised(gateway):
    """A refresh that blows up with a non-store error does not break later ones."""
    calls = []

    async def refresh():
        calls.append(1)
        if len(calls) == 1:
            raise ValueError("malformed row")

    reconciler = ChangeReconciler("u1", gateway, refresh, retry_seconds=0.01)

    await reconciler.schedule()
    await reconciler.schedule()

    assert len(calls) == 2
    assert reconciler.refreshes == 2
