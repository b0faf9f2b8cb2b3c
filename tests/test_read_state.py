"""Tests for unread counters staying equal to their derivation."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from estate_messaging.services.read_state import derive_unread
from estate_messaging.schemas.messaging import Message


def _message(i: int, sender: str, at: datetime) -> Message:
    return Message(id=f"m{i}", conversation_id="c1", sender_id=sender, content=str(i), created_at=at)


def test_derive_unread_counts_other_senders_after_mark():
    base = datetime(2024, 5, 1, tzinfo=timezone.utc)
    messages = [
        _message(0, "u1", base),
        _message(1, "u2", base + timedelta(seconds=1)),
        _message(2, "u1", base + timedelta(seconds=2)),
        _message(3, "u1", base + timedelta(seconds=3)),
    ]

    assert derive_unread(messages, "u2", None) == 3
    assert derive_unread(messages, "u2", base + timedelta(seconds=2)) == 1
    assert derive_unread(messages, "u1", base) == 1
    assert derive_unread(messages, "u1", base + timedelta(seconds=1)) == 0


@pytest.mark.asyncio
async def test_counters_match_derivation_through_a_conversation(make_service, u1, u2):
    """After sends and reads on both sides the stored counters are derivable."""
    alice, bob = make_service(u1), make_service(u2)
    convo = await alice.start(u2.id, subject="Viewing", initial_message="Hello")
    await alice.send(convo.id, "Are you free Saturday?")

    await bob.load()
    await bob.open_conversation(bob.snapshot.conversations[0])
    await bob.send(convo.id, "Yes, 10am works")
    await alice.send(convo.id, "Great")
    await alice.send(convo.id, "See you then")

    tracker = alice.tracker
    assert await tracker.stored(convo.id, u2.id) == 2
    assert await tracker.stored(convo.id, u1.id) == 1
    for user in (u1.id, u2.id):
        assert await tracker.verify(convo.id, user)

    messages = await alice.messages.list_for_conversation(convo.id)
    doc = await alice.conversations.get_document(convo.id)
    assert derive_unread(messages, u2.id, doc["last_read_at"].get(u2.id)) == 2


@pytest.mark.asyncio
async def test_reset_does_not_lose_concurrent_increments(make_service, u1, u2):
    """Reads racing with new messages leave the counter consistent."""
    alice, bob = make_service(u1), make_service(u2)
    convo = await alice.start(u2.id, initial_message="first")

    await asyncio.gather(
        alice.send(convo.id, "second"),
        bob.messages.mark_read(convo.id, u2.id),
        alice.send(convo.id, "third"),
        bob.messages.mark_read(convo.id, u2.id),
    )

    stored = await bob.tracker.stored(convo.id, u2.id)
    assert stored == await bob.tracker.recompute(convo.id, u2.id)
    assert stored >= 0
