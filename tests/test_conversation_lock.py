"""Tests for the ConversationLock lease: acquire, busy, stale recovery, release."""

from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from mca_platform.domain.enums import LockOutcome
from mca_platform.domain.errors import ConversationNotFound
from mca_platform.domain.models import Message, utcnow
from mca_platform.services.conversation_lock import ConversationLock


@pytest.fixture
def lock(db_session):
    return ConversationLock(db_session, stale_after=timedelta(minutes=2))


class TestAcquire:

    async def test_free_lock_is_acquired(self, lock, make_conversation):
        conv = await make_conversation()

        outcome = await lock.try_acquire(conv.id)

        assert outcome is LockOutcome.ACQUIRED
        assert outcome.acquired
        assert await lock.is_held(conv.id)

    async def test_second_acquire_is_busy(self, lock, make_conversation):
        conv = await make_conversation()

        first = await lock.try_acquire(conv.id)
        second = await lock.try_acquire(conv.id)

        assert first is LockOutcome.ACQUIRED
        assert second is LockOutcome.BUSY
        assert not second.acquired

    async def test_fresh_held_lock_is_busy(self, lock, make_conversation):
        conv = await make_conversation(processing_lock=True, last_activity=utcnow() - timedelta(seconds=30))

        assert await lock.try_acquire(conv.id) is LockOutcome.BUSY

    async def test_unknown_conversation_raises(self, lock):
        with pytest.raises(ConversationNotFound):
            await lock.try_acquire("does-not-exist")


class TestStaleRecovery:

    async def test_stale_lock_is_force_reclaimed(self, lock, make_conversation):
        conv = await make_conversation(processing_lock=True, last_activity=utcnow() - timedelta(minutes=5))

        outcome = await lock.try_acquire(conv.id)

        assert outcome is LockOutcome.RECOVERED
        assert outcome.acquired
        assert await lock.is_held(conv.id)

    async def test_reclaim_refreshes_lease(self, lock, make_conversation):
        conv = await make_conversation(processing_lock=True, last_activity=utcnow() - timedelta(minutes=5))

        await lock.try_acquire(conv.id)

        # The reclaimed lease is fresh, so a third caller is turned away
        assert await lock.try_acquire(conv.id) is LockOutcome.BUSY

    async def test_threshold_is_configurable(self, db_session, make_conversation):
        conv = await make_conversation(processing_lock=True, last_activity=utcnow() - timedelta(seconds=30))
        lock = ConversationLock(db_session, stale_after=timedelta(seconds=10))

        assert await lock.try_acquire(conv.id) is LockOutcome.RECOVERED


class TestRelease:

    async def test_release_clears_lock(self, lock, make_conversation):
        conv = await make_conversation()
        await lock.try_acquire(conv.id)

        await lock.release(conv.id)

        assert not await lock.is_held(conv.id)
        assert await lock.try_acquire(conv.id) is LockOutcome.ACQUIRED

    async def test_release_is_unconditional(self, lock, make_conversation):
        conv = await make_conversation(processing_lock=True)

        await lock.release(conv.id)

        assert not await lock.is_held(conv.id)

    async def test_release_recovers_failed_transaction(self, lock, db_session, make_conversation, make_message):
        conv = await make_conversation()
        conversation_id = conv.id
        await lock.try_acquire(conversation_id)
        first = await make_message(conversation_id, "inbound", "yes")
        first.provider_ref = "SM-dup"
        await db_session.commit()

        # The holder's session is left mid-transaction after a failed write
        db_session.add(Message(conversation_id=conversation_id, direction="outbound", content="hi", provider_ref="SM-dup"))
        with pytest.raises(IntegrityError):
            await db_session.flush()

        await lock.release(conversation_id)

        assert not await lock.is_held(conversation_id)
