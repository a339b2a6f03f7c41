"""
Unit tests for the post-response flush pipeline
(backend/metering/billing/pipeline.py).
"""

import sys
import os
import asyncio
import unittest
from unittest.mock import AsyncMock, MagicMock, patch

import orjson
from sqlalchemy.exc import OperationalError

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'backend'))

from tests.factories import FakeResult, ScriptedSession, make_entry  # noqa: E402
from metering.billing import pipeline  # noqa: E402
from metering.billing.accumulator import UsageAccumulator  # noqa: E402
from metering.billing.exceptions import LedgerPersistenceError, LedgerValidationError  # noqa: E402
from metering.billing.fields import UsageDelta  # noqa: E402
from metering.billing.models import SubscriptionTier  # noqa: E402
from metering.config import Settings  # noqa: E402

DELTAS = [UsageDelta("database_operations", 3.0)]


class TestResolveTier(unittest.IsolatedAsyncioTestCase):

    async def test_owner_is_premium_without_lookup(self):
        db = ScriptedSession()
        with patch.object(pipeline, "get_settings", return_value=Settings(_env_file=None, PLATFORM_OWNER_ORG_ID="owner")):
            tier = await pipeline.resolve_tier(db, "owner")
        self.assertEqual(tier, SubscriptionTier.PREMIUM)
        self.assertEqual(db.statements, [])

    async def test_subscription_tier_used(self):
        db = ScriptedSession(FakeResult(scalar=SubscriptionTier.PREMIUM))
        self.assertEqual(await pipeline.resolve_tier(db, "org-1"), SubscriptionTier.PREMIUM)

    async def test_no_subscription_is_freemium(self):
        db = ScriptedSession(FakeResult())
        self.assertEqual(await pipeline.resolve_tier(db, "org-1"), SubscriptionTier.FREEMIUM)


class TestPersistUsage(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        tier_patch = patch.object(pipeline, "resolve_tier", AsyncMock(return_value=SubscriptionTier.PREMIUM))
        tier_patch.start()
        self.addCleanup(tier_patch.stop)
        self.db = ScriptedSession()

    async def test_commits_once(self):
        entry = make_entry()
        with patch.object(pipeline.ledger, "apply", AsyncMock(return_value=entry)) as apply:
            result = await pipeline.persist_usage("org-1", DELTAS, period="2026-09", session_factory=lambda: self.db)

        self.assertIs(result, entry)
        self.assertEqual(apply.await_args.kwargs["tier"], SubscriptionTier.PREMIUM)
        self.db.commit.assert_awaited_once()
        self.db.rollback.assert_not_awaited()

    async def test_database_error_wrapped_and_rolled_back(self):
        error = OperationalError("UPDATE ledger_lines", {}, Exception("connection reset"))
        with patch.object(pipeline.ledger, "apply", AsyncMock(side_effect=error)):
            with self.assertRaises(LedgerPersistenceError):
                await pipeline.persist_usage("org-1", DELTAS, session_factory=lambda: self.db)

        self.db.rollback.assert_awaited_once()
        self.db.commit.assert_not_awaited()

    async def test_unreachable_database_wrapped_and_rolled_back(self):
        with patch.object(pipeline.ledger, "apply", AsyncMock(side_effect=ConnectionRefusedError(111, "Connection refused"))):
            with self.assertRaises(LedgerPersistenceError):
                await pipeline.persist_usage("org-1", DELTAS, session_factory=lambda: self.db)

        self.db.rollback.assert_awaited_once()
        self.db.commit.assert_not_awaited()

    async def test_billing_error_propagates_unchanged(self):
        with patch.object(pipeline.ledger, "apply", AsyncMock(side_effect=LedgerValidationError("bad"))):
            with self.assertRaises(LedgerValidationError):
                await pipeline.persist_usage("org-1", DELTAS, session_factory=lambda: self.db)
        self.db.rollback.assert_awaited_once()


class TestRecordUsage(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        settings_patch = patch.object(
            pipeline, "get_settings", return_value=Settings(_env_file=None, LEDGER_WRITE_RETRIES=3),
        )
        settings_patch.start()
        self.addCleanup(settings_patch.stop)

    async def test_success_on_retry(self):
        entry = make_entry()
        persist = AsyncMock(side_effect=[LedgerPersistenceError("blip"), entry])
        with patch.object(pipeline, "persist_usage", persist), \
                patch.object(pipeline, "dead_letter", AsyncMock()) as dead_letter:
            result = await pipeline.record_usage("org-1", DELTAS, period="2026-09")

        self.assertIs(result, entry)
        self.assertEqual(persist.await_count, 2)
        dead_letter.assert_not_awaited()

    async def test_dead_letters_after_retries(self):
        persist = AsyncMock(side_effect=LedgerPersistenceError("db down"))
        with patch.object(pipeline, "persist_usage", persist), \
                patch.object(pipeline, "dead_letter", AsyncMock(return_value=True)) as dead_letter:
            result = await pipeline.record_usage("org-1", DELTAS, period="2026-09")

        self.assertIsNone(result)
        self.assertEqual(persist.await_count, 3)
        dead_letter.assert_awaited_once()
        self.assertEqual(dead_letter.await_args.args[:3], ("org-1", "2026-09", DELTAS))

    async def test_unreachable_database_is_retried_then_dead_lettered(self):
        sessions = []

        def refused_session():
            sessions.append(ScriptedSession(ConnectionRefusedError(111, "Connection refused")))
            return sessions[-1]

        with patch.object(pipeline, "dead_letter", AsyncMock(return_value=True)) as dead_letter:
            result = await pipeline.record_usage("org-1", DELTAS, period="2026-09", session_factory=refused_session)

        self.assertIsNone(result)
        self.assertEqual(len(sessions), 3)
        dead_letter.assert_awaited_once()
        self.assertEqual(dead_letter.await_args.args[:3], ("org-1", "2026-09", DELTAS))

    async def test_validation_error_not_retried(self):
        persist = AsyncMock(side_effect=LedgerValidationError("bad"))
        with patch.object(pipeline, "persist_usage", persist), \
                patch.object(pipeline, "dead_letter", AsyncMock()) as dead_letter:
            with self.assertRaises(LedgerValidationError):
                await pipeline.record_usage("org-1", DELTAS, period="2026-09")
        self.assertEqual(persist.await_count, 1)
        dead_letter.assert_not_awaited()


class TestDeadLetters(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.redis = MagicMock()
        self.redis.rpush = AsyncMock()
        self.redis.lpush = AsyncMock()
        self.redis.lpop = AsyncMock()
        redis_patch = patch.object(pipeline, "get_redis", return_value=self.redis)
        redis_patch.start()
        self.addCleanup(redis_patch.stop)

    async def test_dead_letter_pushes_json(self):
        self.assertTrue(await pipeline.dead_letter("org-1", "2026-09", DELTAS, "db down"))

        key, raw = self.redis.rpush.await_args.args
        self.assertEqual(key, "billing:dead_letter")
        item = orjson.loads(raw)
        self.assertEqual(item["organization_id"], "org-1")
        self.assertEqual(item["deltas"], [{"field": "database_operations", "value": 3.0}])

    async def test_replay_applies_until_empty(self):
        raw = pipeline._serialize("org-1", "2026-09", DELTAS, "db down")
        self.redis.lpop.side_effect = [raw, raw, None]
        with patch.object(pipeline, "persist_usage", AsyncMock()) as persist:
            replayed = await pipeline.replay_dead_letters(batch=10)

        self.assertEqual(replayed, 2)
        self.assertEqual(persist.await_args.args, ("org-1", DELTAS))
        self.assertEqual(persist.await_args.kwargs["period"], "2026-09")

    async def test_replay_failure_requeues_at_head(self):
        raw = pipeline._serialize("org-1", "2026-09", DELTAS, "db down")
        self.redis.lpop.side_effect = [raw]
        with patch.object(pipeline, "persist_usage", AsyncMock(side_effect=LedgerPersistenceError("still down"))):
            replayed = await pipeline.replay_dead_letters(batch=10)

        self.assertEqual(replayed, 0)
        self.redis.lpush.assert_awaited_once_with("billing:dead_letter", raw)


class TestBillingFlusher(unittest.IsolatedAsyncioTestCase):

    async def test_double_schedule_applies_once(self):
        sink = AsyncMock()
        flusher = pipeline.BillingFlusher(sink=sink)
        usage = UsageAccumulator("org-1")
        usage.add("bandwidth", 1)

        first = flusher.schedule(usage)
        await first
        second = flusher.schedule(usage)

        self.assertIsNone(second)
        sink.assert_awaited_once()

    async def test_concurrent_schedules_apply_once(self):
        sink = AsyncMock()
        flusher = pipeline.BillingFlusher(sink=sink)
        usage = UsageAccumulator("org-1")
        usage.add("bandwidth", 1)

        flusher.schedule(usage)
        flusher.schedule(usage)
        await flusher.drain(timeout=1)

        sink.assert_awaited_once()
        self.assertEqual(flusher.pending, 0)

    async def test_sink_failure_is_logged_not_raised(self):
        flusher = pipeline.BillingFlusher(sink=AsyncMock(side_effect=LedgerPersistenceError("db down")))
        usage = UsageAccumulator("org-1")
        usage.add("bandwidth", 1)

        await flusher.schedule(usage)
        self.assertTrue(usage.flushed)

    async def test_drain_waits_for_slow_flush(self):
        done = []

        async def slow_sink(organization_id, deltas):
            await asyncio.sleep(0.01)
            done.append(organization_id)

        flusher = pipeline.BillingFlusher(sink=slow_sink)
        usage = UsageAccumulator("org-1")
        usage.add("bandwidth", 1)
        flusher.schedule(usage)

        await flusher.drain(timeout=1)
        self.assertEqual(done, ["org-1"])


if __name__ == '__main__':
    unittest.main()
