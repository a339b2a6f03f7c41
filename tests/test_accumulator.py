"""
Unit tests for the request-scoped usage accumulator
(backend/metering/billing/accumulator.py).
"""

import sys
import os
import unittest
from unittest.mock import AsyncMock

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'backend'))

from metering.billing.accumulator import UsageAccumulator  # noqa: E402
from metering.billing.fields import MeteredField, UsageDelta  # noqa: E402


class TestRecord(unittest.TestCase):

    def test_record_appends_in_order(self):
        usage = UsageAccumulator("org-1")
        usage.record([{"field": MeteredField.DATABASE_OPERATIONS, "value": 3}])
        usage.record([
            {"field": MeteredField.DATABASE_DATA_TRANSFER, "value": 0.25},
            UsageDelta("bandwidth", 1.0),
        ])
        self.assertEqual(
            usage.deltas,
            [
                UsageDelta("database_operations", 3.0),
                UsageDelta("database_data_transfer", 0.25),
                UsageDelta("bandwidth", 1.0),
            ],
        )

    def test_record_does_not_validate_field_names(self):
        usage = UsageAccumulator("org-1")
        usage.record([{"field": "not_a_field", "value": 1}])
        self.assertEqual(len(usage), 1)

    def test_add_single_delta(self):
        usage = UsageAccumulator("org-1")
        usage.add(MeteredField.COMPUTE_SECONDS, 1.5)
        self.assertEqual(usage.deltas, [UsageDelta("compute_seconds", 1.5)])

    def test_deltas_is_a_copy(self):
        usage = UsageAccumulator("org-1")
        usage.add("bandwidth", 1)
        usage.deltas.clear()
        self.assertEqual(len(usage), 1)


class TestFlush(unittest.IsolatedAsyncioTestCase):

    async def test_flush_hands_deltas_to_sink(self):
        usage = UsageAccumulator("org-1")
        usage.add("database_operations", 3)
        sink = AsyncMock()

        flushed = await usage.flush(sink)

        self.assertTrue(flushed)
        sink.assert_awaited_once_with("org-1", [UsageDelta("database_operations", 3.0)])

    async def test_second_flush_is_a_no_op(self):
        usage = UsageAccumulator("org-1")
        usage.add("database_operations", 3)
        sink = AsyncMock()

        await usage.flush(sink)
        flushed_again = await usage.flush(sink)

        self.assertFalse(flushed_again)
        self.assertEqual(sink.await_count, 1)

    async def test_claim_is_one_shot(self):
        usage = UsageAccumulator("org-1")
        usage.add("bandwidth", 2)
        self.assertEqual(usage.claim(), [UsageDelta("bandwidth", 2.0)])
        self.assertIsNone(usage.claim())
        self.assertTrue(usage.flushed)

    async def test_empty_accumulator_skips_sink(self):
        usage = UsageAccumulator("org-1")
        sink = AsyncMock()
        self.assertTrue(await usage.flush(sink))
        sink.assert_not_awaited()

    async def test_no_organization_skips_sink(self):
        usage = UsageAccumulator(None)
        usage.add("bandwidth", 2)
        sink = AsyncMock()
        await usage.flush(sink)
        sink.assert_not_awaited()

    async def test_sink_error_propagates_and_latch_holds(self):
        usage = UsageAccumulator("org-1")
        usage.add("bandwidth", 2)
        sink = AsyncMock(side_effect=RuntimeError("db down"))

        with self.assertRaises(RuntimeError):
            await usage.flush(sink)
        self.assertFalse(await usage.flush(sink))
        self.assertEqual(sink.await_count, 1)


if __name__ == '__main__':
    unittest.main()
