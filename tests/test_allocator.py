"""
Unit tests for retroactive allocation (backend/metering/billing/allocator.py).
"""

import sys
import os
import unittest
from datetime import date
from unittest.mock import AsyncMock, patch

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'backend'))

from tests.factories import FakeResult, ScriptedSession, make_aggregate, make_entry  # noqa: E402
from metering.billing import allocator  # noqa: E402
from metering.billing.exceptions import AggregateMissingError  # noqa: E402
from metering.billing.fields import MeteredField  # noqa: E402
from metering.billing.models import BillingStatus  # noqa: E402
from metering.config import Settings  # noqa: E402

F = MeteredField


def _settings(**costs):
    platform = {field.value: 0.0 for field in MeteredField}
    platform.update(costs)
    return Settings(_env_file=None, PLATFORM_OWNER_ORG_ID="owner", PLATFORM_COSTS=platform)


class TestComputeAllocation(unittest.TestCase):

    def test_share_of_platform_cost(self):
        allocation = allocator.compute_allocation(
            values={F.DATABASE_OPERATIONS: 250.0},
            current_costs={F.DATABASE_OPERATIONS: 0.5},
            aggregate_totals={F.DATABASE_OPERATIONS: 1000.0},
            platform_costs={F.DATABASE_OPERATIONS: 40.0},
            base_cost=0.0,
            entry_count=4,
        )
        self.assertAlmostEqual(allocation.costs[F.DATABASE_OPERATIONS], 10.0)
        self.assertAlmostEqual(allocation.total_cost, 10.0)

    def test_base_cost_split_evenly(self):
        allocation = allocator.compute_allocation(
            values={}, current_costs={}, aggregate_totals={},
            platform_costs={}, base_cost=30.0, entry_count=3,
        )
        self.assertAlmostEqual(allocation.costs[F.BASE_SERVICE_COST], 10.0)

    def test_zero_aggregate_costs_nothing(self):
        allocation = allocator.compute_allocation(
            values={F.BANDWIDTH: 0.0},
            current_costs={F.BANDWIDTH: 3.0},
            aggregate_totals={F.BANDWIDTH: 0.0},
            platform_costs={F.BANDWIDTH: 100.0},
            base_cost=0.0,
            entry_count=1,
        )
        self.assertEqual(allocation.costs[F.BANDWIDTH], 0.0)

    def test_field_missing_from_aggregate_keeps_cost(self):
        allocation = allocator.compute_allocation(
            values={F.BANDWIDTH: 2.0},
            current_costs={F.BANDWIDTH: 1.25},
            aggregate_totals={},
            platform_costs={F.BANDWIDTH: 100.0},
            base_cost=0.0,
            entry_count=1,
        )
        self.assertEqual(allocation.costs[F.BANDWIDTH], 1.25)

    def test_features_added_to_total(self):
        allocation = allocator.compute_allocation(
            values={}, current_costs={}, aggregate_totals={},
            platform_costs={}, base_cost=10.0, entry_count=1, features_cost=5.0,
        )
        self.assertAlmostEqual(allocation.total_cost, 15.0)

    def test_no_entries_means_no_base_share(self):
        allocation = allocator.compute_allocation(
            values={}, current_costs={}, aggregate_totals={},
            platform_costs={}, base_cost=10.0, entry_count=0,
        )
        self.assertEqual(allocation.costs[F.BASE_SERVICE_COST], 0.0)


class TestAllocate(unittest.IsolatedAsyncioTestCase):

    async def test_missing_aggregate_raises(self):
        with patch.object(allocator, "get_aggregate", AsyncMock(return_value=None)):
            with self.assertRaises(AggregateMissingError) as ctx:
                await allocator.allocate(ScriptedSession(), "2026-09", settings=_settings())
        self.assertEqual(ctx.exception.status_code, 503)

    async def test_entries_billed_with_their_share(self):
        settings = _settings(database_operations=40.0, base_service_cost=20.0)
        org = make_entry(
            "org-1", values={F.DATABASE_OPERATIONS: 250.0},
            features=[{"name": "export", "price": 2.0}],
        )
        owner = make_entry(
            "owner", values={F.DATABASE_OPERATIONS: 750.0},
            features=[{"name": "export", "price": 9.0}],
        )
        aggregate = make_aggregate(totals={F.DATABASE_OPERATIONS: 1000.0}, entry_count=2)
        db = ScriptedSession(FakeResult(items=[org, owner]))

        with patch.object(allocator, "get_aggregate", AsyncMock(return_value=aggregate)):
            billed = await allocator.allocate(db, "2026-09", settings=settings)

        self.assertEqual(billed, [org, owner])
        self.assertIn("FOR UPDATE SKIP LOCKED", db.sql(0))
        # org: 10 usage + 10 base + 2 features
        self.assertAlmostEqual(org.total_cost, 22.0)
        # owner never pays for features
        self.assertAlmostEqual(owner.total_cost, 40.0)
        for entry in billed:
            self.assertEqual(entry.billing_status, BillingStatus.BILLED)

    async def test_one_update_per_line_and_entry(self):
        entry = make_entry("org-1")
        aggregate = make_aggregate(totals={}, entry_count=1)
        db = ScriptedSession(FakeResult(items=[entry]))

        with patch.object(allocator, "get_aggregate", AsyncMock(return_value=aggregate)):
            await allocator.allocate(db, "2026-09", settings=_settings())

        # select + one update per line + the entry update
        self.assertEqual(len(db.statements), 1 + len(MeteredField) + 1)
        self.assertTrue(db.sql(-1).startswith("UPDATE billing_ledger_entries"))

    async def test_nothing_unbilled(self):
        db = ScriptedSession(FakeResult(items=[]))
        with patch.object(allocator, "get_aggregate", AsyncMock(return_value=make_aggregate())):
            billed = await allocator.allocate(db, "2026-09", settings=_settings())
        self.assertEqual(billed, [])
        self.assertEqual(len(db.statements), 1)


class TestBillingCycle(unittest.IsolatedAsyncioTestCase):

    async def test_builds_aggregate_before_allocating(self):
        calls = []
        build = AsyncMock(side_effect=lambda db, period: calls.append(("build", period)))
        allocate = AsyncMock(side_effect=lambda db, period, settings=None: calls.append(("allocate", period)) or [object()])

        with patch.object(allocator, "due_periods", AsyncMock(return_value=["2026-08", "2026-09"])), \
                patch.object(allocator, "build_aggregate", build), \
                patch.object(allocator, "allocate", allocate):
            summary = await allocator.run_billing_cycle(ScriptedSession(), today=date(2026, 10, 5), settings=_settings())

        self.assertEqual(summary, {"2026-08": 1, "2026-09": 1})
        self.assertEqual(
            calls,
            [("build", "2026-08"), ("allocate", "2026-08"), ("build", "2026-09"), ("allocate", "2026-09")],
        )

    async def test_due_periods_reads_rows(self):
        db = ScriptedSession(FakeResult(rows=[("2026-08",), ("2026-09",)]))
        periods = await allocator.due_periods(db, date(2026, 10, 5))
        self.assertEqual(periods, ["2026-08", "2026-09"])
        self.assertIn("billing_date <=", db.sql(0))


if __name__ == '__main__':
    unittest.main()
