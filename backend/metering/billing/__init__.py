"""
Usage Metering & Billing Ledger Module

Request handlers record usage on a per-request accumulator; the usage
middleware flushes it after the response into the organisation's monthly
ledger entry, and the platform owner's self-billing entry is charged for
the write in the same transaction.

Architecture:
    - billing.fields: Metered field vocabulary and size measurement
    - billing.accumulator: Request-scoped usage deltas
    - billing.ledger: Ledger entries, rollover, atomic increments
    - billing.self_billing: Metering overhead charged to the platform owner
    - billing.aggregate: Platform-wide usage totals per period
    - billing.allocator: Retroactive proportional cost allocation
    - billing.gate: Subscription gate run before metered functionality
    - billing.pipeline: Post-response flush, retries, dead-letter replay
    - billing.middleware: Request-level usage tracking (injected conditionally)
    - billing.api: REST endpoints for ledger and subscription management
"""
