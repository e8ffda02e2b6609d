"""
Billing Kernel - recurring billing and quota orchestration

Runs the per-contract billing phases against an external system of record:
- Schedule resolution with a stable billing anchor
- Idempotent fulfillment records and invoices keyed by occurrence
- Quota (hours or amount) ledger with threshold alerts
- Forecast -> ready promotion inside a lookahead window
"""

__version__ = "0.1.0"
