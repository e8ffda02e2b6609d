"""
billing_batch -- Scheduled sweep over the contract base.

Selects contracts (targeted on weekdays, full scan on weekends), runs the
billing phases for each one and its mirror, and records every run, cursor
and dead-lettered contract in a SQL ledger.  A file lock keeps a single
sweep running at a time.

Architecture:
    billing_batch/ is a top-level package.  Nothing in billing_kernel/
    imports from billing_batch.
"""
