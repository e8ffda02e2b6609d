"""
Typed Exception Hierarchy for the Billing Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Billing runs unattended against an external record store that rate-limits,
times out and occasionally returns half-written data.  Callers must decide
per failure whether to retry, skip a line item, dead-letter a contract or
simply report.  That decision is made by exception TYPE, never by parsing
messages:

    try:
        orchestrator.run_for_contract_id(contract_id)
    except ContractNotFoundError as e:
        dead_letter(e.record_id, e.code)
    except TransientStoreError as e:
        # retries already exhausted by with_retry()
        dead_letter(contract_id, e.code)

Every exception carries a ``code`` class attribute (machine-readable) and
stores its context as attributes so the structured log formatter can emit
them as ``exc_<name>`` fields.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from BillingError:

    BillingError (base)
    |
    +-- StoreError
    |   +-- TransientStoreError
    |   +-- RecordNotFoundError
    |       +-- ContractNotFoundError
    |
    +-- BillingValidationError
    |   +-- MissingLineItemKeyError
    |   +-- KeyComponentError
    |
    +-- IntegrityError
    |   +-- QuotaInconsistentError
    |   +-- StageRegressionError
    |
    +-- QuotaError
    |   +-- QuotaLedgerWriteError
    |
    +-- SweepError
        +-- SweepAlreadyRunningError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category     | Code                      | When Raised
-------------|---------------------------|--------------------------------------
Store        | TRANSIENT_STORE_ERROR     | 429 / 5xx / timeout from the store
             | RECORD_NOT_FOUND          | Record id does not exist
             | CONTRACT_NOT_FOUND        | Contract id does not exist (fatal)
-------------|---------------------------|--------------------------------------
Validation   | MISSING_LINE_ITEM_KEY     | Line item has no stable key
             | KEY_COMPONENT_INVALID     | Key component empty or has separator
-------------|---------------------------|--------------------------------------
Integrity    | QUOTA_INCONSISTENT        | consumed + remaining != total
             | STAGE_REGRESSION          | Stage would move backwards
-------------|---------------------------|--------------------------------------
Quota        | QUOTA_LEDGER_WRITE_FAILED | Contract quota update failed
-------------|---------------------------|--------------------------------------
Sweep        | SWEEP_ALREADY_RUNNING     | Lock file held and not stale

===============================================================================
HANDLING PATTERNS
===============================================================================

1. TRANSIENT vs EVERYTHING ELSE:
   Only ``TransientStoreError`` (or an error carrying an HTTP-like status of
   429 / 5xx) is retried by ``billing_kernel.utils.retry.with_retry``.
   Validation and integrity errors are never retried.

2. LINE-ITEM SCOPE:
   ``BillingValidationError`` and ``QuotaLedgerWriteError`` abort the
   current line item only.  The orchestrator records them in
   ``per_line_item_errors`` and moves on to siblings.

3. INTEGRITY IS REPORTED, NOT REPAIRED:
   ``QuotaInconsistentError`` is surfaced as a status label and an error
   entry.  Nothing in the kernel rewrites the offending numbers.

===============================================================================
"""


class BillingError(Exception):
    """
    Base exception for all billing kernel errors.

    All subclasses must have a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "BILLING_ERROR"


# Store errors


class StoreError(BillingError):
    """Base exception for record store failures."""

    code: str = "STORE_ERROR"


class TransientStoreError(StoreError):
    """Retryable store failure (rate limit, 5xx, timeout)."""

    code: str = "TRANSIENT_STORE_ERROR"

    def __init__(self, operation: str, status: int | None = None, detail: str = ""):
        self.operation = operation
        self.status = status
        self.detail = detail
        super().__init__(
            f"Transient store failure in {operation}"
            + (f" (status {status})" if status is not None else "")
            + (f": {detail}" if detail else "")
        )


class RecordNotFoundError(StoreError):
    """Record with given id was not found in the store."""

    code: str = "RECORD_NOT_FOUND"

    def __init__(self, object_type: str, record_id: str):
        self.object_type = object_type
        self.record_id = record_id
        super().__init__(f"{object_type} not found: {record_id}")


class ContractNotFoundError(RecordNotFoundError):
    """Contract could not be fetched. Fatal for that contract only."""

    code: str = "CONTRACT_NOT_FOUND"

    def __init__(self, record_id: str):
        super().__init__("contract", record_id)


# Validation errors


class BillingValidationError(BillingError):
    """Base exception for line-item validation failures."""

    code: str = "BILLING_VALIDATION_ERROR"


class MissingLineItemKeyError(BillingValidationError):
    """Line item has no stable line-item key and none could be assigned."""

    code: str = "MISSING_LINE_ITEM_KEY"

    def __init__(self, line_item_id: str):
        self.line_item_id = line_item_id
        super().__init__(f"Line item {line_item_id} has no line-item key")


class KeyComponentError(BillingValidationError):
    """Idempotency key component is empty or contains the separator."""

    code: str = "KEY_COMPONENT_INVALID"

    def __init__(self, component: str, value: str):
        self.component = component
        self.value = value
        super().__init__(f"Invalid key component {component}={value!r}")


# Integrity errors


class IntegrityError(BillingError):
    """Base exception for data that violates a stored invariant."""

    code: str = "INTEGRITY_ERROR"


class QuotaInconsistentError(IntegrityError):
    """consumed + remaining does not equal total on the contract."""

    code: str = "QUOTA_INCONSISTENT"

    def __init__(self, contract_id: str, total, consumed, remaining):
        self.contract_id = contract_id
        self.total = total
        self.consumed = consumed
        self.remaining = remaining
        super().__init__(
            f"Quota inconsistent on contract {contract_id}: "
            f"consumed {consumed} + remaining {remaining} != total {total}"
        )


class StageRegressionError(IntegrityError):
    """A stage transition would move a record backwards."""

    code: str = "STAGE_REGRESSION"

    def __init__(self, record_id: str, current_stage: str, target_stage: str):
        self.record_id = record_id
        self.current_stage = current_stage
        self.target_stage = target_stage
        super().__init__(
            f"Refusing to move {record_id} from {current_stage} to {target_stage}"
        )


# Quota errors


class QuotaError(BillingError):
    """Base exception for quota ledger failures."""

    code: str = "QUOTA_ERROR"


class QuotaLedgerWriteError(QuotaError):
    """The atomic contract quota update failed."""

    code: str = "QUOTA_LEDGER_WRITE_FAILED"

    def __init__(self, contract_id: str, invoice_id: str, detail: str = ""):
        self.contract_id = contract_id
        self.invoice_id = invoice_id
        self.detail = detail
        super().__init__(
            f"Quota ledger write failed for contract {contract_id} "
            f"(invoice {invoice_id})" + (f": {detail}" if detail else "")
        )


# Sweep errors


class SweepError(BillingError):
    """Base exception for batch sweep failures."""

    code: str = "SWEEP_ERROR"


class SweepAlreadyRunningError(SweepError):
    """Another sweep holds a fresh lock."""

    code: str = "SWEEP_ALREADY_RUNNING"

    def __init__(self, lock_path: str, age_seconds: float):
        self.lock_path = lock_path
        self.age_seconds = age_seconds
        super().__init__(
            f"Sweep lock {lock_path} is held (age {age_seconds:.0f}s)"
        )
