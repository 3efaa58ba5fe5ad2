"""
Typed Exception Hierarchy for the Agency Billing Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Billing callers (the checklist screens, bulk tooling, the HTTP façade) must
react to failures precisely: a stale edit version means "reload and retry",
a missing record means "refresh the list", a cross-task-type selection is a
programming error in the caller.  Matching on message text is fragile, so:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    BillingKernelError (base)
    |
    +-- ValidationError
    |   +-- EmptySelectionError
    |   +-- CrossScopeSelectionError
    |   +-- AlreadyBilledError
    |   +-- InconsistentBillingError
    |   +-- DebitNoteLockedError
    |   +-- TaskRecordBilledError
    |   +-- UnknownTaskTypeError
    |   +-- InvalidAmountError
    |
    +-- NotFoundError
    |   +-- TaskRecordNotFoundError
    |   +-- DebitNoteNotFoundError
    |   +-- DebitNoteDetailNotFoundError
    |
    +-- ConcurrencyError
    |   +-- OptimisticLockError
    |
    +-- DocumentNumberingError

    InconsistentStateWarning (UserWarning) -- non-fatal, attached to results

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category     | Code                        | When Raised
-------------|-----------------------------|--------------------------------------
Validation   | EMPTY_SELECTION             | No task record ids supplied
             | CROSS_SCOPE_SELECTION       | Record of another job order/task type
             | ALREADY_BILLED              | Record billed on a different note
             | INCONSISTENT_BILLING        | Strict mode: selection spans notes
             | DEBIT_NOTE_LOCKED           | Mutating a locked debit note
             | TASK_RECORD_BILLED          | Deleting/repricing a billed record
             | UNKNOWN_TASK_TYPE           | Unknown or disabled task type
             | INVALID_AMOUNT              | Inconsistent or negative amounts
-------------|-----------------------------|--------------------------------------
Not found    | TASK_RECORD_NOT_FOUND       | One or more record ids missing
             | DEBIT_NOTE_NOT_FOUND        | Note missing or outside scope
             | DEBIT_NOTE_DETAIL_NOT_FOUND | Item number not on the note
-------------|-----------------------------|--------------------------------------
Concurrency  | OPTIMISTIC_LOCK_CONFLICT    | edit_version mismatch
-------------|-----------------------------|--------------------------------------
Numbering    | DOCUMENT_NUMBERING_FAILED   | Numbering collaborator failed

===============================================================================
HANDLING PATTERNS
===============================================================================

    try:
        view = aggregation.generate_or_attach(...)
    except ConcurrencyError:
        # Never retried server-side: the "unbilled" partition may be stale.
        return reload_and_ask_user()
    except NotFoundError as e:
        return {"result": 0, "message": str(e), "code": e.code}
"""


class BillingKernelError(Exception):
    """
    Base exception for all agency billing errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "BILLING_KERNEL_ERROR"


# Validation


class ValidationError(BillingKernelError):
    """Malformed input. Surfaced directly to the caller, never retried."""

    code: str = "VALIDATION_ERROR"


class EmptySelectionError(ValidationError):
    """No task record ids were supplied."""

    code: str = "EMPTY_SELECTION"

    def __init__(self):
        super().__init__("At least one task record id is required")


class CrossScopeSelectionError(ValidationError):
    """A selected record belongs to another job order or task type."""

    code: str = "CROSS_SCOPE_SELECTION"

    def __init__(self, job_order_id: str, task_type: str, offending_ids: list[str]):
        self.job_order_id = job_order_id
        self.task_type = task_type
        self.offending_ids = offending_ids
        super().__init__(
            f"Task records {', '.join(offending_ids)} do not belong to "
            f"job order {job_order_id} / task type {task_type}"
        )


class AlreadyBilledError(ValidationError):
    """A selected record is already billed on a different debit note."""

    code: str = "ALREADY_BILLED"

    def __init__(self, target_debit_note_no: str, billed: dict[str, str]):
        self.target_debit_note_no = target_debit_note_no
        self.billed = billed
        listing = ", ".join(f"{rid} -> {no}" for rid, no in sorted(billed.items()))
        super().__init__(
            f"Cannot bill on {target_debit_note_no}: records already billed "
            f"elsewhere ({listing})"
        )


class InconsistentBillingError(ValidationError):
    """All records are billed, but on different debit notes (strict mode)."""

    code: str = "INCONSISTENT_BILLING"

    def __init__(self, debit_note_nos: list[str]):
        self.debit_note_nos = debit_note_nos
        super().__init__(
            "Selected records are billed on different debit notes: "
            + ", ".join(debit_note_nos)
        )


class DebitNoteLockedError(ValidationError):
    """The debit note is locked and cannot be modified or deleted."""

    code: str = "DEBIT_NOTE_LOCKED"

    def __init__(self, debit_note_no: str):
        self.debit_note_no = debit_note_no
        super().__init__(f"Debit note {debit_note_no} is locked")


class TaskRecordBilledError(ValidationError):
    """The operation is not allowed while the record is billed."""

    code: str = "TASK_RECORD_BILLED"

    def __init__(self, task_record_id: str, debit_note_no: str | None, operation: str):
        self.task_record_id = task_record_id
        self.debit_note_no = debit_note_no
        self.operation = operation
        super().__init__(
            f"Cannot {operation} task record {task_record_id}: "
            f"billed on debit note {debit_note_no}"
        )


class UnknownTaskTypeError(ValidationError):
    """Task type is not registered or is disabled by configuration."""

    code: str = "UNKNOWN_TASK_TYPE"

    def __init__(self, task_type: str):
        self.task_type = task_type
        super().__init__(f"Unknown or disabled task type: {task_type}")


class InvalidAmountError(ValidationError):
    """Amounts are negative or do not add up."""

    code: str = "INVALID_AMOUNT"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {reason}")


# Not found


class NotFoundError(BillingKernelError):
    """Referenced entity does not exist (or is outside the requested scope)."""

    code: str = "NOT_FOUND"


class TaskRecordNotFoundError(NotFoundError):
    """One or more task records were not found."""

    code: str = "TASK_RECORD_NOT_FOUND"

    def __init__(self, missing_ids: list[str]):
        self.missing_ids = missing_ids
        super().__init__(f"Task records not found: {', '.join(missing_ids)}")


class DebitNoteNotFoundError(NotFoundError):
    """Debit note was not found for the given job order and task type."""

    code: str = "DEBIT_NOTE_NOT_FOUND"

    def __init__(self, debit_note_ref: str):
        self.debit_note_ref = debit_note_ref
        super().__init__(f"Debit note not found: {debit_note_ref}")


class DebitNoteDetailNotFoundError(NotFoundError):
    """Item number is not present on the debit note."""

    code: str = "DEBIT_NOTE_DETAIL_NOT_FOUND"

    def __init__(self, debit_note_no: str, item_no: int):
        self.debit_note_no = debit_note_no
        self.item_no = item_no
        super().__init__(f"Debit note {debit_note_no} has no item {item_no}")


# Concurrency


class ConcurrencyError(BillingKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class OptimisticLockError(ConcurrencyError):
    """Optimistic locking conflict detected (edit_version mismatch)."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        expected_version: int | None = None,
        actual_version: int | None = None,
    ):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Optimistic lock conflict on {entity_type} {entity_id}: "
            "entity was modified by another transaction, reload and retry"
        )


# Collaborators


class DocumentNumberingError(BillingKernelError):
    """The document numbering collaborator could not allocate a number."""

    code: str = "DOCUMENT_NUMBERING_FAILED"

    def __init__(self, job_order_id: str, task_type: str, reason: str):
        self.job_order_id = job_order_id
        self.task_type = task_type
        self.reason = reason
        super().__init__(
            f"Could not allocate a debit note number for job order "
            f"{job_order_id} / {task_type}: {reason}"
        )


# Warnings


class InconsistentStateWarning(UserWarning):
    """
    All selected records are billed, but not on the same debit note.

    Non-fatal: legacy data may already contain this anomaly.  The first
    resolved debit note is returned and this warning travels with the result.
    """

    code: str = "INCONSISTENT_STATE"

    def __init__(self, debit_note_nos: list[str], returned_debit_note_no: str):
        self.debit_note_nos = debit_note_nos
        self.returned_debit_note_no = returned_debit_note_no
        super().__init__(
            f"Selected records are billed on {len(debit_note_nos)} debit notes "
            f"({', '.join(debit_note_nos)}); returning {returned_debit_note_no}"
        )
