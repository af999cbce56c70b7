"""
Typed Exception Hierarchy for the Change Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the workflow (an API layer, a batch job, a test) must be able to
react to a failure without parsing its message.  Every error here has:
  1. A TYPED exception class (catch by type, not message)
  2. A CODE attribute (machine-readable, API-safe)
  3. Structured DATA attributes (not just a message string)

Example - RIGHT way:
    try:
        workflow.decide(request_id, approver_id, ApprovalDecision.APPROVE)
    except OutOfTurnDecisionError as e:
        api_response(code=e.code, current_level=e.current_level)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from ChangeKernelError.  The five categories are the
error taxonomy surfaced by the workflow orchestrator:

    ChangeKernelError (base)
    |
    +-- ValidationError                 missing / invalid input
    |   +-- MissingFieldError
    |   +-- InvalidFieldValueError
    |   +-- DisallowedFieldError
    |   +-- DuplicateApproverError
    |   +-- DerivedFieldEditError
    |
    +-- NotFoundError                   unknown identifier
    |   +-- ChangeRequestNotFoundError
    |   +-- ApproverNotFoundError
    |   +-- CostLineItemNotFoundError
    |
    +-- InvalidStateError               operation incompatible with status
    |   +-- InvalidTransitionError
    |   +-- TerminalStateError
    |   +-- RecordLockedError
    |   +-- NotSubmittedError
    |   +-- OutOfTurnDecisionError
    |   +-- AlreadyDecidedError
    |   +-- ApprovalChainIncompleteError
    |   +-- ApproverListLockedError
    |   +-- ImmutabilityViolationError
    |
    +-- ConflictError                   safe-to-retry races
    |   +-- NumberingConflictError
    |   +-- ConcurrentModificationError
    |   +-- PersistenceConflictError
    |
    +-- UnexpectedError                 storage / transport failure
        +-- StorageError
        +-- AuditChainBrokenError

===============================================================================
HANDLING PATTERNS
===============================================================================

1. Only ConflictError from the numbering authority is safe to retry blindly.
   Every other category needs the caller to reconcile with the current
   record first.

2. Every failed workflow operation has already been rolled back when the
   exception reaches the caller; the stored record is the prior state.
"""


class ChangeKernelError(Exception):
    """
    Base exception for all change kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "CHANGE_KERNEL_ERROR"


# Validation


class ValidationError(ChangeKernelError):
    """Base exception for missing or invalid input."""

    code: str = "VALIDATION_ERROR"


class MissingFieldError(ValidationError):
    """A required field was not supplied."""

    code: str = "MISSING_FIELD"

    def __init__(self, field_name: str):
        self.field_name = field_name
        super().__init__(f"Missing required field: {field_name}")


class InvalidFieldValueError(ValidationError):
    """A field was supplied with a value of the wrong type or range."""

    code: str = "INVALID_FIELD_VALUE"

    def __init__(self, field_name: str, value: object, reason: str):
        self.field_name = field_name
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid value for {field_name} ({value!r}): {reason}")


class DisallowedFieldError(ValidationError):
    """A patch named fields that are not on the editable allow-list."""

    code: str = "DISALLOWED_FIELD"

    def __init__(self, field_names: tuple[str, ...]):
        self.field_names = field_names
        super().__init__(
            f"Fields cannot be updated: {', '.join(sorted(field_names))}"
        )


class DuplicateApproverError(ValidationError):
    """The same approver appears more than once in an approval chain."""

    code: str = "DUPLICATE_APPROVER"

    def __init__(self, approver_id: str):
        self.approver_id = approver_id
        super().__init__(f"Approver listed more than once: {approver_id}")


class DerivedFieldEditError(ValidationError):
    """A value that is derived from other data was edited directly."""

    code: str = "DERIVED_FIELD_EDIT"

    def __init__(self, field_name: str, source: str):
        self.field_name = field_name
        self.source = source
        super().__init__(
            f"{field_name} is derived from {source} and cannot be set directly"
        )


# Not found


class NotFoundError(ChangeKernelError):
    """Base exception for unknown identifiers."""

    code: str = "NOT_FOUND"


class ChangeRequestNotFoundError(NotFoundError):
    """Change request with given ID was not found."""

    code: str = "CHANGE_REQUEST_NOT_FOUND"

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Change request not found: {request_id}")


class ApproverNotFoundError(NotFoundError):
    """The approver has no step in the request's current approval round."""

    code: str = "APPROVER_NOT_FOUND"

    def __init__(self, request_id: str, approver_id: str):
        self.request_id = request_id
        self.approver_id = approver_id
        super().__init__(
            f"Approver {approver_id} is not on the approval chain of {request_id}"
        )


class CostLineItemNotFoundError(NotFoundError):
    """Cost line item with given ID was not found on the request."""

    code: str = "COST_LINE_ITEM_NOT_FOUND"

    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Cost line item not found: {item_id}")


# Invalid state


class InvalidStateError(ChangeKernelError):
    """Base exception for operations incompatible with the current status."""

    code: str = "INVALID_STATE"


class InvalidTransitionError(InvalidStateError):
    """Status change not permitted by the transition table."""

    code: str = "INVALID_TRANSITION"

    def __init__(self, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Cannot transition from {from_status} to {to_status}")


class TerminalStateError(InvalidStateError):
    """The request is in a terminal status and cannot take this operation."""

    code: str = "TERMINAL_STATE"

    def __init__(self, request_id: str, status: str):
        self.request_id = request_id
        self.status = status
        super().__init__(f"Change request {request_id} is {status}")


class RecordLockedError(InvalidStateError):
    """Fields of the request can no longer be edited in its status."""

    code: str = "RECORD_LOCKED"

    def __init__(self, request_id: str, status: str):
        self.request_id = request_id
        self.status = status
        super().__init__(
            f"Change request {request_id} cannot be edited while {status}"
        )


class NotSubmittedError(InvalidStateError):
    """A decision was attempted before the request was submitted."""

    code: str = "NOT_SUBMITTED"

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Change request {request_id} has not been submitted")


class OutOfTurnDecisionError(InvalidStateError):
    """The approver's level has not been reached yet."""

    code: str = "OUT_OF_TURN_DECISION"

    def __init__(self, request_id: str, approver_id: str, level: int, current_level: int):
        self.request_id = request_id
        self.approver_id = approver_id
        self.level = level
        self.current_level = current_level
        super().__init__(
            f"Approver {approver_id} is at level {level}; "
            f"request {request_id} is waiting on level {current_level}"
        )


class AlreadyDecidedError(InvalidStateError):
    """The approver's step is no longer pending."""

    code: str = "ALREADY_DECIDED"

    def __init__(self, request_id: str, approver_id: str, step_status: str):
        self.request_id = request_id
        self.approver_id = approver_id
        self.step_status = step_status
        super().__init__(
            f"Approver {approver_id} has no pending step on {request_id} "
            f"(step is {step_status})"
        )


class ApprovalChainIncompleteError(InvalidStateError):
    """Approval was requested while approval steps are still undecided."""

    code: str = "APPROVAL_CHAIN_INCOMPLETE"

    def __init__(self, request_id: str, undecided: int):
        self.request_id = request_id
        self.undecided = undecided
        super().__init__(
            f"Change request {request_id} has {undecided} undecided approval step(s)"
        )


class ApproverListLockedError(InvalidStateError):
    """The approver list can only be changed while the request is a draft."""

    code: str = "APPROVER_LIST_LOCKED"

    def __init__(self, request_id: str, status: str):
        self.request_id = request_id
        self.status = status
        super().__init__(
            f"Approvers of {request_id} cannot be changed while {status}"
        )


class ImmutabilityViolationError(InvalidStateError):
    """Attempted to modify or delete an immutable record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Conflict


class ConflictError(ChangeKernelError):
    """Base exception for races lost against a concurrent writer."""

    code: str = "CONFLICT"


class NumberingConflictError(ConflictError):
    """No free number could be allocated within the retry budget."""

    code: str = "NUMBERING_CONFLICT"

    def __init__(self, scope_id: str, attempts: int):
        self.scope_id = scope_id
        self.attempts = attempts
        super().__init__(
            f"Could not allocate a number in scope {scope_id} "
            f"after {attempts} attempt(s)"
        )


class ConcurrentModificationError(ConflictError):
    """Optimistic version check failed: the row changed underneath us."""

    code: str = "CONCURRENT_MODIFICATION"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"{entity_type} {entity_id} was modified by another transaction"
        )


class PersistenceConflictError(ConflictError):
    """A uniqueness constraint rejected the write."""

    code: str = "PERSISTENCE_CONFLICT"

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Uniqueness conflict: {detail}")


# Unexpected


class UnexpectedError(ChangeKernelError):
    """Base exception for storage or transport failures."""

    code: str = "UNEXPECTED"


class StorageError(UnexpectedError):
    """The relational store failed underneath an operation."""

    code: str = "STORAGE_ERROR"

    def __init__(self, operation: str, detail: str):
        self.operation = operation
        self.detail = detail
        super().__init__(f"Storage failure during {operation}: {detail}")


class AuditChainBrokenError(UnexpectedError):
    """The audit hash chain of a change request does not verify."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, entry_id: str, expected_hash: str, actual_hash: str):
        self.entry_id = entry_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Audit chain broken at entry {entry_id}: "
            f"expected {expected_hash}, got {actual_hash}"
        )
