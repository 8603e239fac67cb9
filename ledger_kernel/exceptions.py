"""
Typed Exception Hierarchy for the Ledger Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

A scheduled job that moves money must report failures precisely.  Callers
(the trigger handler, the HTTP layer, the CLI) decide what to do by exception
TYPE and machine-readable CODE, never by parsing message text.

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example:
    try:
        runner.process_template(due, now)
    except ConcurrencyConflictError as e:
        log.warning("lost race on %s", e.template_id)
        api_response(code=e.code)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from LedgerError:

    LedgerError (base)
    |
    +-- ConfigurationError
    +-- AuthorizationError
    |
    +-- ValidationError
    |   +-- InvalidRecurrenceRuleError
    |   +-- InvalidTemplateError
    |
    +-- ConcurrencyError
    |   +-- ConcurrencyConflictError
    |
    +-- StoreError
    |   +-- TransientStoreError
    |
    +-- TemplateNotFoundError
    |
    +-- ImmutabilityError
        +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Code                      | Scope       | When Raised
--------------------------|-------------|--------------------------------------
CONFIGURATION_ERROR       | invocation  | DATABASE_URL / CRON_SECRET missing, bad value
UNAUTHORIZED              | invocation  | Trigger credential missing or wrong
INVALID_RECURRENCE_RULE   | per-item    | Unknown frequency, interval < 1
INVALID_TEMPLATE          | per-item    | Template row fails field validation
CONCURRENCY_CONFLICT      | per-item    | Conditional advance matched zero rows
TRANSIENT_STORE_ERROR     | per-item    | Connection/lock/timeout from the store
TEMPLATE_NOT_FOUND        | service     | Template id does not exist
IMMUTABILITY_VIOLATION    | service     | UPDATE/DELETE of a ledger entry

Invocation-scoped errors abort the whole pass before any work is done.
Per-item errors roll back one template's transaction and the pass continues.
"""


class LedgerError(Exception):
    """
    Base exception for all ledger errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "LEDGER_ERROR"


# Invocation-level exceptions


class ConfigurationError(LedgerError):
    """Required configuration is missing or malformed."""

    code: str = "CONFIGURATION_ERROR"

    def __init__(self, message: str, keys: tuple[str, ...] = ()):
        self.keys = tuple(keys)
        super().__init__(message)


class AuthorizationError(LedgerError):
    """Trigger credential missing or invalid."""

    code: str = "UNAUTHORIZED"

    def __init__(self, reason: str = "Unauthorized"):
        self.reason = reason
        super().__init__(reason)


# Validation exceptions


class ValidationError(LedgerError):
    """Base exception for field-level validation failures."""

    code: str = "VALIDATION_ERROR"


class InvalidRecurrenceRuleError(ValidationError):
    """Frequency or interval is not a valid recurrence rule."""

    code: str = "INVALID_RECURRENCE_RULE"

    def __init__(self, frequency: object, interval: object, reason: str):
        self.frequency = str(frequency)
        self.interval = repr(interval)
        self.reason = reason
        super().__init__(
            f"Invalid recurrence rule (frequency={frequency!r}, "
            f"interval={interval!r}): {reason}"
        )


class InvalidTemplateError(ValidationError):
    """A recurring template row fails validation at the model boundary."""

    code: str = "INVALID_TEMPLATE"

    def __init__(self, template_id: str, reason: str):
        self.template_id = template_id
        self.reason = reason
        super().__init__(f"Invalid recurring template {template_id}: {reason}")


# Concurrency exceptions


class ConcurrencyError(LedgerError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class ConcurrencyConflictError(ConcurrencyError):
    """Another invocation advanced or materialized this occurrence first."""

    code: str = "CONCURRENCY_CONFLICT"

    def __init__(self, template_id: str, reason: str):
        self.template_id = template_id
        self.reason = reason
        super().__init__(
            f"Concurrency conflict on recurring template {template_id}: {reason}"
        )


# Store exceptions


class StoreError(LedgerError):
    """Base exception for storage failures."""

    code: str = "STORE_ERROR"


class TransientStoreError(StoreError):
    """Connection loss, lock timeout, or other retryable store failure."""

    code: str = "TRANSIENT_STORE_ERROR"

    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"Store failure during {operation}: {reason}")


# Lookup exceptions


class TemplateNotFoundError(LedgerError):
    """Recurring template does not exist."""

    code: str = "TEMPLATE_NOT_FOUND"

    def __init__(self, template_id: str):
        self.template_id = template_id
        super().__init__(f"Recurring template not found: {template_id}")


# Immutability-related exceptions


class ImmutabilityError(LedgerError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """Attempted to modify or delete an immutable record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )
