"""
ORM-Level Immutability Enforcement.

===============================================================================
HOW IT WORKS
===============================================================================

SQLAlchemy fires mapper events before UPDATE/DELETE operations reach the
database.  For every model registered here we install listeners that raise
before any SQL is sent:

    session.flush()
         |
         v
    [before_update event] --> _reject_update() --> ImmutabilityViolationError
         |
         v
    [before_delete event] --> _reject_delete() --> ImmutabilityViolationError

The transaction is aborted and the database is never modified.

Ledger entries created by the recurring processor are append-only: the only
way to "undo" one is a new compensating entry.  The back-reference to the
originating template is cleared by the database itself (ON DELETE SET NULL)
when a template is hard-deleted; that path never goes through the ORM and is
therefore not blocked here.

===============================================================================
USAGE
===============================================================================

The model layer registers its append-only models once at import:

    register_immutability_listeners(LedgerEntryModel)

To temporarily disable (TESTS ONLY - never in production):

    unregister_immutability_listeners(LedgerEntryModel)
    # ... do forbidden operation ...
    register_immutability_listeners(LedgerEntryModel)
"""

from sqlalchemy import event

from ledger_kernel.exceptions import ImmutabilityViolationError
from ledger_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _reject_update(mapper, connection, target):
    entity_type = type(target).__name__
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": "UPDATE",
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=f"{entity_type} records are append-only and cannot be modified",
    )


def _reject_delete(mapper, connection, target):
    entity_type = type(target).__name__
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": "DELETE",
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=f"{entity_type} records cannot be deleted",
    )


def register_immutability_listeners(*models) -> None:
    """Block ORM UPDATE and DELETE on each of the given models (idempotent)."""
    for model in models:
        if not event.contains(model, "before_update", _reject_update):
            event.listen(model, "before_update", _reject_update)
        if not event.contains(model, "before_delete", _reject_delete):
            event.listen(model, "before_delete", _reject_delete)


def _safe_remove_listener(target, event_name, listener_fn):
    """Remove an event listener, ignoring it if not registered."""
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners(*models) -> None:
    """Remove the listeners installed by register_immutability_listeners()."""
    for model in models:
        _safe_remove_listener(model, "before_update", _reject_update)
        _safe_remove_listener(model, "before_delete", _reject_delete)
