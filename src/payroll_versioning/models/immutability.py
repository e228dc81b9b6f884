"""Insert-only enforcement for versioned history tables.

Receipt versions, their line items, ruleset snapshots, integrity alerts and
the critical action ledger may be inserted but never updated or deleted
through the ORM. Stamping authorizations may only have their ``revoked_*``
columns set, once. Bulk ``update()``/``delete()`` statements against these
tables are rejected as well.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session

from payroll_versioning.exceptions import ImmutableRecordError
from payroll_versioning.models.authorization import CriticalActionRecord, StampingAuthorization
from payroll_versioning.models.receipt import ReceiptLineItem, ReceiptVersion
from payroll_versioning.models.snapshot import IntegrityAlert, RulesetSnapshot

logger = logging.getLogger(__name__)

INSERT_ONLY_MODELS: tuple[type, ...] = (
    ReceiptVersion,
    ReceiptLineItem,
    RulesetSnapshot,
    IntegrityAlert,
    CriticalActionRecord,
)

REVOCATION_COLUMNS = frozenset({"revoked_at", "revoked_by", "revoke_reason"})


def _reject_update(mapper: Any, connection: Any, target: Any) -> None:
    name = type(target).__name__
    logger.error("Blocked UPDATE of insert-only %s", name)
    raise ImmutableRecordError(name, "UPDATE")


def _reject_delete(mapper: Any, connection: Any, target: Any) -> None:
    name = type(target).__name__
    logger.error("Blocked DELETE of insert-only %s", name)
    raise ImmutableRecordError(name, "DELETE")


def _check_authorization_update(mapper: Any, connection: Any, target: StampingAuthorization) -> None:
    state = inspect(target)
    changed = {
        attr.key for attr in state.attrs if attr.history.has_changes()
    }
    if not changed <= REVOCATION_COLUMNS:
        raise ImmutableRecordError(
            "StampingAuthorization", f"UPDATE of {sorted(changed - REVOCATION_COLUMNS)}"
        )
    previous = state.attrs.revoked_at.history.deleted
    if previous and previous[0] is not None:
        raise ImmutableRecordError("StampingAuthorization", "second revocation")


def _reject_bulk_statements(orm_execute_state: Any) -> None:
    if not (orm_execute_state.is_update or orm_execute_state.is_delete):
        return
    for mapper in orm_execute_state.all_mappers:
        if mapper.class_ in INSERT_ONLY_MODELS or mapper.class_ is StampingAuthorization:
            verb = "UPDATE" if orm_execute_state.is_update else "DELETE"
            raise ImmutableRecordError(mapper.class_.__name__, f"bulk {verb}")


_LISTENERS: list[tuple[Any, str, Any]] = [
    *((model, "before_update", _reject_update) for model in INSERT_ONLY_MODELS),
    *((model, "before_delete", _reject_delete) for model in INSERT_ONLY_MODELS),
    (StampingAuthorization, "before_update", _check_authorization_update),
    (StampingAuthorization, "before_delete", _reject_delete),
    (Session, "do_orm_execute", _reject_bulk_statements),
]


def register_immutability_listeners() -> None:
    """Register all insert-only enforcement listeners (idempotent)."""
    for target, name, fn in _LISTENERS:
        if not event.contains(target, name, fn):
            event.listen(target, name, fn)


def unregister_immutability_listeners() -> None:
    """Remove the listeners. Test helper."""
    for target, name, fn in _LISTENERS:
        if event.contains(target, name, fn):
            event.remove(target, name, fn)
