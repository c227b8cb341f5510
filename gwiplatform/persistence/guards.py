from __future__ import annotations

from sqlalchemy import event
from sqlalchemy.orm import ORMExecuteState, Session

from gwiplatform.core.errors import AuditImmutableError
from gwiplatform.domain.models import AuditLogEntry


def _refuse_audit_mutation_on_flush(session: Session, flush_context, instances) -> None:
    # Audit rows are write-once; catch edits and deletes queued on the unit of work.
    for obj in session.deleted:
        if isinstance(obj, AuditLogEntry):
            raise AuditImmutableError("Audit log entries cannot be deleted")
    for obj in session.dirty:
        if isinstance(obj, AuditLogEntry) and session.is_modified(obj):
            raise AuditImmutableError("Audit log entries cannot be modified")


def _refuse_audit_bulk_statements(orm_execute_state: ORMExecuteState) -> None:
    # Bulk update()/delete() statements bypass the flush hook, so check them separately.
    if not (orm_execute_state.is_update or orm_execute_state.is_delete):
        return
    for mapper in orm_execute_state.all_mappers:
        if mapper.class_ is AuditLogEntry:
            raise AuditImmutableError("Audit log entries are append-only")


def install_audit_guards() -> None:
    # Register once per process; every Session (sync or wrapped by AsyncSession) is covered.
    if not event.contains(Session, "before_flush", _refuse_audit_mutation_on_flush):
        event.listen(Session, "before_flush", _refuse_audit_mutation_on_flush)
    if not event.contains(Session, "do_orm_execute", _refuse_audit_bulk_statements):
        event.listen(Session, "do_orm_execute", _refuse_audit_bulk_statements)
