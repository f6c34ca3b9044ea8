"""
Audit trail for ledger mutations.

Every change to invoices, payments and allocations is logged here. The
audit log is:
- Append-only (entries never modified or deleted)
- Transactional (written through the same Transaction as the change, so a
  rolled-back change leaves no audit entry behind)
- Detailed (captures old and new values)
"""

from enum import Enum
from typing import Any
from uuid import uuid4

from clients.filters import eq
from clients.postgres_client import TableGateway
from utils.timezone import now_utc


class AuditAction(Enum):
    """Type of change made to an entity."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


def compute_changes(
    old: dict[str, Any],
    new: dict[str, Any],
    exclude_fields: set[str] | None = None
) -> dict[str, dict[str, Any]]:
    """
    Compute changes between two entity states.

    Args:
        old: Previous state of entity
        new: New state of entity
        exclude_fields: Fields to ignore (defaults to {"updated_at"})

    Returns:
        Dict of {field: {"old": old_val, "new": new_val}} for changed fields.
        Empty dict if no changes.
    """
    exclude = exclude_fields or {"updated_at"}
    changes = {}

    all_keys = set(old.keys()) | set(new.keys())
    for key in all_keys:
        if key in exclude:
            continue

        old_val = old.get(key)
        new_val = new.get(key)

        if old_val != new_val:
            changes[key] = {"old": old_val, "new": new_val}

    return changes


class AuditLogger:
    """
    Audit trail writer.

    IMPORTANT: changes must be JSON-serializable. Use model_dump(mode="json")
    for models and str() for Decimal amounts.

    Usage:
        audit = AuditLogger(postgres)

        with postgres.transaction() as tx:
            ...
            audit.log_change(
                entity_type="invoice",
                entity_id=invoice.id,
                action=AuditAction.UPDATE,
                changes=compute_changes(old.model_dump(mode="json"), new.model_dump(mode="json")),
                db=tx,
            )
    """

    def __init__(self, postgres: TableGateway):
        self.postgres = postgres

    def log_change(
        self,
        entity_type: str,
        entity_id: str,
        action: AuditAction,
        changes: dict[str, Any],
        db: TableGateway | None = None,
    ) -> None:
        """
        Log an entity change.

        Args:
            entity_type: Type of entity ("invoice", "payment", "payment_allocation")
            entity_id: ID of the entity
            action: The action performed (CREATE, UPDATE, DELETE)
            changes: The changes made (format depends on action)
            db: Transaction to write through (defaults to the client itself)

        Changes format by action:
        - CREATE: {"created": {full entity data}}
        - UPDATE: {"field": {"old": old_val, "new": new_val}, ...}
        - DELETE: {"deleted": {full entity data at deletion}}
        """
        target = db if db is not None else self.postgres
        target.insert_rows("audit_log", [{
            "id": str(uuid4()),
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "action": action.value,
            "changes": changes,
            "created_at": now_utc(),
        }])

    def get_entity_history(self, entity_type: str, entity_id: str) -> list[dict[str, Any]]:
        """
        Get full audit history for an entity.

        Returns:
            List of audit entries, newest first.
        """
        return self.postgres.fetch_rows(
            "audit_log",
            [eq("entity_type", entity_type), eq("entity_id", str(entity_id))],
            order_by=["-created_at"],
        )
