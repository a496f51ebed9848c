from __future__ import annotations

import hashlib
import json
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, Literal

from procureflow.permissions import Actor
from procureflow.states import CaseState

ChangeType = Literal["transition", "append", "edit", "delete"]


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def compute_audit_hash(*, log: dict[str, Any], prev_hash: str) -> str:
    material = {key: value for key, value in log.items() if key not in {"audit_hash", "prev_hash"}}
    material["prev_hash"] = prev_hash
    blob = json.dumps(material, sort_keys=True, ensure_ascii=True, separators=(",", ":"), default=str)
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()


class AuditLog:
    """Append-only, per-case hash-chained record of every mutation.

    Entries are written through the unit of work of the mutation they
    describe, so an entry exists exactly when its mutation committed. ``seq``
    increases by one per case and orders entries independently of clock
    resolution. Transition entries carry the legal citation of the state
    they enter.
    """

    def __init__(self, *, clock: Callable[[], str] | None = None) -> None:
        self._clock = clock or _utcnow_iso

    def append(
        self,
        uow: Any,
        *,
        case_id: str,
        action: str,
        change_type: ChangeType,
        actor: Actor,
        from_state: CaseState | None,
        to_state: CaseState | None,
        entity_kind: str | None = None,
        entity_id: str | None = None,
        payload: dict[str, Any] | None = None,
        reason: str | None = None,
        override: bool = False,
        legal_basis: str | None = None,
    ) -> dict[str, Any]:
        last = uow.audit.last_for_case(case_id=case_id)
        prev_hash = str(last.get("audit_hash") or "") if last else ""
        entry: dict[str, Any] = {
            "audit_id": f"audit_{uuid.uuid4().hex[:12]}",
            "case_id": case_id,
            "seq": int(last["seq"]) + 1 if last else 1,
            "action": action,
            "change_type": change_type,
            "from_state": from_state.value if from_state else None,
            "to_state": to_state.value if to_state else None,
            "actor_id": actor.actor_id,
            "actor_role": actor.role,
            "entity_kind": entity_kind,
            "entity_id": entity_id,
            "payload": payload or {},
            "reason": reason,
            "override": override,
            "legal_basis": legal_basis,
            "occurred_at": self._clock(),
        }
        entry["prev_hash"] = prev_hash
        entry["audit_hash"] = compute_audit_hash(log=entry, prev_hash=prev_hash)
        return uow.audit.append(log=entry)

    def list_for_case(self, uow: Any, case_id: str, *, order: Literal["asc", "desc"] = "asc") -> list[dict[str, Any]]:
        return uow.audit.list_for_case(case_id=case_id, descending=order == "desc")

    def verify_integrity(self, uow: Any, case_id: str) -> dict[str, Any]:
        rows = uow.audit.list_for_case(case_id=case_id)
        prev_hash = ""
        for idx, row in enumerate(rows):
            stored_prev = str(row.get("prev_hash") or "")
            if stored_prev != prev_hash:
                return {
                    "valid": False,
                    "checked_count": idx + 1,
                    "reason": "prev_hash_mismatch",
                    "audit_id": row.get("audit_id"),
                }
            if int(row.get("seq") or 0) != idx + 1:
                return {
                    "valid": False,
                    "checked_count": idx + 1,
                    "reason": "seq_gap",
                    "audit_id": row.get("audit_id"),
                }
            expected = compute_audit_hash(log=row, prev_hash=stored_prev)
            actual = str(row.get("audit_hash") or "")
            if actual != expected:
                return {
                    "valid": False,
                    "checked_count": idx + 1,
                    "reason": "audit_hash_mismatch",
                    "audit_id": row.get("audit_id"),
                }
            prev_hash = actual
        return {
            "valid": True,
            "checked_count": len(rows),
            "last_hash": prev_hash,
        }
