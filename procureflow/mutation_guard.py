from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from procureflow.audit import AuditLog
from procureflow.config import WorkflowConfig
from procureflow.executor import validation_rejection
from procureflow.notifications import LoggingOverrideNotifier, OverrideAlert, OverrideNotifier
from procureflow.permissions import Actor, Capability, PermissionMatrix
from procureflow.results import Accepted, Outcome, Rejected, Rejection, RejectionKind, reject
from procureflow.rollback import RollbackResolver
from procureflow.schemas import parse_stage_payload
from procureflow.states import CaseState, ProcurementMethod, StageKind, kind_for_state, stage_spec
from procureflow.transition_policy import TransitionPolicy

if TYPE_CHECKING:
    from procureflow.store import CaseStore

logger = logging.getLogger(__name__)


class MutationDecisionKind(StrEnum):
    ALLOWED = "ALLOWED"
    ALLOWED_WITH_OVERRIDE = "ALLOWED_WITH_OVERRIDE"
    DENIED = "DENIED"


@dataclass(frozen=True)
class MutationDecision:
    kind: MutationDecisionKind
    rejection: Rejection | None = None

    @property
    def allowed(self) -> bool:
        return self.kind is not MutationDecisionKind.DENIED

    @property
    def requires_override(self) -> bool:
        return self.kind is MutationDecisionKind.ALLOWED_WITH_OVERRIDE


def _denied(rejection: Rejection) -> MutationDecision:
    return MutationDecision(kind=MutationDecisionKind.DENIED, rejection=rejection)


class MutationGuard:
    """Edits and deletes of stage records that already exist.

    A record may be changed freely while nothing later in the method's stage
    order has been recorded. Once downstream data exists only a role holding
    ``admin_override`` for the kind may proceed; such changes are flagged in
    the audit entry and reported to the override notifier after commit.
    Deleting a record rolls the case back to the latest stage that remaining
    records still witness.
    """

    def __init__(
        self,
        *,
        store: CaseStore,
        policy: TransitionPolicy,
        permissions: PermissionMatrix,
        resolver: RollbackResolver,
        audit_log: AuditLog,
        notifier: OverrideNotifier | None = None,
        config: WorkflowConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._policy = policy
        self._permissions = permissions
        self._resolver = resolver
        self._audit = audit_log
        self._notifier = notifier or LoggingOverrideNotifier()
        self._config = config or WorkflowConfig()
        self._clock = clock or (lambda: datetime.now(UTC))

    # -- decisions -------------------------------------------------------

    def downstream_kinds(self, uow: Any, case: dict[str, Any], kind: StageKind) -> list[StageKind]:
        method = ProcurementMethod(case["method"])
        later = set(self._policy.states_after(method, stage_spec(kind).state))
        present = uow.records.kinds_present(case_id=str(case["case_id"]))
        return sorted(
            (StageKind(k) for k in present if stage_spec(StageKind(k)).state in later),
            key=lambda k: self._policy.index_of(method, stage_spec(k).state) or 0,
        )

    def has_downstream_data(self, uow: Any, case: dict[str, Any], kind: StageKind) -> bool:
        return bool(self.downstream_kinds(uow, case, kind))

    def _decide(
        self,
        uow: Any,
        case: dict[str, Any],
        kind: StageKind,
        role: str,
        capability: Capability,
    ) -> MutationDecision:
        if not self._permissions.can(role, kind, capability):
            return _denied(
                Rejection(
                    kind=RejectionKind.PERMISSION_DENIED,
                    message=f"Role {role} cannot {capability.value} {kind.value}",
                    details={
                        "required": capability.value,
                        "allowed_roles": self._permissions.roles_with(kind, capability),
                    },
                )
            )
        downstream = self.downstream_kinds(uow, case, kind)
        if not downstream:
            return MutationDecision(kind=MutationDecisionKind.ALLOWED)
        if self._permissions.can(role, kind, Capability.ADMIN_OVERRIDE):
            return MutationDecision(kind=MutationDecisionKind.ALLOWED_WITH_OVERRIDE)
        if capability is Capability.DELETE:
            message = (
                f"Cannot delete {kind.value} because downstream data exists. "
                "Admin override required to cascade delete."
            )
        else:
            message = f"Cannot edit {kind.value} because downstream data exists. Admin override required."
        return _denied(
            Rejection(
                kind=RejectionKind.DOWNSTREAM_BLOCKED,
                message=message,
                details={"downstream": [k.value for k in downstream]},
            )
        )

    def _validate(self, case_id: str, kind: StageKind, role: str, capability: Capability) -> MutationDecision:
        with self._store.transaction(case_id) as uow:
            case = uow.cases.get(case_id=case_id)
            if case is None:
                return _denied(
                    Rejection(
                        kind=RejectionKind.NOT_FOUND,
                        message=f"case not found: {case_id}",
                        details={"case_id": case_id},
                    )
                )
            return self._decide(uow, case, StageKind(kind), role, capability)

    def validate_edit(self, case_id: str, kind: StageKind, role: str) -> MutationDecision:
        return self._validate(case_id, kind, role, Capability.EDIT)

    def validate_delete(self, case_id: str, kind: StageKind, role: str) -> MutationDecision:
        return self._validate(case_id, kind, role, Capability.DELETE)

    # -- mutations -------------------------------------------------------

    @staticmethod
    def _locate(uow: Any, *, case_id: str, kind: StageKind, record_id: str | None) -> dict[str, Any] | Rejection:
        rows = uow.records.list(case_id=case_id, kind=kind.value)
        if record_id is None:
            if stage_spec(kind).collection:
                return Rejection(
                    kind=RejectionKind.VALIDATION_ERROR,
                    message=f"record_id is required for {kind.value}",
                )
            if rows:
                return rows[0]
            return Rejection(
                kind=RejectionKind.NOT_FOUND,
                message=f"no {kind.value} record for case {case_id}",
                details={"case_id": case_id, "kind": kind.value},
            )
        for row in rows:
            if row["record_id"] == record_id:
                return row
        return Rejection(
            kind=RejectionKind.NOT_FOUND,
            message=f"{kind.value} record not found: {record_id}",
            details={"case_id": case_id, "kind": kind.value, "record_id": record_id},
        )

    def _open(
        self,
        uow: Any,
        *,
        case_id: str,
        kind: StageKind,
        record_id: str | None,
        actor: Actor,
        capability: Capability,
    ) -> tuple[dict[str, Any], dict[str, Any], MutationDecision] | Rejection:
        case = uow.cases.get(case_id=case_id, for_update=True)
        if case is None:
            return Rejection(
                kind=RejectionKind.NOT_FOUND,
                message=f"case not found: {case_id}",
                details={"case_id": case_id},
            )
        decision = self._decide(uow, case, kind, actor.role, capability)
        if decision.rejection is not None:
            return decision.rejection
        record = self._locate(uow, case_id=case_id, kind=kind, record_id=record_id)
        if isinstance(record, Rejection):
            return record
        return case, record, decision

    def edit(
        self,
        case_id: str,
        kind: StageKind,
        record_id: str | None,
        payload: dict[str, Any],
        *,
        actor: Actor,
        reason: str,
    ) -> Outcome[dict[str, Any]]:
        kind = StageKind(kind)
        reason = (reason or "").strip()
        if not reason:
            return reject(RejectionKind.VALIDATION_ERROR, "reason is required")
        with self._store.transaction(case_id) as uow:
            opened = self._open(
                uow,
                case_id=case_id,
                kind=kind,
                record_id=record_id,
                actor=actor,
                capability=Capability.EDIT,
            )
            if isinstance(opened, Rejection):
                logger.info("stage_edit_rejected case_id=%s kind=%s outcome=%s", case_id, kind.value, opened.kind.value)
                return Rejected(opened)
            case, record, decision = opened
            before = dict(record.get("data") or {})
            try:
                after = parse_stage_payload(
                    kind,
                    {**before, **(payload or {})},
                    posting_min_days=self._config.posting_min_days,
                )
            except ValidationError as exc:
                return Rejected(validation_rejection(exc))
            updated = uow.records.update(
                record={**record, "data": after, "updated_at": self._clock().isoformat()}
            )
            current = CaseState(case["current_state"])
            entry = self._audit.append(
                uow,
                case_id=case_id,
                action=f"edit_{kind.value}",
                change_type="edit",
                actor=actor,
                from_state=current,
                to_state=None,
                entity_kind=kind.value,
                entity_id=str(record["record_id"]),
                payload={"before": before, "after": after},
                reason=reason,
                override=decision.requires_override,
            )
        logger.info(
            "stage_record_edited case_id=%s kind=%s record_id=%s override=%s",
            case_id,
            kind.value,
            record["record_id"],
            decision.requires_override,
        )
        if decision.requires_override:
            self._alert(
                case_id=case_id,
                action="update",
                kind=kind,
                record_id=str(record["record_id"]),
                actor=actor,
                reason=reason,
            )
        return Accepted(
            {
                "case": case,
                "record": updated,
                "audit_id": entry["audit_id"],
                "override": decision.requires_override,
            }
        )

    def delete(
        self,
        case_id: str,
        kind: StageKind,
        record_id: str | None,
        *,
        actor: Actor,
        reason: str,
    ) -> Outcome[dict[str, Any]]:
        kind = StageKind(kind)
        reason = (reason or "").strip()
        if not reason:
            return reject(RejectionKind.VALIDATION_ERROR, "reason is required")
        with self._store.transaction(case_id) as uow:
            opened = self._open(
                uow,
                case_id=case_id,
                kind=kind,
                record_id=record_id,
                actor=actor,
                capability=Capability.DELETE,
            )
            if isinstance(opened, Rejection):
                logger.info("stage_delete_rejected case_id=%s kind=%s outcome=%s", case_id, kind.value, opened.kind.value)
                return Rejected(opened)
            case, record, decision = opened
            method = ProcurementMethod(case["method"])
            current = CaseState(case["current_state"])
            uow.records.delete(case_id=case_id, kind=kind.value, record_id=str(record["record_id"]))

            cascaded: list[dict[str, str]] = []
            if decision.requires_override:
                for state in self._policy.states_after(method, stage_spec(kind).state):
                    later = kind_for_state(state)
                    if later is None:
                        continue
                    for row in uow.records.list(case_id=case_id, kind=later.value):
                        uow.records.delete(case_id=case_id, kind=later.value, record_id=str(row["record_id"]))
                        cascaded.append({"kind": later.value, "record_id": str(row["record_id"])})

            reached = {CaseState.DRAFT} | {
                stage_spec(StageKind(k)).state for k in uow.records.kinds_present(case_id=case_id)
            }
            target = self._resolver.rollback_target(method, current, kind, reached)
            if target is not current:
                case["current_state"] = target.value
                case["version"] = int(case.get("version", 1)) + 1
                case["updated_at"] = self._clock().isoformat()
                case = uow.cases.update(case=case)
            entry = self._audit.append(
                uow,
                case_id=case_id,
                action=f"delete_{kind.value}",
                change_type="delete",
                actor=actor,
                from_state=current,
                to_state=target,
                entity_kind=kind.value,
                entity_id=str(record["record_id"]),
                payload={"before": dict(record.get("data") or {}), "cascaded": cascaded},
                reason=reason,
                override=decision.requires_override,
            )
        logger.info(
            "stage_record_deleted case_id=%s kind=%s record_id=%s from=%s to=%s cascaded=%d",
            case_id,
            kind.value,
            record["record_id"],
            current.value,
            target.value,
            len(cascaded),
        )
        if decision.requires_override:
            self._alert(
                case_id=case_id,
                action="delete",
                kind=kind,
                record_id=str(record["record_id"]),
                actor=actor,
                reason=reason,
            )
        return Accepted(
            {
                "case": case,
                "deleted": {"kind": kind.value, "record_id": record["record_id"]},
                "cascaded": cascaded,
                "rolled_back_to": target.value if target is not current else None,
                "audit_id": entry["audit_id"],
                "override": decision.requires_override,
            }
        )

    def _alert(
        self,
        *,
        case_id: str,
        action: str,
        kind: StageKind,
        record_id: str,
        actor: Actor,
        reason: str,
    ) -> None:
        alert = OverrideAlert(
            case_id=case_id,
            action=action,
            entity_kind=stage_spec(kind).entity,
            entity_id=record_id,
            actor_id=actor.actor_id,
            actor_role=actor.role,
            reason=reason,
            occurred_at=self._clock().isoformat(),
        )
        try:
            self._notifier.notify(alert)
        except Exception:
            # The mutation has already committed.
            logger.exception("override_alert_failed case_id=%s action=%s", case_id, action)
