from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from procureflow.audit import AuditLog
from procureflow.config import WorkflowConfig
from procureflow.legal import legal_basis_for
from procureflow.permissions import Actor, Capability, PermissionMatrix
from procureflow.prerequisites import PrerequisiteValidator
from procureflow.results import Accepted, Outcome, Rejected, Rejection, RejectionKind, reject
from procureflow.schemas import parse_stage_payload
from procureflow.states import CaseState, ProcurementMethod, StageKind, kind_for_state, stage_spec
from procureflow.transition_policy import TransitionPolicy

if TYPE_CHECKING:
    from procureflow.store import CaseStore

logger = logging.getLogger(__name__)


def validation_rejection(exc: ValidationError) -> Rejection:
    errors = [
        {"loc": ".".join(str(x) for x in err.get("loc", ())), "msg": str(err.get("msg", ""))}
        for err in exc.errors(include_url=False)
    ]
    message = errors[0]["msg"] if errors else "invalid payload"
    return Rejection(kind=RejectionKind.VALIDATION_ERROR, message=message, details={"errors": errors})


class TransitionExecutor:
    """Moves a case forward one stage inside a single store transaction.

    Within the transaction the case is re-read under its lock, then checked
    against the policy graph and the prerequisite guards before the stage
    record, the new state and exactly one audit entry are written.
    Idempotency tokens are consumed in a separate, already committed
    transaction so a retried request is rejected whatever the first attempt's
    outcome was.
    """

    def __init__(
        self,
        *,
        store: CaseStore,
        policy: TransitionPolicy,
        validator: PrerequisiteValidator,
        audit_log: AuditLog,
        permissions: PermissionMatrix,
        config: WorkflowConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._policy = policy
        self._validator = validator
        self._audit = audit_log
        self._permissions = permissions
        self._config = config or WorkflowConfig()
        self._clock = clock or (lambda: datetime.now(UTC))

    # -- case creation ---------------------------------------------------

    def create_case(
        self,
        *,
        title: str,
        method: ProcurementMethod,
        actor: Actor,
        description: str | None = None,
        estimated_budget: float | None = None,
    ) -> dict[str, Any]:
        now = self._clock().isoformat()
        case = {
            "case_id": f"case_{uuid.uuid4().hex[:12]}",
            "title": title,
            "method": ProcurementMethod(method).value,
            "current_state": CaseState.DRAFT.value,
            "description": description,
            "estimated_budget": estimated_budget,
            "created_by": actor.actor_id,
            "version": 1,
            "created_at": now,
            "updated_at": now,
        }
        with self._store.transaction() as uow:
            created = uow.cases.create(case=case)
        logger.info("case_created case_id=%s method=%s actor=%s", created["case_id"], created["method"], actor.actor_id)
        return created

    # -- transitions -----------------------------------------------------

    def execute(
        self,
        case_id: str,
        target_state: CaseState,
        stage_payload: dict[str, Any] | None = None,
        *,
        actor: Actor,
        action: str | None = None,
        idempotency_token: str | None = None,
        legal_basis: str | None = None,
    ) -> Outcome[dict[str, Any]]:
        """Move the case to ``target_state``.

        ``legal_basis`` overrides the citation recorded on the audit entry.
        """
        target = CaseState(target_state)
        kind = kind_for_state(target)
        if kind is None:
            return reject(
                RejectionKind.TRANSITION_NOT_ALLOWED,
                f"transition not allowed: cannot move a case back to {target.value}",
                attempted=target.value,
            )
        return self._run(
            case_id,
            kind=kind,
            target=target,
            raw_payload=stage_payload,
            actor=actor,
            action=action or f"transition_{target.value.lower()}",
            idempotency_token=idempotency_token,
            allow_append=False,
            legal_basis=legal_basis,
        )

    def record(
        self,
        case_id: str,
        kind: StageKind,
        payload: dict[str, Any] | None = None,
        *,
        actor: Actor,
        idempotency_token: str | None = None,
    ) -> Outcome[dict[str, Any]]:
        """Perform the stage action ``kind``.

        For a collection kind whose stage is already current this appends an
        item without a transition; otherwise it moves the case into the
        kind's stage.
        """
        kind = StageKind(kind)
        spec = stage_spec(kind)
        if spec.collection and payload is None:
            return reject(RejectionKind.VALIDATION_ERROR, f"{kind.value} requires a payload")
        return self._run(
            case_id,
            kind=kind,
            target=spec.state,
            raw_payload=payload,
            actor=actor,
            action=kind.value,
            idempotency_token=idempotency_token,
            allow_append=True,
        )

    def _consume_token(self, *, action: str, case_id: str, token: str) -> Rejection | None:
        scope_key = f"{action}:{case_id}:{token}"
        fresh = self._store.consume_idempotency_key(
            scope_key=scope_key,
            now=self._clock().timestamp(),
            ttl_seconds=self._config.idempotency_ttl_seconds,
        )
        if fresh:
            return None
        logger.info("idempotency_duplicate scope_key=%s", scope_key)
        return Rejection(
            kind=RejectionKind.DUPLICATE_REQUEST,
            message="Duplicate request",
            details={"idempotency_key": token, "action": action},
        )

    def _parse(self, kind: StageKind, raw: dict[str, Any] | None) -> dict[str, Any] | Rejection:
        try:
            return parse_stage_payload(kind, raw or {}, posting_min_days=self._config.posting_min_days)
        except ValidationError as exc:
            return validation_rejection(exc)

    def _run(
        self,
        case_id: str,
        *,
        kind: StageKind,
        target: CaseState,
        raw_payload: dict[str, Any] | None,
        actor: Actor,
        action: str,
        idempotency_token: str | None,
        allow_append: bool,
        legal_basis: str | None = None,
    ) -> Outcome[dict[str, Any]]:
        spec = stage_spec(kind)
        if not self._permissions.can(actor.role, kind, Capability.CREATE):
            return reject(
                RejectionKind.PERMISSION_DENIED,
                f"Role {actor.role} cannot create {kind.value}",
                required=Capability.CREATE.value,
                allowed_roles=self._permissions.roles_with(kind, Capability.CREATE),
            )
        if idempotency_token:
            duplicate = self._consume_token(action=action, case_id=case_id, token=idempotency_token)
            if duplicate is not None:
                return Rejected(duplicate)

        with self._store.transaction(case_id) as uow:
            case = uow.cases.get(case_id=case_id, for_update=True)
            if case is None:
                return reject(RejectionKind.NOT_FOUND, f"case not found: {case_id}", case_id=case_id)
            method = ProcurementMethod(case["method"])
            current = CaseState(case["current_state"])

            if allow_append and spec.collection and current is target:
                parsed = self._parse(kind, raw_payload)
                if isinstance(parsed, Rejection):
                    return Rejected(parsed)
                return Accepted(self._append(uow, case, kind=kind, data=parsed, actor=actor))

            if current is target:
                return reject(
                    RejectionKind.DUPLICATE_REQUEST,
                    f"case is already in state {current.value}",
                    current_state=current.value,
                )
            data: dict[str, Any] | None = None
            rejection = self._policy.check(method, current, target)
            if rejection is None and (raw_payload is not None or not spec.collection):
                # Collection stages can be entered without adding an item.
                parsed = self._parse(kind, raw_payload)
                if isinstance(parsed, Rejection):
                    rejection = parsed
                else:
                    data = parsed
            if rejection is None:
                rejection = self._validator.check(uow, case, target)
            if rejection is not None:
                logger.info(
                    "transition_rejected case_id=%s from=%s to=%s kind=%s",
                    case_id,
                    current.value,
                    target.value,
                    rejection.kind.value,
                )
                return Rejected(rejection)

            now = self._clock().isoformat()
            record = None
            if data is not None:
                record = self._write_record(uow, case_id=case_id, kind=kind, data=data, now=now)
            case["current_state"] = target.value
            case["version"] = int(case.get("version", 1)) + 1
            case["updated_at"] = now
            updated = uow.cases.update(case=case)
            entry = self._audit.append(
                uow,
                case_id=case_id,
                action=action,
                change_type="transition",
                actor=actor,
                from_state=current,
                to_state=target,
                entity_kind=kind.value,
                entity_id=record["record_id"] if record else None,
                payload={"data": data} if data is not None else {},
                legal_basis=legal_basis or legal_basis_for(target),
            )
        logger.info(
            "case_transition case_id=%s from=%s to=%s actor=%s",
            case_id,
            current.value,
            target.value,
            actor.actor_id,
        )
        return Accepted({"case": updated, "record": record, "audit_id": entry["audit_id"], "transitioned": True})

    def _write_record(
        self,
        uow: Any,
        *,
        case_id: str,
        kind: StageKind,
        data: dict[str, Any],
        now: str,
    ) -> dict[str, Any]:
        if not stage_spec(kind).collection:
            existing = uow.records.list(case_id=case_id, kind=kind.value)
            if existing:
                record = {**existing[0], "data": data, "updated_at": now}
                return uow.records.update(record=record)
        record = {
            "record_id": f"rec_{uuid.uuid4().hex[:12]}",
            "case_id": case_id,
            "kind": kind.value,
            "data": data,
            "created_at": now,
            "updated_at": now,
        }
        return uow.records.insert(record=record)

    def _append(
        self,
        uow: Any,
        case: dict[str, Any],
        *,
        kind: StageKind,
        data: dict[str, Any],
        actor: Actor,
    ) -> dict[str, Any]:
        case_id = str(case["case_id"])
        current = CaseState(case["current_state"])
        record = self._write_record(uow, case_id=case_id, kind=kind, data=data, now=self._clock().isoformat())
        entry = self._audit.append(
            uow,
            case_id=case_id,
            action=f"add_{kind.value}",
            change_type="append",
            actor=actor,
            from_state=current,
            to_state=None,
            entity_kind=kind.value,
            entity_id=record["record_id"],
            payload={"data": data},
        )
        logger.info("stage_item_added case_id=%s kind=%s record_id=%s", case_id, kind.value, record["record_id"])
        return {"case": case, "record": record, "audit_id": entry["audit_id"], "transitioned": False}
