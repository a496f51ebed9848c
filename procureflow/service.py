from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal

from procureflow.audit import AuditLog
from procureflow.config import WorkflowConfig
from procureflow.executor import TransitionExecutor
from procureflow.lifecycle import lifecycle_summary
from procureflow.mutation_guard import MutationDecision, MutationGuard
from procureflow.notifications import OverrideNotifier, build_override_notifier
from procureflow.permissions import Actor, Capability, PermissionMatrix, build_default_permissions
from procureflow.prerequisites import PrerequisiteValidator
from procureflow.reports import REPORT_VIEWER_ROLES, build_workflow_report, created_in_year
from procureflow.results import Accepted, Outcome, RejectionKind, reject
from procureflow.rollback import RollbackResolver
from procureflow.states import CaseState, ProcurementMethod, StageKind
from procureflow.transition_policy import TransitionPolicy, build_default_policy

if TYPE_CHECKING:
    from procureflow.store import CaseStore


@dataclass
class CaseWorkflow:
    """Facade over the engine components sharing one store."""

    store: CaseStore
    policy: TransitionPolicy
    permissions: PermissionMatrix
    audit_log: AuditLog
    executor: TransitionExecutor
    guard: MutationGuard
    resolver: RollbackResolver
    config: WorkflowConfig

    # -- commands --------------------------------------------------------

    def create_case(
        self,
        *,
        title: str,
        method: ProcurementMethod,
        actor: Actor,
        description: str | None = None,
        estimated_budget: float | None = None,
    ) -> dict[str, Any]:
        return self.executor.create_case(
            title=title,
            method=method,
            actor=actor,
            description=description,
            estimated_budget=estimated_budget,
        )

    def perform(
        self,
        case_id: str,
        kind: StageKind,
        payload: dict[str, Any] | None,
        *,
        actor: Actor,
        idempotency_token: str | None = None,
    ) -> Outcome[dict[str, Any]]:
        return self.executor.record(case_id, kind, payload, actor=actor, idempotency_token=idempotency_token)

    def transition(
        self,
        case_id: str,
        target: CaseState,
        payload: dict[str, Any] | None,
        *,
        actor: Actor,
        idempotency_token: str | None = None,
        legal_basis: str | None = None,
    ) -> Outcome[dict[str, Any]]:
        return self.executor.execute(
            case_id,
            target,
            payload,
            actor=actor,
            idempotency_token=idempotency_token,
            legal_basis=legal_basis,
        )

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
        return self.guard.edit(case_id, kind, record_id, payload, actor=actor, reason=reason)

    def delete(
        self,
        case_id: str,
        kind: StageKind,
        record_id: str | None,
        *,
        actor: Actor,
        reason: str,
    ) -> Outcome[dict[str, Any]]:
        return self.guard.delete(case_id, kind, record_id, actor=actor, reason=reason)

    def validate_edit(self, case_id: str, kind: StageKind, role: str) -> MutationDecision:
        return self.guard.validate_edit(case_id, kind, role)

    def validate_delete(self, case_id: str, kind: StageKind, role: str) -> MutationDecision:
        return self.guard.validate_delete(case_id, kind, role)

    # -- queries ---------------------------------------------------------

    def get_case(self, case_id: str) -> Outcome[dict[str, Any]]:
        with self.store.transaction(case_id) as uow:
            case = uow.cases.get(case_id=case_id)
        if case is None:
            return reject(RejectionKind.NOT_FOUND, f"case not found: {case_id}", case_id=case_id)
        return Accepted(case)

    def list_cases(
        self,
        *,
        state: CaseState | None = None,
        method: ProcurementMethod | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        with self.store.transaction() as uow:
            return uow.cases.list(
                state=state.value if state else None,
                method=method.value if method else None,
                limit=limit,
                offset=offset,
            )

    def list_records(self, case_id: str, kind: StageKind, *, actor: Actor) -> Outcome[list[dict[str, Any]]]:
        kind = StageKind(kind)
        if not self.permissions.can(actor.role, kind, Capability.VIEW):
            return reject(
                RejectionKind.PERMISSION_DENIED,
                f"Role {actor.role} cannot view {kind.value}",
                required=Capability.VIEW.value,
            )
        with self.store.transaction(case_id) as uow:
            if uow.cases.get(case_id=case_id) is None:
                return reject(RejectionKind.NOT_FOUND, f"case not found: {case_id}", case_id=case_id)
            return Accepted(uow.records.list(case_id=case_id, kind=kind.value))

    def timeline(self, case_id: str, *, order: Literal["asc", "desc"] = "asc") -> Outcome[list[dict[str, Any]]]:
        with self.store.transaction(case_id) as uow:
            if uow.cases.get(case_id=case_id) is None:
                return reject(RejectionKind.NOT_FOUND, f"case not found: {case_id}", case_id=case_id)
            return Accepted(self.audit_log.list_for_case(uow, case_id, order=order))

    def lifecycle(self, case_id: str) -> Outcome[dict[str, Any]]:
        with self.store.transaction(case_id) as uow:
            case = uow.cases.get(case_id=case_id)
            if case is None:
                return reject(RejectionKind.NOT_FOUND, f"case not found: {case_id}", case_id=case_id)
            records = uow.records.list(case_id=case_id)
            audit = self.audit_log.list_for_case(uow, case_id)
        return Accepted(lifecycle_summary(case, records, audit, policy=self.policy))

    def verify_audit(self, case_id: str) -> Outcome[dict[str, Any]]:
        with self.store.transaction(case_id) as uow:
            if uow.cases.get(case_id=case_id) is None:
                return reject(RejectionKind.NOT_FOUND, f"case not found: {case_id}", case_id=case_id)
            return Accepted(self.audit_log.verify_integrity(uow, case_id))

    def workflow_report(self, year: int, *, actor: Actor, page_size: int = 500) -> Outcome[dict[str, Any]]:
        if actor.role not in REPORT_VIEWER_ROLES:
            return reject(
                RejectionKind.PERMISSION_DENIED,
                f"Role {actor.role} cannot view the workflow report",
                allowed_roles=sorted(REPORT_VIEWER_ROLES),
            )
        cases: list[dict[str, Any]] = []
        with self.store.transaction() as uow:
            offset = 0
            while True:
                page = uow.cases.list(limit=page_size, offset=offset)
                cases.extend(case for case in page if created_in_year(case, year))
                if len(page) < page_size:
                    break
                offset += page_size
            records = {str(case["case_id"]): uow.records.list(case_id=str(case["case_id"])) for case in cases}
        return Accepted(build_workflow_report(cases, records, year=year))


def build_workflow(
    *,
    store: CaseStore,
    config: WorkflowConfig | None = None,
    policy: TransitionPolicy | None = None,
    permissions: PermissionMatrix | None = None,
    notifier: OverrideNotifier | None = None,
) -> CaseWorkflow:
    config = config or WorkflowConfig.from_env()
    policy = policy or build_default_policy()
    permissions = permissions or build_default_permissions()
    audit_log = AuditLog()
    resolver = RollbackResolver(policy)
    executor = TransitionExecutor(
        store=store,
        policy=policy,
        validator=PrerequisiteValidator(min_quotations=config.min_quotations),
        audit_log=audit_log,
        permissions=permissions,
        config=config,
    )
    guard = MutationGuard(
        store=store,
        policy=policy,
        permissions=permissions,
        resolver=resolver,
        audit_log=audit_log,
        notifier=notifier or build_override_notifier(config),
        config=config,
    )
    return CaseWorkflow(
        store=store,
        policy=policy,
        permissions=permissions,
        audit_log=audit_log,
        executor=executor,
        guard=guard,
        resolver=resolver,
        config=config,
    )
