from __future__ import annotations

from collections.abc import Collection

from procureflow.states import CaseState, ProcurementMethod, StageKind, stage_spec
from procureflow.transition_policy import TransitionPolicy


class RollbackResolver:
    """Works out where a case goes back to after a stage record is removed.

    Answers come from the method's canonical stage order. ``reached`` is the
    set of states still witnessed by stored records; stages outside it were
    skipped (for example an RFQ that went straight from DRAFT to RFQ_ISSUED)
    and are never chosen as a rollback target.
    """

    def __init__(self, policy: TransitionPolicy) -> None:
        self._policy = policy

    def previous_state(
        self,
        method: ProcurementMethod,
        state: CaseState,
        reached: Collection[CaseState] | None = None,
    ) -> CaseState | None:
        idx = self._policy.index_of(method, state)
        if not idx:
            return None
        for candidate in reversed(self._policy.sequence(method)[:idx]):
            if candidate is CaseState.DRAFT or reached is None or candidate in reached:
                return candidate
        return CaseState.DRAFT

    def rollback_target(
        self,
        method: ProcurementMethod,
        current: CaseState,
        deleted_kind: StageKind,
        reached: Collection[CaseState],
    ) -> CaseState:
        stage_state = stage_spec(deleted_kind).state
        current_idx = self._policy.index_of(method, current)
        stage_idx = self._policy.index_of(method, stage_state)
        if current_idx is None or stage_idx is None or current_idx < stage_idx:
            # The case never got as far as the deleted stage.
            return current
        if stage_state in reached:
            # Other items of the same collection still witness the stage.
            return stage_state
        previous = self.previous_state(method, stage_state, reached)
        return previous or CaseState.DRAFT
