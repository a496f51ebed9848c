from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from types import MappingProxyType

from procureflow.results import Rejection, RejectionKind
from procureflow.states import CaseState, ProcurementMethod

S = CaseState


@dataclass(frozen=True)
class MethodGraph:
    """Allowed moves for one procurement method.

    ``sequence`` is the canonical stage order for the method. Every edge must
    point forward in it, so "comes after" questions (downstream data, rollback)
    are answered from the sequence alone.
    """

    method: ProcurementMethod
    edges: Mapping[CaseState, frozenset[CaseState]]
    sequence: tuple[CaseState, ...]

    @classmethod
    def build(
        cls,
        method: ProcurementMethod,
        edges: Mapping[CaseState, Iterable[CaseState]],
        sequence: Iterable[CaseState],
    ) -> "MethodGraph":
        return cls(
            method=method,
            edges=MappingProxyType({state: frozenset(targets) for state, targets in edges.items()}),
            sequence=tuple(sequence),
        )


def _validate_graph(graph: MethodGraph) -> None:
    name = graph.method.value
    sequence = graph.sequence
    if len(set(sequence)) != len(sequence):
        raise ValueError(f"{name}: stage sequence repeats a state")
    if not sequence or sequence[0] is not S.DRAFT or sequence[-1] is not S.CLOSED:
        raise ValueError(f"{name}: stage sequence must run from DRAFT to CLOSED")
    position = {state: idx for idx, state in enumerate(sequence)}
    for source, targets in graph.edges.items():
        if source not in position:
            raise ValueError(f"{name}: {source} has edges but is not in the stage sequence")
        for target in targets:
            if target not in position:
                raise ValueError(f"{name}: {source} -> {target} leaves the stage sequence")
            if position[target] <= position[source]:
                raise ValueError(f"{name}: {source} -> {target} points backwards")
    for state in sequence:
        outgoing = graph.edges.get(state, frozenset())
        if state is S.CLOSED and outgoing:
            raise ValueError(f"{name}: CLOSED must be terminal")
        if state is not S.CLOSED and not outgoing:
            raise ValueError(f"{name}: {state} is a dead end")

    seen = {S.DRAFT}
    queue = deque([S.DRAFT])
    while queue:
        for target in graph.edges.get(queue.popleft(), frozenset()):
            if target not in seen:
                seen.add(target)
                queue.append(target)
    unreachable = [state.value for state in sequence if state not in seen]
    if unreachable:
        raise ValueError(f"{name}: unreachable states {unreachable}")


class TransitionPolicy:
    """Per-method transition graphs plus the canonical stage order.

    Instances are immutable. Build one with ``build_default_policy`` or pass
    custom graphs (tests do); construction rejects malformed tables.
    """

    def __init__(self, graphs: Iterable[MethodGraph]) -> None:
        by_method: dict[ProcurementMethod, MethodGraph] = {}
        for graph in graphs:
            _validate_graph(graph)
            by_method[graph.method] = graph
        missing = [m.value for m in ProcurementMethod if m not in by_method]
        if missing:
            raise ValueError(f"no transition graph for methods: {missing}")
        self._graphs: Mapping[ProcurementMethod, MethodGraph] = MappingProxyType(by_method)
        self._positions = MappingProxyType(
            {
                method: MappingProxyType({state: idx for idx, state in enumerate(graph.sequence)})
                for method, graph in by_method.items()
            }
        )

    def allowed(self, method: ProcurementMethod, state: CaseState) -> frozenset[CaseState]:
        return self._graphs[method].edges.get(state, frozenset())

    def check(
        self,
        method: ProcurementMethod,
        current: CaseState,
        target: CaseState,
    ) -> Rejection | None:
        allowed = self.allowed(method, current)
        if target in allowed:
            return None
        return Rejection(
            kind=RejectionKind.TRANSITION_NOT_ALLOWED,
            message=f"transition not allowed: {current.value} -> {target.value}",
            details={
                "method": method.value,
                "from_state": current.value,
                "attempted": target.value,
                "allowed": sorted(state.value for state in allowed),
            },
        )

    def sequence(self, method: ProcurementMethod) -> tuple[CaseState, ...]:
        return self._graphs[method].sequence

    def index_of(self, method: ProcurementMethod, state: CaseState) -> int | None:
        return self._positions[method].get(state)

    def states_after(self, method: ProcurementMethod, state: CaseState) -> tuple[CaseState, ...]:
        idx = self.index_of(method, state)
        if idx is None:
            return ()
        return self.sequence(method)[idx + 1 :]

    def is_terminal(self, method: ProcurementMethod, state: CaseState) -> bool:
        return not self.allowed(method, state)


_SHARED_TAIL: dict[CaseState, set[CaseState]] = {
    S.DELIVERY: {S.INSPECTION},
    S.INSPECTION: {S.ACCEPTANCE},
    S.ACCEPTANCE: {S.ORS},
    S.ORS: {S.DV},
    S.DV: {S.CHECK},
    S.CHECK: {S.CLOSED},
    S.CLOSED: set(),
}

_AWARD_TO_NTP: dict[CaseState, set[CaseState]] = {
    S.BAC_RESOLUTION: {S.AWARDED},
    S.AWARDED: {S.PO_APPROVED},
    S.PO_APPROVED: {S.CONTRACT_SIGNED},
    S.CONTRACT_SIGNED: {S.NTP_ISSUED},
}

_BIDDING_HEAD: dict[CaseState, set[CaseState]] = {
    S.DRAFT: {S.POSTING},
    S.POSTING: {S.BID_BULLETIN, S.PRE_BID_CONF, S.BID_SUBMISSION_OPENING},
    S.BID_BULLETIN: {S.PRE_BID_CONF, S.BID_SUBMISSION_OPENING},
    S.PRE_BID_CONF: {S.BID_SUBMISSION_OPENING},
    S.BID_SUBMISSION_OPENING: {S.TWG_EVALUATION},
    S.TWG_EVALUATION: {S.POST_QUALIFICATION},
    S.POST_QUALIFICATION: {S.BAC_RESOLUTION},
    **_AWARD_TO_NTP,
}

_BIDDING_SEQUENCE_HEAD = (
    S.DRAFT,
    S.POSTING,
    S.BID_BULLETIN,
    S.PRE_BID_CONF,
    S.BID_SUBMISSION_OPENING,
    S.TWG_EVALUATION,
    S.POST_QUALIFICATION,
    S.BAC_RESOLUTION,
    S.AWARDED,
    S.PO_APPROVED,
    S.CONTRACT_SIGNED,
    S.NTP_ISSUED,
)

_TAIL_SEQUENCE = (S.DELIVERY, S.INSPECTION, S.ACCEPTANCE, S.ORS, S.DV, S.CHECK, S.CLOSED)


def build_default_policy() -> TransitionPolicy:
    small_value = MethodGraph.build(
        ProcurementMethod.SMALL_VALUE_RFQ,
        {
            S.DRAFT: {S.POSTING, S.RFQ_ISSUED},
            S.POSTING: {S.RFQ_ISSUED},
            S.RFQ_ISSUED: {S.QUOTATION_COLLECTION, S.ABSTRACT_OF_QUOTATIONS},
            S.QUOTATION_COLLECTION: {S.ABSTRACT_OF_QUOTATIONS},
            S.ABSTRACT_OF_QUOTATIONS: {S.BAC_RESOLUTION},
            **_AWARD_TO_NTP,
            S.NTP_ISSUED: {S.DELIVERY},
            **_SHARED_TAIL,
        },
        (
            S.DRAFT,
            S.POSTING,
            S.RFQ_ISSUED,
            S.QUOTATION_COLLECTION,
            S.ABSTRACT_OF_QUOTATIONS,
            S.BAC_RESOLUTION,
            S.AWARDED,
            S.PO_APPROVED,
            S.CONTRACT_SIGNED,
            S.NTP_ISSUED,
            *_TAIL_SEQUENCE,
        ),
    )
    public_bidding = MethodGraph.build(
        ProcurementMethod.PUBLIC_BIDDING,
        {**_BIDDING_HEAD, S.NTP_ISSUED: {S.DELIVERY}, **_SHARED_TAIL},
        (*_BIDDING_SEQUENCE_HEAD, *_TAIL_SEQUENCE),
    )
    # Infrastructure replaces delivery/inspection with billing and PMT inspection.
    infra_tail = {key: value for key, value in _SHARED_TAIL.items() if key not in {S.DELIVERY, S.INSPECTION}}
    infrastructure = MethodGraph.build(
        ProcurementMethod.INFRASTRUCTURE,
        {
            **_BIDDING_HEAD,
            S.NTP_ISSUED: {S.PROGRESS_BILLING},
            S.PROGRESS_BILLING: {S.PMT_INSPECTION},
            S.PMT_INSPECTION: {S.ACCEPTANCE},
            **infra_tail,
        },
        (*_BIDDING_SEQUENCE_HEAD, S.PROGRESS_BILLING, S.PMT_INSPECTION, *_TAIL_SEQUENCE[2:]),
    )
    return TransitionPolicy([small_value, public_bidding, infrastructure])
