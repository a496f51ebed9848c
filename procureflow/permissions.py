from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from types import MappingProxyType

from procureflow.states import StageKind


class Capability(StrEnum):
    VIEW = "view"
    CREATE = "create"
    EDIT = "edit"
    DELETE = "delete"
    ADMIN_OVERRIDE = "admin_override"


class Role(StrEnum):
    ADMIN = "ADMIN"
    PROCUREMENT_MANAGER = "PROCUREMENT_MANAGER"
    SUPPLY_MANAGER = "SUPPLY_MANAGER"
    BUDGET_MANAGER = "BUDGET_MANAGER"
    ACCOUNTING_MANAGER = "ACCOUNTING_MANAGER"
    CASHIER_MANAGER = "CASHIER_MANAGER"
    BAC_SECRETARIAT = "BAC_SECRETARIAT"
    TWG_MEMBER = "TWG_MEMBER"
    APPROVER = "APPROVER"


@dataclass(frozen=True)
class Actor:
    """Caller identity as resolved by the authentication layer."""

    actor_id: str
    role: str


_AUTHOR = (Capability.VIEW, Capability.CREATE, Capability.EDIT)


class PermissionMatrix:
    def __init__(self, grants: Mapping[str, Mapping[StageKind, Iterable[Capability]]]) -> None:
        frozen: dict[str, Mapping[StageKind, frozenset[Capability]]] = {}
        for role, per_kind in grants.items():
            frozen[str(role)] = MappingProxyType(
                {StageKind(kind): frozenset(Capability(c) for c in caps) for kind, caps in per_kind.items()}
            )
        self._grants = MappingProxyType(frozen)

    def capabilities(self, role: str, kind: StageKind) -> frozenset[Capability]:
        per_kind = self._grants.get(role)
        if per_kind is None:
            return frozenset()
        return per_kind.get(kind, frozenset())

    def can(self, role: str, kind: StageKind, capability: Capability) -> bool:
        # Unknown roles have no access.
        return capability in self.capabilities(role, kind)

    def roles_with(self, kind: StageKind, capability: Capability) -> list[str]:
        return sorted(role for role in self._grants if self.can(role, kind, capability))


def build_default_permissions() -> PermissionMatrix:
    k = StageKind
    grants: dict[str, dict[StageKind, Iterable[Capability]]] = {
        Role.ADMIN: {kind: tuple(Capability) for kind in StageKind},
        Role.PROCUREMENT_MANAGER: {
            k.POSTING: _AUTHOR,
            k.RFQ: _AUTHOR,
            k.QUOTATION: (*_AUTHOR, Capability.DELETE),
            k.ABSTRACT: _AUTHOR,
            k.CONTRACT: _AUTHOR,
            k.NTP: _AUTHOR,
            k.PROGRESS_BILLING: _AUTHOR,
            k.PMT_INSPECTION: _AUTHOR,
        },
        Role.BAC_SECRETARIAT: {
            k.POSTING: _AUTHOR,
            k.RFQ: _AUTHOR,
            k.QUOTATION: _AUTHOR,
            k.BID_BULLETIN: _AUTHOR,
            k.PRE_BID: _AUTHOR,
            k.BID: _AUTHOR,
            k.POST_QUALIFICATION: _AUTHOR,
            k.BAC_RESOLUTION: _AUTHOR,
            k.AWARD: _AUTHOR,
        },
        Role.SUPPLY_MANAGER: {
            k.DELIVERY: _AUTHOR,
            k.INSPECTION: _AUTHOR,
            k.ACCEPTANCE: _AUTHOR,
        },
        Role.BUDGET_MANAGER: {k.ORS: _AUTHOR},
        Role.ACCOUNTING_MANAGER: {k.DV: _AUTHOR},
        Role.CASHIER_MANAGER: {k.CHECK: _AUTHOR, k.CHECK_ADVICE: _AUTHOR},
        Role.TWG_MEMBER: {k.TWG: _AUTHOR},
        Role.APPROVER: {
            k.AWARD: _AUTHOR,
            k.PURCHASE_ORDER: _AUTHOR,
        },
    }
    return PermissionMatrix(grants)
