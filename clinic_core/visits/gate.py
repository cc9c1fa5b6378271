# clinic_core/visits/gate.py
"""
Stage gate: decides whether a visit may move along one edge of the station
graph. Reads the visit (and its prefetched stage records) and nothing else;
callers perform the mutation.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from clinic_core.common.exceptions import StageGuardViolation
from clinic_core.common.permissions import ROLE_ADMIN
from clinic_core.visits.constants import (
    ALLOWED_EDGES,
    LAB_DETOUR,
    OPEN_STAGE_STATUSES,
    STAGE_OWNER,
    OverallStatus,
    StageStatus,
)

logger = logging.getLogger(__name__)


class Unmet:
    VISIT_ACTIVE = "visit_active"
    VALID_EDGE = "valid_edge"
    CURRENT_STAGE = "current_stage"
    STAGE_COMPLETED = "stage_completed"
    STAGE_OPEN = "stage_open"
    ACTOR_ROLE = "actor_role"
    PAYMENT_SETTLEMENT = "payment_settlement"
    LAB_RESULTS_PENDING = "lab_results_pending"


@dataclass(frozen=True)
class GateResult:
    ok: bool
    reason: str = ""
    unmet: str = ""

    def __bool__(self) -> bool:
        return self.ok


ALLOWED = GateResult(ok=True)


def _deny(unmet: str, reason: str) -> GateResult:
    return GateResult(ok=False, reason=reason, unmet=unmet)


def actor_owns_stage(stage: str, actor_roles: Iterable[str]) -> bool:
    roles = set(actor_roles or ())
    return ROLE_ADMIN in roles or STAGE_OWNER.get(stage) in roles


def can_transition(visit, from_stage: str, to_stage: str, actor_roles: Iterable[str], *, completing: bool = False) -> GateResult:
    """
    A move is legal only when:
      (a) the visit is Active,
      (b) from_stage is the current stage and is Completed, or the caller
          completes it in the same operation (completing=True); the lab detour
          instead needs the Doctor stage to still be open,
      (c) the actor owns from_stage (ADMIN bypasses this check only).
    """
    if visit.overall_status != OverallStatus.ACTIVE:
        return _deny(Unmet.VISIT_ACTIVE, f"Visit is {visit.overall_status}.")

    if (from_stage, to_stage) not in ALLOWED_EDGES:
        return _deny(Unmet.VALID_EDGE, f"{from_stage} -> {to_stage} is not a valid transition.")

    if visit.current_stage != from_stage:
        return _deny(Unmet.CURRENT_STAGE, f"Visit is at {visit.current_stage}, not {from_stage}.")

    sub_status = visit.stage_status(from_stage)
    if (from_stage, to_stage) == LAB_DETOUR:
        if sub_status not in OPEN_STAGE_STATUSES:
            return _deny(Unmet.STAGE_OPEN, f"{from_stage} stage is not open.")
    elif sub_status != StageStatus.COMPLETED and not completing:
        return _deny(Unmet.STAGE_COMPLETED, f"{from_stage} stage is not completed.")

    if not actor_owns_stage(from_stage, actor_roles):
        return _deny(Unmet.ACTOR_ROLE, f"Only {STAGE_OWNER.get(from_stage)} can sign off the {from_stage} stage.")

    return ALLOWED


def enforce(visit, from_stage: str, to_stage: str, actor_roles: Iterable[str], *, completing: bool = False) -> None:
    result = can_transition(visit, from_stage, to_stage, actor_roles, completing=completing)
    if not result.ok:
        logger.info(
            "Stage guard rejected visit_id=%s %s->%s unmet=%s",
            visit.id, from_stage, to_stage, result.unmet,
        )
        raise StageGuardViolation(result.reason, unmet=result.unmet)
