# tests/helpers.py
from clinic_core.common.permissions import (
    ROLE_ADMIN,
    ROLE_BILLING,
    ROLE_DOCTOR,
    ROLE_LAB,
    ROLE_NURSE,
    ROLE_PHARMACY,
    ROLE_RECEPTION,
)

RECEPTION = frozenset({ROLE_RECEPTION})
NURSE = frozenset({ROLE_NURSE})
DOCTOR = frozenset({ROLE_DOCTOR})
LAB = frozenset({ROLE_LAB})
PHARMACY = frozenset({ROLE_PHARMACY})
BILLING = frozenset({ROLE_BILLING})
ADMIN = frozenset({ROLE_ADMIN})

VITALS = {"bp_systolic": 120, "bp_diastolic": 80, "heart_rate": 72, "weight_kg": 70, "height_cm": 175}


def advance(visit_id, stage: str, roles, **payload):
    from clinic_core.visits.services import VisitService

    return VisitService.complete_stage(visit_id=visit_id, stage=stage, payload=payload, actor_roles=roles)


def error_code(resp) -> str:
    return resp.json()["error"]["code"]
