"""Static catalog of purchasable plans."""
from __future__ import annotations

from typing import Dict, List, Optional

from .exceptions import ValidationError
from .models import BillingType, Plan

PRO_MONTHLY_CREDITS = 800

PLAN_CATALOG: Dict[str, Plan] = {
    "pro": Plan(
        id="pro",
        display_name="Pro Plan",
        price_minor_units=599,
        credit_grant=PRO_MONTHLY_CREDITS,
        description=f"Pro plan - {PRO_MONTHLY_CREDITS} credits every month",
        billing_type=BillingType.RECURRING,
    ),
    "credits_100": Plan(
        id="credits_100",
        display_name="100 Credits Pack",
        price_minor_units=99,
        credit_grant=100,
        description="One-time purchase of 100 credits",
        billing_type=BillingType.ONE_TIME,
    ),
    "credits_500": Plan(
        id="credits_500",
        display_name="500 Credits Pack",
        price_minor_units=399,
        credit_grant=500,
        description="One-time purchase of 500 credits",
        billing_type=BillingType.ONE_TIME,
    ),
}


def find_plan(plan_id: Optional[str]) -> Optional[Plan]:
    """Return the plan for ``plan_id`` or ``None`` when it is unknown."""

    if not plan_id:
        return None
    return PLAN_CATALOG.get(plan_id)


def get_plan(plan_id: Optional[str]) -> Plan:
    """Return a plan definition, raising :class:`ValidationError` if unsupported."""

    plan = find_plan(plan_id)
    if plan is None:
        raise ValidationError(
            code="unknown_plan",
            message=f"Unknown payment plan: {plan_id}",
            detail={"plan_id": plan_id},
        )
    return plan


def list_plans() -> List[Plan]:
    return list(PLAN_CATALOG.values())


def product_config_key(plan_id: str) -> str:
    """Environment suffix used for per-plan external product mappings."""

    return plan_id.upper()
