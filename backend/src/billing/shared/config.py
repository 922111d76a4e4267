"""
Billing Configuration

This module defines the subscription plans and the lifecycle windows used by
the access evaluator and the subscription service.

Usage:
    from backend.src.billing.shared.config import PLANS, get_plan

    plan = get_plan('monthly')
    print(plan.amount)  # 900 (paise)
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, List, Optional

from backend.core.conf import settings
from backend.src.billing.domain.user import PlanType


# =============================================================================
# LIFECYCLE WINDOWS
# =============================================================================
TRIAL_DURATION = timedelta(days=settings.TRIAL_DAYS)
PROCESSING_GRACE = timedelta(seconds=settings.PROCESSING_GRACE_SECONDS)
PAYMENT_PROCESSING_WINDOW = timedelta(seconds=settings.PAYMENT_PROCESSING_WINDOW_SECONDS)
RECENT_CREATE_WINDOW = timedelta(seconds=settings.RECENT_CREATE_WINDOW_SECONDS)

# Features granted while the trial runs
TRIAL_FEATURES = ('auto_scroll', 'analytics')


# =============================================================================
# PLAN DEFINITION
# =============================================================================
@dataclass(frozen=True)
class Plan:
    """
    Subscription plan configuration.

    Attributes:
        plan_type: monthly or yearly
        plan_id: Razorpay plan id the subscription is created against
        name: Human-readable name shown in UI
        amount: Price per billing cycle in the smallest currency unit
        currency: ISO currency code
        period: Razorpay period ('monthly' or 'yearly')
        interval: Number of periods per billing cycle
        total_count: Number of billing cycles the subscription runs for
        period_days: Fallback length of a billing cycle when the provider
            does not report current_end
    """
    plan_type: PlanType
    plan_id: str
    name: str
    amount: int
    currency: str
    period: str
    interval: int
    total_count: int
    period_days: int

    @property
    def display_amount(self) -> str:
        symbol = '₹' if self.currency == 'INR' else f'{self.currency} '
        value = self.amount / 100
        return f"{symbol}{value:g}"

    def to_dict(self) -> dict:
        return {
            'planType': self.plan_type.value,
            'planId': self.plan_id,
            'name': self.name,
            'amount': self.amount,
            'currency': self.currency,
            'period': self.period,
            'interval': self.interval,
            'totalCount': self.total_count,
            'displayAmount': self.display_amount,
        }


PLANS: Dict[PlanType, Plan] = {
    PlanType.MONTHLY: Plan(
        plan_type=PlanType.MONTHLY,
        plan_id=settings.RAZORPAY_PLAN_ID_MONTHLY,
        name='AutoScroll Premium Monthly',
        amount=settings.RAZORPAY_MONTHLY_AMOUNT,
        currency=settings.RAZORPAY_CURRENCY,
        period='monthly',
        interval=1,
        total_count=settings.RAZORPAY_MONTHLY_TOTAL_COUNT,
        period_days=30,
    ),
    PlanType.YEARLY: Plan(
        plan_type=PlanType.YEARLY,
        plan_id=settings.RAZORPAY_PLAN_ID_YEARLY,
        name='AutoScroll Premium Yearly',
        amount=settings.RAZORPAY_YEARLY_AMOUNT,
        currency=settings.RAZORPAY_CURRENCY,
        period='yearly',
        interval=1,
        total_count=settings.RAZORPAY_YEARLY_TOTAL_COUNT,
        period_days=365,
    ),
}


def get_plan(plan_type) -> Optional[Plan]:
    """Get a plan by its type ('monthly' / 'yearly' or PlanType)."""
    try:
        return PLANS[PlanType(plan_type)]
    except ValueError:
        return None


def get_plan_by_id(plan_id: Optional[str]) -> Optional[Plan]:
    """Get a plan by its Razorpay plan id."""
    if not plan_id:
        return None
    for plan in PLANS.values():
        if plan.plan_id == plan_id:
            return plan
    return None


def infer_plan_type(plan_id: Optional[str]) -> PlanType:
    """Derive the plan type from a plan id when it was not stored."""
    plan = get_plan_by_id(plan_id)
    if plan:
        return plan.plan_type
    if plan_id and 'yearly' in plan_id:
        return PlanType.YEARLY
    return PlanType.MONTHLY


def get_plan_catalogue() -> List[dict]:
    """Plans as shown to the client, with yearly savings against monthly billing."""
    monthly = PLANS[PlanType.MONTHLY]
    catalogue = []
    for plan in PLANS.values():
        entry = plan.to_dict()
        if plan.plan_type == PlanType.YEARLY:
            full_price = monthly.amount * 12
            saved = max(0, full_price - plan.amount)
            entry['savings'] = {
                'amount': saved,
                'percent': round(saved * 100 / full_price) if full_price else 0,
            }
        catalogue.append(entry)
    return catalogue
