"""
Subscription Endpoints

API endpoints for subscription management, feature access and usage.
"""

import logging
from typing import Dict, List, Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from backend.src.billing.domain.user import Feature
from .dependencies import get_current_user_id, get_subscription_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscription", tags=["billing-subscriptions"])


# ============================================================================
# Request Models
# ============================================================================

class CreateSubscriptionRequest(BaseModel):
    """Request for subscription creation."""
    plan_type: Literal['monthly', 'yearly'] = Field(alias='planType')

    model_config = {'populate_by_name': True}


class CancelSubscriptionRequest(BaseModel):
    """Request for subscription cancellation."""
    cancel_at_cycle_end: bool = Field(default=False, alias='cancelAtCycleEnd')

    model_config = {'populate_by_name': True}


class FeatureRequest(BaseModel):
    """Feature named as the client sends it (e.g. autoScroll)."""
    feature: str = Feature.AUTO_SCROLL.value


# ============================================================================
# Status & Access
# ============================================================================

@router.get("/status")
async def get_subscription_status(
    user_id: str = Depends(get_current_user_id),
    service=Depends(get_subscription_service),
) -> Dict:
    """Access decision, subscription mirror, processing view and plans."""
    return await service.get_status(user_id)


@router.post("/validate-access")
async def validate_access(
    request: Optional[FeatureRequest] = None,
    user_id: str = Depends(get_current_user_id),
    service=Depends(get_subscription_service),
) -> Dict:
    """
    Decide access to a feature.

    Recovers state from Razorpay before denying a user with a subscription;
    falls back to the local decision when Razorpay is unreachable.
    """
    feature = request.feature if request else Feature.AUTO_SCROLL.value
    return await service.validate_feature_access(user_id, feature)


@router.post("/usage")
async def record_usage(
    request: Optional[FeatureRequest] = None,
    user_id: str = Depends(get_current_user_id),
    service=Depends(get_subscription_service),
) -> Dict:
    """Count one use of a feature. Denied access returns 403."""
    feature = request.feature if request else Feature.AUTO_SCROLL.value
    return await service.record_usage(user_id, feature)


@router.get("/analytics")
async def get_usage_analytics(
    user_id: str = Depends(get_current_user_id),
    service=Depends(get_subscription_service),
) -> Dict:
    return await service.get_usage_analytics(user_id)


@router.get("/plans")
async def get_plans(service=Depends(get_subscription_service)) -> List[Dict]:
    return service.list_plans()


# ============================================================================
# Lifecycle
# ============================================================================

@router.post("/create")
async def create_subscription(
    request: CreateSubscriptionRequest,
    user_id: str = Depends(get_current_user_id),
    service=Depends(get_subscription_service),
) -> Dict:
    """
    Create a Razorpay subscription and return its payment link.

    Handles:
    - Trial users subscribing (trial stays active until activation)
    - Re-subscribing after cancellation or expiry
    - Duplicate clicks (409 with the existing payment link)
    """
    return await service.create_subscription(user_id, request.plan_type)


@router.post("/cancel")
async def cancel_subscription(
    request: Optional[CancelSubscriptionRequest] = None,
    user_id: str = Depends(get_current_user_id),
    service=Depends(get_subscription_service),
) -> Dict:
    """
    Cancel subscription.

    With cancelAtCycleEnd an active subscription keeps access until the end
    of the billing period.
    """
    at_cycle_end = request.cancel_at_cycle_end if request else False
    return await service.cancel_subscription(user_id, at_cycle_end)


@router.get("/pending-payment")
async def get_pending_payment(
    user_id: str = Depends(get_current_user_id),
    service=Depends(get_subscription_service),
) -> Dict:
    """Payment link of a subscription still waiting for payment."""
    return await service.get_pending_payment_link(user_id)


# ============================================================================
# Recovery
# ============================================================================

@router.post("/force-refresh")
async def force_refresh(
    user_id: str = Depends(get_current_user_id),
    service=Depends(get_subscription_service),
) -> Dict:
    """Reconcile the local record with Razorpay now."""
    return await service.force_refresh(user_id)


@router.post("/trigger-charge")
async def trigger_charge(
    user_id: str = Depends(get_current_user_id),
    service=Depends(get_subscription_service),
) -> Dict:
    """Charge the pending invoice of a subscription stuck in authenticated."""
    return await service.trigger_charge(user_id=user_id)


@router.post("/trial/initialize")
async def initialize_trial(
    user_id: str = Depends(get_current_user_id),
    service=Depends(get_subscription_service),
) -> Dict:
    """Start the trial for a user who never had one. Idempotent."""
    return await service.initialize_trial(user_id)
