"""
Access Module

Pure feature-gate decisions over a user record.

Usage:
    from backend.src.billing.access import evaluate_access

    decision = evaluate_access(record, now, feature='autoScroll')
"""

from .evaluator import (
    KNOWN_FEATURES,
    PREMIUM_FEATURE_NAMES,
    AccessDecision,
    AccessType,
    DenialReason,
    ProcessingView,
    build_processing_view,
    evaluate_access,
    in_processing_grace,
    subscription_active,
    trial_valid,
)

__all__ = [
    'AccessDecision',
    'AccessType',
    'DenialReason',
    'ProcessingView',
    'KNOWN_FEATURES',
    'PREMIUM_FEATURE_NAMES',
    'build_processing_view',
    'evaluate_access',
    'in_processing_grace',
    'subscription_active',
    'trial_valid',
]
