# kbase/core/billing/plans.py
"""Plan types, price lookup keys and default quotas."""

from typing import Dict, Tuple

from kbase.config import settings

FREE_PLAN = "free"
PAID_PLANS = ("plus", "pro")
INTERVALS = ("monthly", "yearly")
TIERS = ("t1", "t2")

ACTIVE_STATUS = "active"


def parse_lookup_key(lookup_key: str) -> Tuple[str, str]:
    """
    Split a price lookup key into (plan_type, interval).

    >>> parse_lookup_key("pro_monthly")
    ('pro', 'monthly')

    Raises:
        ValueError: If the key is not ``<plan>_<interval>`` for a known plan
    """
    plan_type, sep, interval = (lookup_key or "").partition("_")
    if not sep or plan_type not in PAID_PLANS or interval not in INTERVALS:
        raise ValueError(f"Unknown price lookup key: {lookup_key!r}")
    return plan_type, interval


def default_plan_quotas() -> Dict[str, Dict[str, int]]:
    """Quota rows written by ``kbase.commands.seed_plan_quotas``."""
    return {
        "free": {
            "t1_token_quota": settings.free_t1_token_quota,
            "t2_token_quota": settings.free_t2_token_quota,
        },
        "plus": {
            "t1_token_quota": settings.plus_t1_token_quota,
            "t2_token_quota": settings.plus_t2_token_quota,
        },
        "pro": {
            "t1_token_quota": settings.pro_t1_token_quota,
            "t2_token_quota": settings.pro_t2_token_quota,
        },
    }
