"""
Reward Rules Package

Provides the confidence router that decides between auto-approval and
manual review, and the reward calculator that prices and splits a receipt.
"""

from .calculator import (
    RewardConfig,
    RewardQuote,
    calculate_reward,
    split_reward,
)
from .router import (
    Route,
    RoutingDecision,
    ThresholdPolicy,
    DEFAULT_POLICY,
    route,
)

__all__ = [
    "RewardConfig",
    "RewardQuote",
    "calculate_reward",
    "split_reward",
    "Route",
    "RoutingDecision",
    "ThresholdPolicy",
    "DEFAULT_POLICY",
    "route",
]
