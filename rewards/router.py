import json
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .calculator import category_key, match_category, normalize_category


# A score exactly at the threshold auto-approves (>=, not >).
AUTO_APPROVE_IS_INCLUSIVE = True

DEFAULT_THRESHOLD = 0.8


class Route(str, Enum):
    AUTO_APPROVE = "AUTO_APPROVE"
    MANUAL_REVIEW = "MANUAL_REVIEW"


@dataclass(frozen=True)
class RoutingDecision:
    route: Route
    category: str
    confidence: float
    threshold: float
    reason: str

    @property
    def auto_approved(self) -> bool:
        return self.route == Route.AUTO_APPROVE


@dataclass
class ThresholdPolicy:
    """Per-category auto-approval thresholds.

    Categories backed by authoritative providers (ride share companies, EV
    rental fleets, the large thrift chains) get a lower bar than the default.
    Public transit tickets vary too much between cities to trust the
    classifier on its own. A category missing from the table gets the
    strictest threshold in it.
    """
    default: float = DEFAULT_THRESHOLD
    thresholds: dict[str, float] = field(default_factory=lambda: {
        "ride_share": 0.7,
        "electric_vehicle": 0.7,
        "pre_owned": 0.7,
        "public_transit": 0.95,
        "transportation": DEFAULT_THRESHOLD,
        "used_books": DEFAULT_THRESHOLD,
        "sustainable_purchase": DEFAULT_THRESHOLD,
    })

    @property
    def strictest(self) -> float:
        return max([self.default, *self.thresholds.values()])

    def threshold_for(self, category: str) -> float:
        return self.thresholds.get(category, self.strictest)

    def to_dict(self) -> dict:
        return {"default": self.default, "thresholds": dict(self.thresholds)}

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_dict(cls, data: dict) -> "ThresholdPolicy":
        thresholds = {category_key(k): float(v) for k, v in data.get("thresholds", {}).items()}
        for category, value in thresholds.items():
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"Threshold for {category} out of range: {value}")
        return cls(default=float(data.get("default", DEFAULT_THRESHOLD)), thresholds=thresholds)


DEFAULT_POLICY = ThresholdPolicy()


def passes(confidence: float, threshold: float) -> bool:
    if AUTO_APPROVE_IS_INCLUSIVE:
        return confidence >= threshold
    return confidence > threshold


def route(confidence: float, category: Optional[str], policy: Optional[ThresholdPolicy] = None) -> RoutingDecision:
    policy = policy or DEFAULT_POLICY
    if confidence is None or math.isnan(confidence) or not 0.0 <= confidence <= 1.0:
        raise ValueError(f"Confidence must be within [0, 1], got {confidence}")

    key = category_key(category)
    if key in policy.thresholds:
        threshold = policy.thresholds[key]
    else:
        matched = match_category(category)
        key = matched or normalize_category(category)
        threshold = policy.threshold_for(matched) if matched else policy.strictest
    if passes(confidence, threshold):
        return RoutingDecision(Route.AUTO_APPROVE, key, confidence, threshold,
                               f"confidence {confidence} meets threshold {threshold}")
    return RoutingDecision(Route.MANUAL_REVIEW, key, confidence, threshold,
                           f"confidence {confidence} below threshold {threshold}")
