import re
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_DOWN
from typing import Optional

from pydantic import BaseModel, ConfigDict


# Flat per-category rewards in tokens. The purchase amount does not scale the
# reward: a $4 bus ticket and a $60 ride share earn their category's reward.
BASE_REWARDS: dict[str, Decimal] = {
    "ride_share": Decimal("5"),
    "electric_vehicle": Decimal("6"),
    "public_transit": Decimal("3"),
    "transportation": Decimal("2"),
    "pre_owned": Decimal("2"),
    "used_books": Decimal("1"),
}
FALLBACK_CATEGORY = "sustainable_purchase"
FALLBACK_REWARD = Decimal("1")

STREAK_STEP = Decimal("0.1")
STREAK_CAP = Decimal("2.0")
USER_RATIO = Decimal("0.7")
TOKEN_PRECISION = Decimal("0.01")

# Provider keywords, checked in order; first match wins.
CATEGORY_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("ride_share", ("ride_share", "rideshare", "uber", "lyft", "waymo")),
    ("electric_vehicle", ("electric", "tesla", "zipcar", "hybrid", "ev_rental")),
    ("public_transit", ("public_transit", "transit", "bus", "metro", "subway", "train", "rail")),
    ("transportation", ("transportation", "bike", "scooter")),
    ("pre_owned", ("pre_owned", "thrift", "gamestop", "goodwill")),
    ("used_books", ("used_books", "book")),
]


@dataclass
class RewardConfig:
    base_rewards: dict[str, Decimal] = field(default_factory=lambda: dict(BASE_REWARDS))
    fallback_reward: Decimal = FALLBACK_REWARD
    streak_step: Decimal = STREAK_STEP
    streak_cap: Decimal = STREAK_CAP
    user_ratio: Decimal = USER_RATIO
    precision: Decimal = TOKEN_PRECISION


class RewardQuote(BaseModel):
    category: str
    purchase_amount: Decimal
    base_reward: Decimal
    streak: int
    streak_multiplier: Decimal
    total_reward: Decimal
    user_portion: Decimal
    app_fund_portion: Decimal
    user_ratio: Decimal

    model_config = ConfigDict(frozen=True)


def category_key(raw: Optional[str]) -> str:
    """Lower-case ``raw`` and join its words with underscores ("Ride Share" -> "ride_share")."""
    if not raw:
        return ""
    return "_".join(re.findall(r"[a-z0-9]+", raw.lower()))


def _word_matches(word: str, keyword: str) -> bool:
    return word in (keyword, keyword + "s", keyword + "es")


def _contains_keyword(words: list[str], keyword: str) -> bool:
    phrase = keyword.split("_")
    size = len(phrase)
    return any(
        all(_word_matches(w, k) for w, k in zip(words[i:i + size], phrase))
        for i in range(len(words) - size + 1)
    )


def match_category(raw: Optional[str]) -> Optional[str]:
    """Return the reward table key for ``raw``, or None when nothing matches.

    Keywords match whole words only, so "business" is not a bus ticket.
    """
    key = category_key(raw)
    if not key:
        return None
    if key in BASE_REWARDS or key == FALLBACK_CATEGORY:
        return key
    words = key.split("_")
    for category, keywords in CATEGORY_KEYWORDS:
        if any(_contains_keyword(words, k) for k in keywords):
            return category
    return None


def normalize_category(raw: Optional[str]) -> str:
    """Map a classifier category or provider name onto a reward table key.

    Anything unrecognised becomes ``sustainable_purchase`` and earns the
    fallback reward.
    """
    return match_category(raw) or FALLBACK_CATEGORY


def streak_multiplier(streak: int, config: Optional[RewardConfig] = None) -> Decimal:
    config = config or RewardConfig()
    if streak < 0:
        raise ValueError(f"Streak cannot be negative: {streak}")
    return min(Decimal(1) + Decimal(streak) * config.streak_step, config.streak_cap)


def split_reward(total: Decimal, config: Optional[RewardConfig] = None) -> tuple[Decimal, Decimal]:
    """Split ``total`` into (user, app_fund) so the parts sum to it exactly.

    Both parts are floored to the token precision; whatever is left over goes
    to the larger part.
    """
    config = config or RewardConfig()
    user = (total * config.user_ratio).quantize(config.precision, rounding=ROUND_DOWN)
    app_fund = (total * (Decimal(1) - config.user_ratio)).quantize(config.precision, rounding=ROUND_DOWN)
    remainder = total - user - app_fund
    if user >= app_fund:
        user += remainder
    else:
        app_fund += remainder
    return user, app_fund


def calculate_reward(
    purchase_amount: Decimal,
    category: Optional[str],
    user_streak: int,
    config: Optional[RewardConfig] = None,
) -> RewardQuote:
    config = config or RewardConfig()
    purchase_amount = Decimal(str(purchase_amount))
    if purchase_amount < 0:
        raise ValueError(f"Purchase amount cannot be negative: {purchase_amount}")

    key = normalize_category(category)
    base = config.base_rewards.get(key, config.fallback_reward)
    multiplier = streak_multiplier(user_streak, config)
    total = (base * multiplier).quantize(config.precision, rounding=ROUND_DOWN)
    user, app_fund = split_reward(total, config)

    return RewardQuote(
        category=key,
        purchase_amount=purchase_amount,
        base_reward=base,
        streak=user_streak,
        streak_multiplier=multiplier,
        total_reward=total,
        user_portion=user,
        app_fund_portion=app_fund,
        user_ratio=config.user_ratio,
    )
