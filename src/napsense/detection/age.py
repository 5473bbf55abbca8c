"""Per-age-bracket detection defaults and the persisted bracket selection."""

from __future__ import annotations

import logging
from datetime import date
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from napsense.detection.store import KeyValueStore

logger = logging.getLogger(__name__)

AGE_BRACKET_KEY = "user_age_bracket"


class AgeBracket(str, Enum):
    """Wearer age bracket."""

    TEEN = "teen"  # 0-17
    ADULT = "adult"  # 18-59
    SENIOR = "senior"  # 60+

    @property
    def default_ratio(self) -> float:
        """Fraction of resting HR below which HR counts as sleep evidence."""
        return _DEFAULT_RATIOS[self]

    @property
    def min_qualifying_seconds(self) -> int:
        """How long low HR must hold before it qualifies as sleep onset."""
        return _MIN_QUALIFYING_SECONDS[self]

    @classmethod
    def for_age(cls, age: int) -> AgeBracket:
        if age < 18:
            return cls.TEEN
        if age < 60:
            return cls.ADULT
        return cls.SENIOR


_DEFAULT_RATIOS = {
    AgeBracket.TEEN: 0.875,
    AgeBracket.ADULT: 0.9,
    AgeBracket.SENIOR: 0.935,
}

_MIN_QUALIFYING_SECONDS = {
    AgeBracket.TEEN: 120,
    AgeBracket.ADULT: 180,
    AgeBracket.SENIOR: 240,
}


def default_ratio(bracket: AgeBracket) -> float:
    return bracket.default_ratio


def min_qualifying_seconds(bracket: AgeBracket) -> int:
    return bracket.min_qualifying_seconds


def bracket_for_age(age: int) -> AgeBracket:
    """Map an age in years onto its bracket: [0,18) teen, [18,60) adult, 60+ senior."""
    return AgeBracket.for_age(age)


def age_from_birth_date(birth: date, today: date | None = None) -> int:
    """Whole years between *birth* and *today*."""
    today = today or date.today()
    years = today.year - birth.year
    if (today.month, today.day) < (birth.month, birth.day):
        years -= 1
    return max(years, 0)


def bracket_for_birth_date(birth: date, today: date | None = None) -> AgeBracket:
    return bracket_for_age(age_from_birth_date(birth, today))


# ---------------------------------------------------------------------------
# Persisted selection
# ---------------------------------------------------------------------------


def load_age_bracket(store: KeyValueStore) -> AgeBracket:
    """Return the stored bracket, falling back to adult."""
    raw = store.get(AGE_BRACKET_KEY)
    if raw is None:
        return AgeBracket.ADULT
    try:
        return AgeBracket(raw)
    except ValueError:
        logger.warning("Ignoring unknown stored age bracket %r", raw)
        return AgeBracket.ADULT


def save_age_bracket(store: KeyValueStore, bracket: AgeBracket) -> None:
    store.set(AGE_BRACKET_KEY, bracket.value)
