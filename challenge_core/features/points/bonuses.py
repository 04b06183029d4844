"""
Bonus rules applied by apply-mode audit.

- Weekly: each fully elapsed week whose seven days were all met earns
  WEEKLY_BONUS_POINTS once (``bonus:week:<n>``).
- Milestones: lifetime totals of 500/1000/2500/5000/10000 points earn
  100/150/250/500/1000 once each (``bonus:milestone:<level>``). The total is
  read once per pass, so a bonus only counts toward later milestones on the
  next pass.
"""
from __future__ import annotations

import logging
from typing import Iterable, List, Tuple

from challenge_core.core.config import settings
from challenge_core.core.database import get_db_session
from challenge_core.features.challenge.config import DAYS_PER_WEEK, days_of_week
from challenge_core.features.points.ledger import (
    append_entry,
    get_total_points,
    milestone_source_tag,
    weekly_source_tag,
)
from challenge_core.models.challenge import ChallengeConfig, LedgerEntry

logger = logging.getLogger("challenge")

MILESTONE_BONUSES: List[Tuple[int, int]] = [
    (500, 100),
    (1000, 150),
    (2500, 250),
    (5000, 500),
    (10000, 1000),
]


def completed_weeks(met_days: Iterable[int], current_day: int, total_days: int) -> List[int]:
    """Weeks that ended before ``current_day`` with every day met."""
    met = set(met_days)
    weeks = []
    week = 1
    while True:
        days = days_of_week(week)
        last_day = days[-1]
        if last_day >= current_day or last_day > total_days:
            break
        if all(day in met for day in days):
            weeks.append(week)
        week += 1
    return weeks


def award_weekly_bonuses(user_id: str, met_days: Iterable[int], current_day: int, config: ChallengeConfig) -> int:
    weeks = completed_weeks(met_days, current_day, config.total_days)
    if not weeks or settings.WEEKLY_BONUS_POINTS <= 0:
        return 0
    awarded = 0
    with get_db_session() as session:
        for week in weeks:
            if append_entry(
                session,
                LedgerEntry(
                    user_id=user_id,
                    amount=settings.WEEKLY_BONUS_POINTS,
                    source_tag=weekly_source_tag(week),
                    description=f"Weekly bonus: all {DAYS_PER_WEEK} days of week {week} completed",
                    challenge_day=days_of_week(week)[-1],
                ),
            ):
                awarded += 1
    return awarded


def award_milestone_bonuses(user_id: str) -> int:
    if not settings.MILESTONE_BONUSES_ENABLED:
        return 0
    awarded = 0
    with get_db_session() as session:
        total = get_total_points(user_id, session=session)
        for level, bonus in MILESTONE_BONUSES:
            if total < level:
                break
            if append_entry(
                session,
                LedgerEntry(
                    user_id=user_id,
                    amount=bonus,
                    source_tag=milestone_source_tag(level),
                    description=f"Milestone bonus for reaching {level} points",
                ),
            ):
                logger.info(f"bonus.milestone level={level} amount={bonus}", extra={"user_id": user_id})
                awarded += 1
    return awarded


def apply_bonus_rules(user_id: str, met_days: Iterable[int], current_day: int, config: ChallengeConfig) -> int:
    """Award any due weekly and milestone bonuses. Returns the number of new entries."""
    return award_weekly_bonuses(user_id, met_days, current_day, config) + award_milestone_bonuses(user_id)
