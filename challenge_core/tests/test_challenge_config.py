"""Tests for challenge day arithmetic and config validation."""

import logging
from datetime import date

import pytest

from challenge_core.core.config import Settings, validate_config
from challenge_core.core.errors import ValidationError
from challenge_core.features.challenge.config import (
    applies_to_day,
    date_for_day,
    day_for_date,
    effective_current_day,
    validate_day,
    week_of_day,
)
from challenge_core.models.challenge import ChallengeConfig, TaskDefinition


def _config(**overrides):
    values = {"id": 1, "current_day": 4, "total_days": 10, "start_date": date(2026, 3, 1)}
    values.update(overrides)
    return ChallengeConfig(**values)


def test_effective_day_derives_from_start_date():
    assert effective_current_day(_config(), today=date(2026, 3, 1)) == 1
    assert effective_current_day(_config(), today=date(2026, 3, 5)) == 5


def test_effective_day_is_clamped():
    assert effective_current_day(_config(), today=date(2026, 2, 20)) == 1
    assert effective_current_day(_config(), today=date(2026, 6, 1)) == 10


def test_effective_day_without_start_date_uses_stored_day():
    assert effective_current_day(_config(start_date=None, current_day=7)) == 7


def test_day_date_mapping():
    config = _config()
    assert date_for_day(config, 1) == date(2026, 3, 1)
    assert date_for_day(config, 3) == date(2026, 3, 3)
    assert day_for_date(config, date(2026, 3, 3)) == 3


@pytest.mark.parametrize("day,week", [(1, 1), (7, 1), (8, 2), (14, 2), (15, 3)])
def test_week_of_day(day, week):
    assert week_of_day(day) == week


def test_applies_to_day():
    everyday = TaskDefinition(id="a", name="A")
    week_two = TaskDefinition(id="b", name="B", week_numbers=[2])
    assert applies_to_day(everyday, 30)
    assert not applies_to_day(week_two, 7)
    assert applies_to_day(week_two, 8)


def test_validate_day_bounds():
    config = _config()
    assert validate_day(config, 10) == 10
    with pytest.raises(ValidationError):
        validate_day(config, 0)
    with pytest.raises(ValidationError):
        validate_day(config, 11)


def test_validate_config_warns_on_missing_keys(caplog):
    cfg = Settings(DATABASE_URL=None, ADMIN_KEY=None)
    logger = logging.getLogger("challenge.test")
    with caplog.at_level(logging.WARNING, logger="challenge.test"):
        assert validate_config(strict=False, settings_obj=cfg, logger=logger) is True
    assert "DATABASE_URL" in caplog.text
    assert "ADMIN_KEY" in caplog.text


def test_validate_config_strict_raises():
    cfg = Settings(DATABASE_URL="sqlite://", ADMIN_KEY="k", DAY_COMPLETION_RATIO=1.5)
    with pytest.raises(RuntimeError):
        validate_config(strict=True, settings_obj=cfg)
