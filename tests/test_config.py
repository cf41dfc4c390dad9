from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import allure
import pytest

from jobtasks.config import OrderingSettings, Settings

pytestmark = [
    allure.epic("Task Ordering"),
    allure.feature("Configuration"),
]


def test_defaults_match_ordering_constants(monkeypatch) -> None:
    for name in (
        "JOBTASKS_DB_PATH",
        "JOBTASKS_POSITION_SPACING",
        "JOBTASKS_AUTO_REBALANCE",
        "JOBTASKS_ACTOR_ID",
        "JOBTASKS_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".jobtasks.db")
    assert settings.ordering.spacing == 10_000
    assert settings.ordering.rebalance_min_gap == 2
    assert settings.ordering.rebalance_max_gap_ratio == 100
    assert settings.ordering.rebalance_ceiling == 2_000_000_000
    assert settings.ordering.auto_rebalance is True
    assert settings.actor.actor_id == "default_user"
    assert settings.log_level == "WARNING"
    settings.validate()


def test_env_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("JOBTASKS_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("JOBTASKS_POSITION_SPACING", "100")
    monkeypatch.setenv("JOBTASKS_AUTO_REBALANCE", "off")
    monkeypatch.setenv("JOBTASKS_AUTO_REBALANCE_MIN_SIBLINGS", "4")
    monkeypatch.setenv("JOBTASKS_ACTOR_ID", "ops")
    monkeypatch.setenv("JOBTASKS_LOG_LEVEL", "debug")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "env.db"
    assert settings.ordering.spacing == 100
    assert settings.ordering.auto_rebalance is False
    assert settings.ordering.auto_rebalance_min_siblings == 4
    assert settings.actor.actor_id == "ops"
    assert settings.log_level == "DEBUG"


def test_explicit_db_path_wins_over_env(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("JOBTASKS_DB_PATH", str(tmp_path / "env.db"))

    assert Settings.from_env(db_path=tmp_path / "cli.db").db_path == tmp_path / "cli.db"


def test_invalid_boolean_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("JOBTASKS_AUTO_REBALANCE", "sometimes")

    with pytest.raises(ValueError, match="JOBTASKS_AUTO_REBALANCE"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(ordering=OrderingSettings(spacing=1)), "SPACING"),
        (Settings(ordering=OrderingSettings(rebalance_min_gap=0)), "MIN_GAP"),
        (Settings(ordering=OrderingSettings(rebalance_ceiling=5)), "CEILING"),
        (Settings(ordering=OrderingSettings(auto_rebalance_min_siblings=1)), "MIN_SIBLINGS"),
        (Settings(sqlite_busy_timeout_ms=0), "BUSY_TIMEOUT"),
        (Settings(log_level="LOUD"), "LOG_LEVEL"),
    ],
)
def test_validate_rejects_inconsistent_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_blank_actor_is_rejected() -> None:
    settings = Settings()
    settings = replace(settings, actor=replace(settings.actor, actor_id="  "))

    with pytest.raises(ValueError, match="ACTOR_ID"):
        settings.validate()
