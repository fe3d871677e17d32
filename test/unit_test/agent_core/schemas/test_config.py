from __future__ import annotations

import math

import pytest

from webpilot_ai.agent_core.schemas.config import (
    SETTINGS_BOUNDS,
    AgentPlanPreferences,
    AgentPlanSettings,
    clamp_int,
)


def test_defaults() -> None:
    settings = AgentPlanSettings.resolve(None)
    assert settings.max_steps == 12
    assert settings.max_step_attempts == 2
    assert settings.max_replan_calls == 2
    assert settings.replan_every_steps == 2
    assert settings.max_self_checks == 4
    assert settings.loop_guard_threshold == 2
    assert settings.loop_backoff_base_ms == 2000
    assert settings.loop_backoff_max_ms == 12000


@pytest.mark.parametrize(
    "value, expected",
    [
        (7, 7),
        (0, 1),
        (50, 20),
        (3.5, 4),
        (2.5, 3),
        ("9", 9),
        (" 4 ", 4),
        ("", 12),
        ("many", 12),
        (None, 12),
        (True, 12),
        (math.nan, 12),
        (math.inf, 12),
    ],
)
def test_max_steps_clamping(value, expected: int) -> None:
    assert AgentPlanSettings.resolve({"maxSteps": value}).max_steps == expected


def test_every_field_is_clamped_into_its_range() -> None:
    low = AgentPlanSettings.model_validate({name: -1_000_000 for name in SETTINGS_BOUNDS})
    high = AgentPlanSettings.model_validate({name: 1_000_000 for name in SETTINGS_BOUNDS})
    for name, (minimum, maximum, _) in SETTINGS_BOUNDS.items():
        assert getattr(low, name) == minimum
        if name != "loop_backoff_max_ms":
            assert getattr(high, name) == maximum


def test_backoff_ceiling_never_below_base() -> None:
    settings = AgentPlanSettings.resolve({"loopBackoffBaseMs": 15000, "loopBackoffMaxMs": 1000})
    assert settings.loop_backoff_base_ms == 15000
    assert settings.loop_backoff_max_ms == 15000


def test_unknown_keys_are_ignored() -> None:
    assert AgentPlanSettings.resolve({"maxSteps": 3, "turbo": True}).max_steps == 3


def test_clamp_int_half_up() -> None:
    assert clamp_int(0.5, 0, 10, 7) == 1
    assert clamp_int(-0.5, -10, 10, 7) == 0


def test_preferences_normalize_model_names() -> None:
    prefs = AgentPlanPreferences.resolve(
        {"plannerModel": "  big-model ", "selfCheckModel": "   ", "loopGuardModel": 42, "requireHumanApproval": "yes"}
    )
    assert prefs.planner_model == "big-model"
    assert prefs.self_check_model is None
    assert prefs.loop_guard_model is None
    assert prefs.require_human_approval is True
    assert prefs.ignore_robots_txt is False


def test_preferences_resolve_non_mapping() -> None:
    assert AgentPlanPreferences.resolve("nope") == AgentPlanPreferences()
