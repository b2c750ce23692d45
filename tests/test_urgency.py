import pytest

from syncjobs.v1.errors.urgency import (
    UrgencyInputs,
    calculate_urgency_score,
    level_for,
)


def test_no_errors_is_low():
    score = calculate_urgency_score(UrgencyInputs())

    assert score.score == 0
    assert score.level == "low"
    assert score.factors == ()
    assert score.requires_immediate_action is False


def test_none_inputs():
    assert calculate_urgency_score(None).score == 0


def test_bad_inputs_count_as_zero():
    score = calculate_urgency_score(
        UrgencyInputs(
            critical_errors="many",
            total_errors=float("nan"),
            time_range_hours=-5,
            by_category=["authentication"],
        )
    )

    assert score.score == 0
    assert score.level == "low"


def test_critical_points_are_capped():
    score = calculate_urgency_score(
        UrgencyInputs(critical_errors=10, total_errors=10, time_range_hours=24)
    )

    # 50 for critical errors, rate 0.4/hour adds nothing, volume needs > 10
    assert score.score == 50
    assert score.level == "medium"


def test_score_is_capped_at_100():
    score = calculate_urgency_score(
        UrgencyInputs(
            critical_errors=10,
            total_errors=100,
            time_range_hours=1,
            by_category={"authentication": 40, "quota": 30, "network": 30},
        )
    )

    assert score.score == 100
    assert score.level == "critical"
    assert score.requires_immediate_action is True


def test_failure_rate_uses_window_hours():
    elevated = calculate_urgency_score(
        UrgencyInputs(total_errors=3, time_range_hours=1)
    )
    high = calculate_urgency_score(UrgencyInputs(total_errors=6, time_range_hours=1))
    spread = calculate_urgency_score(
        UrgencyInputs(total_errors=6, time_range_hours=24)
    )

    assert elevated.score == 10
    assert high.score == 20
    assert spread.score == 0


def test_sub_hour_window_counts_as_one_hour():
    score = calculate_urgency_score(
        UrgencyInputs(total_errors=3, time_range_hours=0.25)
    )

    assert score.score == 10


def test_category_and_volume_bonuses():
    score = calculate_urgency_score(
        UrgencyInputs(
            total_errors=25,
            time_range_hours=168,
            by_category={"quota": 20, "network": 5},
        )
    )

    # quota 15 + network 10 + more than 20 errors 10
    assert score.score == 35
    assert "Quota errors present" in score.factors
    assert "More than 20 errors" in score.factors


@pytest.mark.parametrize(
    ("value", "level"),
    [(0, "low"), (29, "low"), (30, "medium"), (59, "medium"), (60, "high"), (80, "critical")],
)
def test_level_thresholds(value, level):
    assert level_for(value) == level


def test_immediate_action_at_80():
    score = calculate_urgency_score(
        UrgencyInputs(
            critical_errors=3,
            total_errors=3,
            time_range_hours=1,
            by_category={"authentication": 3},
        )
    )

    # 50 critical + 10 elevated rate + 20 authentication
    assert score.score == 80
    assert score.requires_immediate_action is True
    assert score.to_dict()["level"] == "critical"
