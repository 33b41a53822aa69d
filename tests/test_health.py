import pytest

from conftest import make_validator, make_score
from constants import DEFAULT_BLACKLIST_REASON
from health import (
    HEALTH_RULES,
    HealthContext,
    evaluate_health,
    apply_health,
    apply_blacklist,
    average_this_epoch_credits,
    build_blacklist,
)


@pytest.fixture
def ctx():
    return HealthContext(
        avg_this_epoch_credits=1000,
        max_commission=20,
        min_average_position=35.0,
        min_release_version="1.18.0",
    )


def test_rule_order():
    assert [rule.name for rule in HEALTH_RULES] == [
        "superminority",
        "commission",
        "no_credits",
        "stale_version",
        "severe_underproduction",
        "mild_underproduction",
        "average_position",
    ]


@pytest.mark.parametrize(
    "overrides,level,reason_part",
    [
        (dict(under_nakamoto_coefficient=True), 2, "superminority"),
        (dict(commission=21), 3, "Commission is over 20%"),
        (dict(credits_observed=0), 2, "No credits"),
        (dict(node_version="1.17.9"), 2, "older than 1.18.0"),
        (dict(node_version="garbage"), 2, "older than 1.18.0"),
        (dict(this_epoch_credits=799), 2, "79.90%"),
        (dict(this_epoch_credits=800), 1, "80.00%"),
        (dict(this_epoch_credits=899), 1, "below 90%"),
        (dict(average_position=34.9), 1, "Average position"),
        (dict(), 0, "healthy"),
    ],
)
def test_each_rung_of_the_ladder(ctx, overrides, level, reason_part):
    got_level, reason = evaluate_health(make_validator(**overrides), ctx)
    assert got_level == level
    assert reason_part in reason


def test_first_match_wins(ctx):
    # superminority, high commission and severe underproduction at once
    validator = make_validator(under_nakamoto_coefficient=True, commission=50, this_epoch_credits=10)
    level, reason = evaluate_health(validator, ctx)
    assert level == 2
    assert "superminority" in reason

    validator = make_validator(commission=50, credits_observed=0, this_epoch_credits=10)
    assert evaluate_health(validator, ctx)[0] == 3


def test_stale_version_ignored_without_minimum(ctx):
    no_minimum = HealthContext(avg_this_epoch_credits=1000, max_commission=20, min_average_position=35.0)
    assert evaluate_health(make_validator(node_version=""), no_minimum) == (0, "healthy")
    assert evaluate_health(make_validator(node_version=""), ctx)[0] == 2


def test_apply_health_severity(ctx):
    scores = [
        make_score(0, marinade_score=1001),
        make_score(1, marinade_score=1001, this_epoch_credits=850),
        make_score(2, marinade_score=1001, this_epoch_credits=100),
        make_score(3, marinade_score=1001, commission=100),
    ]
    result = apply_health(scores, ctx)
    assert [s.marinade_score for s in result] == [1001, 500, 0, 0]
    assert [s.remove_level for s in result] == [0, 1, 2, 3]
    assert [s.allow_listed for s in result] == [True, True, True, False]
    # inputs are untouched
    assert scores[1].marinade_score == 1001


def test_blacklist_overrides_a_perfect_profile(ctx):
    scores = apply_health([make_score(0, marinade_score=5000), make_score(1, marinade_score=5000)], ctx)
    result = apply_blacklist(scores, {"Node0000": "credits cheating"})
    assert result[0].blacklisted
    assert result[0].remove_level == 2
    assert result[0].marinade_score == 0
    assert result[0].remove_level_reason == "credits cheating"
    assert not result[1].blacklisted
    assert result[1].marinade_score == 5000


def test_blacklist_matches_vote_address(ctx):
    result = apply_blacklist([make_score(0, marinade_score=10)], {"Vote0000": "reason"})
    assert result[0].blacklisted


def test_blacklist_lowers_even_a_delisted_validator_to_level_two(ctx):
    scores = apply_health([make_score(0, marinade_score=10, commission=100)], ctx)
    assert scores[0].remove_level == 3
    assert apply_blacklist(scores, {"Node0000": "x"})[0].remove_level == 2


def test_empty_blacklist_is_a_no_op(ctx):
    scores = [make_score(0, marinade_score=10)]
    assert apply_blacklist(scores, None) == scores
    assert apply_blacklist(scores, {}) == scores


def test_build_blacklist():
    assert build_blacklist(["A", "B"]) == {"A": DEFAULT_BLACKLIST_REASON, "B": DEFAULT_BLACKLIST_REASON}
    assert build_blacklist({"A": "bad", "B": ""}) == {"A": "bad", "B": DEFAULT_BLACKLIST_REASON}
    assert build_blacklist(None) == {}


def test_average_this_epoch_credits_skips_zero_credit_validators():
    validators = [
        make_validator(0, this_epoch_credits=1000),
        make_validator(1, this_epoch_credits=2001),
        make_validator(2, this_epoch_credits=0),
    ]
    assert average_this_epoch_credits(validators) == 1500


def test_average_this_epoch_credits_without_producers():
    assert average_this_epoch_credits([make_validator(0, this_epoch_credits=0)]) == 0
    assert average_this_epoch_credits([]) == 0
