import pytest

from constants import LAMPORTS_PER_SOL
from models import ValidatorRecord, ScoreRecord, ScoringParams


def make_validator(index: int = 0, **overrides) -> ValidatorRecord:
    """A healthy validator: 10% commission, average credits, current version."""
    fields = dict(
        identity=f"Node{index:04d}",
        vote_address=f"Vote{index:04d}",
        name=f"validator-{index}",
        commission=10,
        node_version="1.18.22",
        credits_observed=1000,
        this_epoch_credits=1000,
        average_position=50.0,
        active_stake=10_000 * LAMPORTS_PER_SOL,
        base_score=1000,
    )
    fields.update(overrides)
    return ValidatorRecord(**fields)


def make_score(index: int = 0, marinade_score: int = 0, **overrides) -> ScoreRecord:
    score_fields = {k: overrides.pop(k) for k in list(overrides) if k in ScoreRecord.__dataclass_fields__}
    return ScoreRecord(validator=make_validator(index, **overrides), marinade_score=marinade_score, **score_fields)


def healthy_cluster(n: int = 120, **overrides):
    return [make_validator(i, **overrides) for i in range(n)]


def relaxed_params(**overrides) -> ScoringParams:
    params = dict(min_positive_validators=1)
    params.update(overrides)
    return ScoringParams(**params)


@pytest.fixture
def cluster():
    return healthy_cluster()


@pytest.fixture
def params():
    return relaxed_params()
