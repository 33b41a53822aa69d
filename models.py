from dataclasses import dataclass, field, asdict
from typing import Dict, Any, List, Optional

from constants import (
    HEALTHY_VALIDATOR_MAX_COMMISSION,
    MIN_AVERAGE_POSITION,
    MIN_RELEASE_VERSION,
    QUALITY_BLOCK_PRODUCER_PERCENTAGE,
    MAX_POOR_BLOCK_PRODUCER_PERCENTAGE,
    BAD_CLUSTER_AVERAGE_SKIP_RATE,
    MIN_EPOCH_CREDIT_PERCENTAGE_OF_AVERAGE,
    MAX_POOR_VOTER_PERCENTAGE,
    MAX_OLD_RELEASE_VERSION_PERCENTAGE,
    PCT_CAP,
    VOTE_GAUGES_STAKE_PCT,
    STAKE_TOP_N_VALIDATORS,
    STAKE_FROM_COLLATERAL_MAX_PCT,
    STAKE_DELTA_SOL,
    MIN_VALIDATORS,
    MIN_POSITIVE_VALIDATORS,
    SCORE_MAX_COMMISSION,
    SCORE_MIN_STAKE_SOL,
    SCORE_CONCENTRATION_POINT_DISCOUNT,
    SCORE_MIN_AVG_POSITION,
)


class InputIntegrityError(ValueError):
    """Raised when the epoch input cannot be trusted (too few records, missing fields, bad files)."""


class ScoringInvariantError(RuntimeError):
    """Raised when the scored output is degenerate and must not reach the delegation bot."""


@dataclass(frozen=True)
class ValidatorRecord:
    """
    Per-run input for one validator, keyed by vote address.

    Stake amounts are in base units except `marinade_staked`, which is in
    currency units as reported by the stake source.
    """
    identity: str
    vote_address: str
    name: str = ""
    commission: int = 0
    node_version: str = ""
    credits_observed: int = 0
    this_epoch_credits: int = 0
    average_position: float = 50.0
    data_center_concentration: float = 0.0
    under_nakamoto_coefficient: bool = False
    delinquent: bool = False
    marinade_staked: float = 0.0
    votes_read: int = 0
    collateral_deposit: int = 0
    collateral_balance: int = 0
    active_stake: int = 0
    base_score: int = 0


@dataclass(frozen=True)
class ScoreRecord:
    """Working and output entity for one validator. Stages return updated copies."""
    validator: ValidatorRecord
    marinade_score: int = 0
    vote_score: int = 0
    collateral_score: int = 0
    score: int = 0
    votes_effective: int = 0
    collateral_shares: int = 0
    should_have: float = 0.0
    remove_level: int = 0
    remove_level_reason: str = ""
    blacklisted: bool = False
    rank: int = 0
    pct: float = 0.0

    @property
    def vote_address(self) -> str:
        return self.validator.vote_address

    @property
    def allow_listed(self) -> bool:
        # level 3 validators are removed from the on-chain list entirely
        return self.remove_level < 3

    def to_row(self) -> Dict[str, Any]:
        """Flatten into a single output row (validator fields + score fields)."""
        row = asdict(self.validator)
        row.update({
            "rank": self.rank,
            "score": self.score,
            "marinade_score": self.marinade_score,
            "vote_score": self.vote_score,
            "collateral_score": self.collateral_score,
            "votes_effective": self.votes_effective,
            "collateral_shares": self.collateral_shares,
            "pct": self.pct,
            "should_have": self.should_have,
            "remove_level": self.remove_level,
            "remove_level_reason": self.remove_level_reason,
            "blacklisted": self.blacklisted,
            "allow_listed": self.allow_listed,
        })
        return row


@dataclass(frozen=True)
class EpochPerformance:
    """Previous-epoch cluster data used by the cluster health gate."""
    identity: str
    leader_slots: int = 0
    blocks_produced: int = 0
    epoch_credits: int = 0
    node_version: str = ""


@dataclass(frozen=True)
class ClusterHealth:
    passed: bool
    notes: List[str]
    cluster_average_skip_rate: int = 0
    poor_block_producer_percentage: float = 0.0
    poor_voter_percentage: float = 0.0
    old_version_percentage: float = 0.0


@dataclass(frozen=True)
class StakeTargets:
    """Stake totals in base units shared by the overstake, collateral and capping stages."""
    total_stake_target: int
    total_collateral_shares: int
    stake_from_collateral: int
    stake_target_without_collateral: int


@dataclass
class ScoringParams:
    # Health ladder
    max_commission: int = HEALTHY_VALIDATOR_MAX_COMMISSION
    min_average_position: float = MIN_AVERAGE_POSITION
    min_release_version: Optional[str] = MIN_RELEASE_VERSION
    # Cluster health gate
    quality_block_producer_percentage: int = QUALITY_BLOCK_PRODUCER_PERCENTAGE
    max_poor_block_producer_percentage: int = MAX_POOR_BLOCK_PRODUCER_PERCENTAGE
    bad_cluster_average_skip_rate: int = BAD_CLUSTER_AVERAGE_SKIP_RATE
    min_epoch_credit_percentage_of_average: int = MIN_EPOCH_CREDIT_PERCENTAGE_OF_AVERAGE
    max_poor_voter_percentage: int = MAX_POOR_VOTER_PERCENTAGE
    max_old_release_version_percentage: int = MAX_OLD_RELEASE_VERSION_PERCENTAGE
    # Score composition
    pct_cap: float = PCT_CAP
    vote_gauges_stake_pct: int = VOTE_GAUGES_STAKE_PCT
    stake_top_n_validators: int = STAKE_TOP_N_VALIDATORS
    stake_from_collateral_max_pct: int = STAKE_FROM_COLLATERAL_MAX_PCT
    stake_delta_sol: int = STAKE_DELTA_SOL
    recompute_superminority: bool = False
    # Sanity checks
    min_validators: int = MIN_VALIDATORS
    min_positive_validators: int = MIN_POSITIVE_VALIDATORS
    # Base score (previous-epoch classification)
    score_max_commission: int = SCORE_MAX_COMMISSION
    score_min_stake_sol: int = SCORE_MIN_STAKE_SOL
    score_concentration_point_discount: int = SCORE_CONCENTRATION_POINT_DISCOUNT
    score_min_avg_position: float = SCORE_MIN_AVG_POSITION

    def validate(self):
        if not 0 <= self.vote_gauges_stake_pct <= 100:
            raise ValueError(f"vote_gauges_stake_pct must be within 0-100, got {self.vote_gauges_stake_pct}")
        if not 0 <= self.stake_from_collateral_max_pct <= 100:
            raise ValueError(f"stake_from_collateral_max_pct must be within 0-100, got {self.stake_from_collateral_max_pct}")
        if not 0 < self.pct_cap <= 100:
            raise ValueError(f"pct_cap must be within (0, 100], got {self.pct_cap}")
        if self.stake_top_n_validators < 0 or self.stake_delta_sol < 0:
            raise ValueError("stake_top_n_validators and stake_delta_sol must not be negative")


@dataclass
class EpochScores:
    """Result of one scoring run. `aborted` runs carry notes but no scores."""
    scores: List[ScoreRecord] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    aborted: bool = False
    cluster_health: Optional[ClusterHealth] = None
    stake_targets: Optional[StakeTargets] = None
    avg_this_epoch_credits: int = 0

    @property
    def total_score(self) -> int:
        return sum(s.score for s in self.scores)
