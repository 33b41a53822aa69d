"""
classification.py - cluster-level classification of validators

Purpose:
--------
Everything in here looks at the *whole* validator set rather than one
validator at a time:

  - Superminority:   which validators together hold enough stake to halt the
                     network (the Nakamoto coefficient group).
  - Cluster health:  a circuit breaker over the previous epoch. When too many
                     validators look bad at once the "average" itself is
                     suspect (outage, bad release), so the run is skipped.
  - Base score:      the previous-epoch performance score and average position.
                     The pipeline reads these precomputed from the avg file;
                     they live here for tests/gen_mock_data.py, which has to
                     produce that file.
"""

import re
import dataclasses
import numpy as np
import bittensor as bt

from typing import List, Optional, Sequence, Tuple
from constants import LAMPORTS_PER_SOL, SUPERMINORITY_STAKE_PERCENTAGE
from models import (
    ValidatorRecord,
    EpochPerformance,
    ClusterHealth,
    ScoringParams,
    InputIntegrityError,
)

VERSION_ZERO = (0, 0, 0)
_VERSION_RE = re.compile(r"^v?(\d+)\.(\d+)\.(\d+)(?:[-+].*)?$")


def parse_version(version: Optional[str]) -> Tuple[int, int, int]:
    """Parse a semantic version string. Missing or unparseable versions are 0.0.0."""
    if not version:
        return VERSION_ZERO
    match = _VERSION_RE.match(version.strip())
    if match is None:
        return VERSION_ZERO
    return tuple(int(part) for part in match.groups())


def flag_superminority(
    validators: Sequence[ValidatorRecord],
    total_active_stake: Optional[int] = None,
) -> List[ValidatorRecord]:
    """
    Flag the validators that belong to the superminority.

    Validators are walked from the largest active stake down; every validator
    whose inclusion keeps the running sum at or below 33% of the total active
    stake is flagged. Returns new records in the input order.
    """
    if total_active_stake is None:
        total_active_stake = sum(v.active_stake for v in validators)
    limit = total_active_stake * SUPERMINORITY_STAKE_PERCENTAGE // 100

    # sorted() is stable: equal stakes keep their input order
    order = sorted(range(len(validators)), key=lambda i: -validators[i].active_stake)

    flagged = set()
    accumulated = 0
    last_flagged_stake = 0
    for idx in order:
        # the rest of the walk holds no stake
        if validators[idx].active_stake == 0:
            break
        accumulated += validators[idx].active_stake
        if accumulated > limit:
            break
        flagged.add(idx)
        last_flagged_stake = validators[idx].active_stake

    bt.logging.info(
        f"validators: {len(validators)}, total_active_stake: {total_active_stake / LAMPORTS_PER_SOL:,.2f}, "
        f"can halt the network: top {len(flagged)}, last under-nakamoto-coefficient active stake: "
        f"{last_flagged_stake / LAMPORTS_PER_SOL:,.2f}"
    )

    return [
        dataclasses.replace(v, under_nakamoto_coefficient=(i in flagged))
        for i, v in enumerate(validators)
    ]


def check_cluster_health(performance: Sequence[EpochPerformance], params: ScoringParams) -> ClusterHealth:
    """
    Decide whether this epoch's stake adjustment may go ahead.

    Three ratios are computed over the previous epoch:
      - poor block producers (skip rate above the cluster average plus a grace)
      - poor voters (vote credits below a percentage of the cluster average)
      - validators running a release older than the configured minimum
    If any of them is above its ceiling the whole run is skipped.
    """
    if len(performance) == 0:
        raise InputIntegrityError("No previous-epoch performance data supplied to the cluster health gate")

    leader_slots = np.array([p.leader_slots for p in performance], dtype=np.int64)
    blocks = np.array([p.blocks_produced for p in performance], dtype=np.int64)
    credits = np.array([p.epoch_credits for p in performance], dtype=np.int64)

    if np.any(blocks > leader_slots):
        raise InputIntegrityError("Performance data has more blocks produced than leader slots")

    # --- Block production ---
    producers = leader_slots > 0
    total_slots = int(np.sum(leader_slots))
    total_blocks = int(np.sum(blocks))
    if total_slots > 0:
        cluster_average_skip_rate = 100 - total_blocks * 100 // total_slots
        skip_rates = 100 - (blocks[producers] * 100 // leader_slots[producers])
        poor_producers = np.maximum(skip_rates - params.quality_block_producer_percentage, 0) > cluster_average_skip_rate
        poor_block_producer_percentage = float(np.mean(poor_producers) * 100) if poor_producers.size else 0.0
    else:
        cluster_average_skip_rate = 0
        poor_block_producer_percentage = 0.0

    # --- Vote credits ---
    avg_epoch_credits = int(np.sum(credits)) // len(performance)
    min_epoch_credits = avg_epoch_credits * params.min_epoch_credit_percentage_of_average // 100
    poor_voter_percentage = float(np.mean(credits < min_epoch_credits) * 100)

    # --- Release version ---
    old_version_percentage = 0.0
    if params.min_release_version:
        min_version = parse_version(params.min_release_version)
        old = np.array([parse_version(p.node_version) < min_version for p in performance])
        old_version_percentage = float(np.mean(old) * 100)

    too_many_poor_block_producers = poor_block_producer_percentage > params.max_poor_block_producer_percentage
    too_many_poor_voters = poor_voter_percentage > params.max_poor_voter_percentage
    too_many_old_validators = old_version_percentage > params.max_old_release_version_percentage

    notes = [
        f"Minimum vote credits required: {min_epoch_credits} (cluster average: {avg_epoch_credits}, "
        f"threshold: {params.min_epoch_credit_percentage_of_average}%)",
        f"Maximum allowed skip rate: {cluster_average_skip_rate + params.quality_block_producer_percentage}% "
        f"(cluster average: {cluster_average_skip_rate}%, grace: {params.quality_block_producer_percentage}%)",
        f"Release {params.min_release_version or 'any'} or greater required",
    ]
    if cluster_average_skip_rate > params.bad_cluster_average_skip_rate:
        notes.append("Cluster average skip rate is poor")
    if too_many_poor_voters:
        notes.append(
            f"Too many validators classified as poor voters: {poor_voter_percentage:.2f}% "
            f"(limit: {params.max_poor_voter_percentage}%)"
        )
    if too_many_old_validators:
        notes.append(f"Over {params.max_old_release_version_percentage}% of validators classified as running an older release")
    if too_many_poor_block_producers:
        notes.append(f"Over {params.max_poor_block_producer_percentage}% of validators classified as poor block producers")

    passed = not (too_many_poor_voters or too_many_old_validators or too_many_poor_block_producers)
    if not passed:
        notes.append("Stake adjustments skipped this epoch")

    bt.logging.info(f"cluster_average_skip_rate: {cluster_average_skip_rate}%")
    bt.logging.info(f"poor_block_producer_percentage: {poor_block_producer_percentage:.2f}% (too many={too_many_poor_block_producers})")
    bt.logging.info(f"poor_voter_percentage: {poor_voter_percentage:.2f}% (too many={too_many_poor_voters})")
    bt.logging.info(f"old_version_percentage: {old_version_percentage:.2f}% (too many={too_many_old_validators})")

    return ClusterHealth(
        passed=passed,
        notes=notes,
        cluster_average_skip_rate=cluster_average_skip_rate,
        poor_block_producer_percentage=poor_block_producer_percentage,
        poor_voter_percentage=poor_voter_percentage,
        old_version_percentage=old_version_percentage,
    )


def compute_average_position(epoch_credits: int, avg_epoch_credits: int) -> float:
    # 50 => average, 0 => worst, 100 => twice the average
    if avg_epoch_credits == 0:
        return 0.0
    return epoch_credits / avg_epoch_credits * 50.0


def compute_base_score(
    epoch_credits: int,
    average_position: float,
    commission: int,
    active_stake: int,
    data_center_concentration: float,
    can_halt_the_network: bool,
    params: ScoringParams,
) -> int:
    """
    Previous-epoch base score.

    Credits are discounted by commission (a 50% commission validator earns the
    user the same as a half-credits 0% validator) and by data center
    concentration, and above-average validators get a bonus of up to 25x
    their credits.
    """
    if (
        can_halt_the_network
        or active_stake < params.score_min_stake_sol * LAMPORTS_PER_SOL
        or average_position < params.score_min_avg_position
        or commission > params.score_max_commission
    ):
        return 0

    discount_because_commission = commission * epoch_credits // 100
    discount_because_concentration = int(data_center_concentration * params.score_concentration_point_discount)

    points_added_above_average = 0
    if average_position > 50.0:
        above = average_position - 50.0
        multiplier = min(above * above, 25.0)
        points_added_above_average = int(multiplier * epoch_credits)

    score = max(epoch_credits - discount_because_commission, 0)
    score = max(score - discount_because_concentration, 0)
    return score + points_added_above_average
