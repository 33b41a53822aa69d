"""
scoring.py  —  score composition, capping and the epoch pipeline

Purpose (plain English):
------------------------
Turns each validator's base performance score into a bounded stake target:

  1) Health ladder        zero / halve unhealthy validators, blacklist override
  2) Commission bonus     low-fee validators get their score multiplied (x5..x2)
  3) Long-tail gating     validators far down the list with no stake get nothing
  4) Stake targets        how much stake we are distributing this epoch and how
                          much of it is reserved for referral collateral
  5) Overstake feedback   scores become whole-SOL stake targets; validators that
                          already hold more than they deserve are unwound gently
  6) Vote-gauge blend     P% of the score mass follows governance votes
  7) Collateral overlay   the collateral pool follows referral deposits
  8) Cap & redistribute   no validator may hold more than pct_cap of the total;
                          overflow is handed to lower ranked validators

Every stage takes the previous list of ScoreRecords and returns a new one; no
record is mutated in place.

IMPORTANT UNITS:
----------------
- Stake amounts inside the engine are integers in base units (lamports).
- Scores are abstract points up to the overstake stage and whole SOL after it.
- should_have / pct are floats and only ever reported, never fed back in.
"""

import dataclasses
import bittensor as bt

from typing import Dict, List, Mapping, Optional, Sequence
from constants import LAMPORTS_PER_SOL, COMMISSION_BONUS_TIERS
from distribution import exact_proportional_split, proportional
from classification import check_cluster_health, flag_superminority
from health import HealthContext, apply_health, apply_blacklist, average_this_epoch_credits
from models import (
    ValidatorRecord,
    ScoreRecord,
    EpochPerformance,
    EpochScores,
    ScoringParams,
    StakeTargets,
    InputIntegrityError,
    ScoringInvariantError,
)

SELF_STAKE_OVERRIDE_REASON = "self stake override"
PCT_SCALE = 100_000_000     # pct is kept with 6 decimals: 100% == 100_000_000
PCT_CAP_SCALE = 1_000_000


def commission_multiplier(commission: int) -> int:
    for max_commission, multiplier in COMMISSION_BONUS_TIERS:
        if commission <= max_commission:
            return multiplier
    return 1


def apply_commission_bonus(scores: Sequence[ScoreRecord]) -> List[ScoreRecord]:
    """Multiply marinade_score by the commission tier multiplier."""
    return [
        dataclasses.replace(s, marinade_score=s.marinade_score * commission_multiplier(s.validator.commission))
        for s in scores
    ]


def apply_long_tail_gating(scores: Sequence[ScoreRecord], top_n: int) -> List[ScoreRecord]:
    """
    Zero the score of validators ranked at or beyond `top_n` that hold no
    delegated stake yet. Keeps the bottom of the list from churning.

    Returns the records in descending marinade_score order (stable).
    """
    ordered = sorted(scores, key=lambda s: -s.marinade_score)
    result = []
    gated = 0
    for index, s in enumerate(ordered):
        if index >= top_n and s.validator.marinade_staked == 0 and s.marinade_score > 0:
            s = dataclasses.replace(s, marinade_score=0)
            gated += 1
        result.append(s)

    if gated:
        bt.logging.info(f"Long-tail gating zeroed {gated} validator(s) beyond the top {top_n}")
    return result


def collateral_shares(s: ScoreRecord) -> int:
    # only allow-listed, non blacklisted validators can be backed by collateral
    if not s.allow_listed or s.blacklisted:
        return 0
    return min(s.validator.collateral_deposit, s.validator.collateral_balance)


def compute_stake_targets(scores: Sequence[ScoreRecord], params: ScoringParams) -> StakeTargets:
    """Total stake target (currently delegated + delta) and the collateral pool carved out of it."""
    total_delegated = sum(int(round(s.validator.marinade_staked * LAMPORTS_PER_SOL)) for s in scores)
    total_stake_target = total_delegated + params.stake_delta_sol * LAMPORTS_PER_SOL

    total_collateral_shares = sum(collateral_shares(s) for s in scores)
    stake_from_collateral = min(
        total_collateral_shares,
        total_stake_target * params.stake_from_collateral_max_pct // 100,
    )

    targets = StakeTargets(
        total_stake_target=total_stake_target,
        total_collateral_shares=total_collateral_shares,
        stake_from_collateral=stake_from_collateral,
        stake_target_without_collateral=total_stake_target - stake_from_collateral,
    )
    bt.logging.info(
        f"total_stake_target: {total_stake_target / LAMPORTS_PER_SOL:,.2f}, "
        f"stake_from_collateral: {stake_from_collateral / LAMPORTS_PER_SOL:,.2f} "
        f"(shares: {total_collateral_shares / LAMPORTS_PER_SOL:,.2f}, max {params.stake_from_collateral_max_pct}%)"
    )
    return targets


def apply_overstake_feedback(scores: Sequence[ScoreRecord], stake_target_without_collateral: int) -> List[ScoreRecord]:
    """
    Convert scores into whole-SOL stake targets.

    should_have is the score-weighted share of the stake target. A validator
    already holding more than that is unwound towards it: to zero when it is
    marked for unstake, to half when it has a warning, to should_have otherwise.
    """
    total_score = sum(s.marinade_score for s in scores)
    result = []
    overstaked = 0
    for s in scores:
        if total_score > 0:
            should_have_lamports = proportional(stake_target_without_collateral, s.marinade_score, total_score)
        else:
            should_have_lamports = 0
        should_have = should_have_lamports / LAMPORTS_PER_SOL

        if s.validator.marinade_staked > should_have:
            overstaked += 1
            if s.remove_level >= 2:
                new_score = 0
            elif s.remove_level == 1:
                new_score = should_have_lamports // 2 // LAMPORTS_PER_SOL
            else:
                new_score = should_have_lamports // LAMPORTS_PER_SOL
        else:
            new_score = should_have_lamports // LAMPORTS_PER_SOL

        result.append(dataclasses.replace(s, marinade_score=new_score, should_have=should_have))

    bt.logging.info(f"Overstake feedback: {overstaked} validator(s) hold more than their stake target")
    return result


def apply_vote_blend(scores: Sequence[ScoreRecord], vote_gauges_stake_pct: int) -> List[ScoreRecord]:
    """
    Hand vote_gauges_stake_pct% of the score mass to governance votes.

    Votes of validators marked for unstake (level >= 2) do not count.
    """
    votes_effective = [0 if s.remove_level >= 2 else s.validator.votes_read for s in scores]
    total_votes = sum(votes_effective)

    if vote_gauges_stake_pct == 0 or total_votes == 0:
        return [
            dataclasses.replace(s, votes_effective=votes, vote_score=0, score=s.marinade_score)
            for s, votes in zip(scores, votes_effective)
        ]

    total_marinade_score = sum(s.marinade_score for s in scores)
    vote_mass = total_marinade_score * vote_gauges_stake_pct // 100
    vote_scores = exact_proportional_split(vote_mass, votes_effective)

    bt.logging.info(f"Vote gauges: distributing {vote_mass:,} over {total_votes:,} effective votes")

    result = []
    for s, votes, vote_score in zip(scores, votes_effective, vote_scores):
        marinade_score = s.marinade_score * (100 - vote_gauges_stake_pct) // 100
        result.append(dataclasses.replace(
            s,
            votes_effective=votes,
            marinade_score=marinade_score,
            vote_score=vote_score,
            score=marinade_score + vote_score,
        ))
    return result


def apply_collateral_overlay(scores: Sequence[ScoreRecord], stake_from_collateral: int) -> List[ScoreRecord]:
    """
    Split the collateral pool over validators by their collateral shares.

    Nobody gets more than the collateral it actually holds. Any collateral
    score lifts the validator back to remove level 0.
    """
    shares = [collateral_shares(s) for s in scores]
    if stake_from_collateral == 0 or sum(shares) == 0:
        return [dataclasses.replace(s, collateral_shares=share) for s, share in zip(scores, shares)]

    parts = exact_proportional_split(stake_from_collateral, shares)

    result = []
    overridden = 0
    for s, share, part in zip(scores, shares, parts):
        part = min(part, share)
        collateral_score = part // LAMPORTS_PER_SOL
        changes = {"collateral_shares": share}
        if collateral_score > 0:
            changes.update(
                collateral_score=collateral_score,
                score=s.score + collateral_score,
                should_have=s.should_have + part / LAMPORTS_PER_SOL,
            )
            if s.remove_level != 0:
                overridden += 1
            changes.update(remove_level=0, remove_level_reason=SELF_STAKE_OVERRIDE_REASON)
        result.append(dataclasses.replace(s, **changes))

    if overridden:
        bt.logging.info(f"Collateral overlay lifted {overridden} validator(s) back to remove level 0")
    return result


def cap_and_redistribute(scores: Sequence[ScoreRecord], pct_cap: float, total_stake_target: int) -> List[ScoreRecord]:
    """
    Enforce the per-validator cap and hand the overflow down the list.

    Single forward pass over the scores in descending order:
      - a validator above the cap adds its overflow to the pool
      - every validator then takes its share of the pool (score / remaining
        total), clipped at the cap; clipped grants stay in the pool
    Floor remainders can leave a later validator a few units above an earlier
    one, so the records are re-sorted by final score (stable) before ranking.
    Returns the records in rank order with rank, pct and should_have set.
    """
    ordered = sorted(scores, key=lambda s: -s.score)
    total = sum(s.score for s in ordered)

    if total == 0:
        return [dataclasses.replace(s, rank=rank, pct=0.0, should_have=0.0) for rank, s in enumerate(ordered, 1)]

    cap = total * round(pct_cap * PCT_CAP_SCALE) // PCT_SCALE
    pool = 0
    remaining_total = total
    redistributed = 0
    capped = []

    for s in ordered:
        score = s.score
        pool += max(0, score - cap)

        grant = pool * score // remaining_total if remaining_total > 0 else 0
        new_score = min(score + grant, cap)
        granted = max(new_score - score, 0)
        pool -= granted
        redistributed += granted

        capped.append(dataclasses.replace(
            s,
            score=new_score,
            should_have=new_score * total_stake_target // total / LAMPORTS_PER_SOL,
            pct=new_score * PCT_SCALE // total / PCT_CAP_SCALE,
        ))
        remaining_total -= score

    # ties keep the pre-cap order
    capped.sort(key=lambda s: -s.score)
    result = [dataclasses.replace(s, rank=rank) for rank, s in enumerate(capped, 1)]

    bt.logging.info(f"Capping at {pct_cap}% ({cap:,} of {total:,}): redistributed {redistributed:,}")
    if pool > 0:
        bt.logging.warning(f"Capping left {pool:,} undistributed, every remaining validator is at the cap")
    return result


def validate_inputs(validators: Sequence[ValidatorRecord], params: ScoringParams):
    """Refuse to score an input that cannot be trusted."""
    if len(validators) <= params.min_validators:
        raise InputIntegrityError(f"Too few validators: {len(validators)}, more than {params.min_validators} required")

    seen = set()
    for v in validators:
        if not v.identity or not v.vote_address:
            raise InputIntegrityError(f"Validator record is missing its identity or vote address: {v}")
        if v.vote_address in seen:
            raise InputIntegrityError(f"Duplicate vote address: {v.vote_address}")
        seen.add(v.vote_address)
        if not 0 <= v.commission <= 100:
            raise InputIntegrityError(f"Commission out of range for {v.vote_address}: {v.commission}")
        for name in ("credits_observed", "this_epoch_credits", "marinade_staked", "votes_read",
                     "collateral_deposit", "collateral_balance", "active_stake", "base_score"):
            if getattr(v, name) < 0:
                raise InputIntegrityError(f"Negative {name} for {v.vote_address}: {getattr(v, name)}")


def check_final_scores(scores: Sequence[ScoreRecord], params: ScoringParams):
    """A degenerate output must never reach the delegation bot."""
    negative = [s.vote_address for s in scores if s.score < 0]
    if negative:
        raise ScoringInvariantError(f"Negative final score for {len(negative)} validator(s): {negative[:5]}")

    total = sum(s.score for s in scores)
    if total <= 0:
        raise ScoringInvariantError("Total score is zero")

    positive = sum(1 for s in scores if s.score > 0)
    if positive <= params.min_positive_validators:
        raise ScoringInvariantError(
            f"Too few validators with a positive score: {positive}, more than {params.min_positive_validators} required"
        )


def score_epoch(
    validators: Sequence[ValidatorRecord],
    params: Optional[ScoringParams] = None,
    blacklist: Optional[Mapping[str, str]] = None,
    performance: Optional[Sequence[EpochPerformance]] = None,
) -> EpochScores:
    """
    Run the whole pipeline for one epoch.

    When `performance` is given the cluster health gate runs first; a failed
    gate returns an aborted EpochScores with notes and no scores.
    """
    params = params or ScoringParams()
    params.validate()
    validate_inputs(validators, params)

    notes: List[str] = []
    cluster_health = None
    if performance is not None:
        cluster_health = check_cluster_health(performance, params)
        notes.extend(cluster_health.notes)
        if not cluster_health.passed:
            bt.logging.warning("Cluster health gate failed, stake adjustments skipped this epoch")
            return EpochScores(notes=notes, aborted=True, cluster_health=cluster_health)

    if params.recompute_superminority:
        validators = flag_superminority(validators)

    avg_credits = average_this_epoch_credits(validators)
    if avg_credits == 0:
        raise InputIntegrityError("No validator produced credits this epoch, live cluster data is missing")
    ctx = HealthContext(
        avg_this_epoch_credits=avg_credits,
        max_commission=params.max_commission,
        min_average_position=params.min_average_position,
        min_release_version=params.min_release_version,
    )

    scores = [ScoreRecord(validator=v, marinade_score=v.base_score) for v in validators]
    scores = apply_health(scores, ctx)
    scores = apply_blacklist(scores, blacklist)
    scores = apply_commission_bonus(scores)
    scores = apply_long_tail_gating(scores, params.stake_top_n_validators)
    targets = compute_stake_targets(scores, params)
    scores = apply_overstake_feedback(scores, targets.stake_target_without_collateral)
    scores = apply_vote_blend(scores, params.vote_gauges_stake_pct)
    scores = apply_collateral_overlay(scores, targets.stake_from_collateral)
    scores = cap_and_redistribute(scores, params.pct_cap, targets.total_stake_target)

    check_final_scores(scores, params)

    result = EpochScores(
        scores=scores,
        notes=notes,
        cluster_health=cluster_health,
        stake_targets=targets,
        avg_this_epoch_credits=avg_credits,
    )
    bt.logging.success(f"Scored {len(scores)} validators, total score {result.total_score:,}")
    return result


def score_summary(result: EpochScores) -> Dict[str, int]:
    levels = [0, 0, 0, 0]
    for s in result.scores:
        levels[s.remove_level] += 1
    return {
        "validators": len(result.scores),
        "positive": sum(1 for s in result.scores if s.score > 0),
        "total_score": result.total_score,
        "healthy": levels[0],
        "warning": levels[1],
        "unstake": levels[2],
        "delist": levels[3],
        "blacklisted": sum(1 for s in result.scores if s.blacklisted),
    }
