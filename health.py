"""
health.py - per-validator eligibility ladder

Purpose:
--------
Every validator is run down an ordered list of rules. The first rule that
matches decides the validator's remove level:

  0 = healthy               (full score)
  1 = warning               (score halved)
  2 = unstake               (score zeroed, stays visible for withdrawals)
  3 = unstake and delist    (score zeroed, removed from the allow-list)

Order matters: later predicates assume the earlier ones did not fire (e.g.
the underproduction rules only make sense once we know credits exist).

The blacklist is a manual override table loaded from configuration. It runs
after the ladder and always wins.
"""

import dataclasses
import bittensor as bt

from typing import Callable, Dict, List, Mapping, NamedTuple, Optional, Sequence, Tuple
from classification import parse_version
from constants import SEVERE_UNDERPRODUCTION_TENTHS, MILD_UNDERPRODUCTION_TENTHS, DEFAULT_BLACKLIST_REASON
from models import ValidatorRecord, ScoreRecord


@dataclasses.dataclass(frozen=True)
class HealthContext:
    """Cluster-wide values the rules are evaluated against."""
    avg_this_epoch_credits: int
    max_commission: int
    min_average_position: float
    min_release_version: Optional[str] = None


class HealthRule(NamedTuple):
    name: str
    predicate: Callable[[ValidatorRecord, HealthContext], bool]
    level: int
    reason: Callable[[ValidatorRecord, HealthContext], str]


def _credits_pct(v: ValidatorRecord, ctx: HealthContext) -> float:
    if ctx.avg_this_epoch_credits == 0:
        return 0.0
    return v.this_epoch_credits * 100 / ctx.avg_this_epoch_credits


def _is_stale_version(v: ValidatorRecord, ctx: HealthContext) -> bool:
    if not ctx.min_release_version:
        return False
    return parse_version(v.node_version) < parse_version(ctx.min_release_version)


HEALTH_RULES: Tuple[HealthRule, ...] = (
    HealthRule(
        "superminority",
        lambda v, ctx: v.under_nakamoto_coefficient,
        2,
        lambda v, ctx: "This validator is part of the superminority",
    ),
    HealthRule(
        "commission",
        lambda v, ctx: v.commission > ctx.max_commission,
        3,
        lambda v, ctx: f"Commission is over {ctx.max_commission}% ({v.commission}%)",
    ),
    HealthRule(
        "no_credits",
        lambda v, ctx: v.credits_observed == 0,
        2,
        lambda v, ctx: "No credits produced in the observed epochs",
    ),
    HealthRule(
        "stale_version",
        _is_stale_version,
        2,
        lambda v, ctx: f"Node version {v.node_version or 'unknown'} is older than {ctx.min_release_version}",
    ),
    HealthRule(
        "severe_underproduction",
        lambda v, ctx: v.this_epoch_credits < ctx.avg_this_epoch_credits * SEVERE_UNDERPRODUCTION_TENTHS // 10,
        2,
        lambda v, ctx: f"This epoch credits are at {_credits_pct(v, ctx):.2f}% of the average "
                       f"(below {SEVERE_UNDERPRODUCTION_TENTHS * 10}%)",
    ),
    HealthRule(
        "mild_underproduction",
        lambda v, ctx: v.this_epoch_credits < ctx.avg_this_epoch_credits * MILD_UNDERPRODUCTION_TENTHS // 10,
        1,
        lambda v, ctx: f"This epoch credits are at {_credits_pct(v, ctx):.2f}% of the average "
                       f"(below {MILD_UNDERPRODUCTION_TENTHS * 10}%)",
    ),
    HealthRule(
        "average_position",
        lambda v, ctx: v.average_position < ctx.min_average_position,
        1,
        lambda v, ctx: f"Average position {v.average_position:.2f} is below {ctx.min_average_position:.2f}",
    ),
)

HEALTHY_REASON = "healthy"


def average_this_epoch_credits(validators: Sequence[ValidatorRecord]) -> int:
    """
    Average current-epoch credits over validators that produced any.

    Zero-credit validators are left out of the denominator: a batch of
    offline nodes should not drag the bar down for everybody else.
    """
    producing = [v.this_epoch_credits for v in validators if v.this_epoch_credits > 0]
    if not producing:
        return 0
    return sum(producing) // len(producing)


def evaluate_health(validator: ValidatorRecord, ctx: HealthContext) -> Tuple[int, str]:
    """Return (remove_level, reason) of the first matching rule."""
    for rule in HEALTH_RULES:
        if rule.predicate(validator, ctx):
            return rule.level, rule.reason(validator, ctx)
    return 0, HEALTHY_REASON


def apply_health(scores: Sequence[ScoreRecord], ctx: HealthContext) -> List[ScoreRecord]:
    """Run the ladder over every record and apply its severity to marinade_score."""
    result = []
    level_counts = [0, 0, 0, 0]
    for s in scores:
        level, reason = evaluate_health(s.validator, ctx)
        level_counts[level] += 1
        if level == 1:
            marinade_score = s.marinade_score // 2
        elif level >= 2:
            marinade_score = 0
        else:
            marinade_score = s.marinade_score
        result.append(dataclasses.replace(
            s,
            remove_level=level,
            remove_level_reason=reason,
            marinade_score=marinade_score,
        ))

    bt.logging.info(
        f"Health ladder: healthy={level_counts[0]}, warning={level_counts[1]}, "
        f"unstake={level_counts[2]}, delist={level_counts[3]} "
        f"(avg this epoch credits: {ctx.avg_this_epoch_credits})"
    )
    return result


def apply_blacklist(scores: Sequence[ScoreRecord], blacklist: Optional[Mapping[str, str]]) -> List[ScoreRecord]:
    """
    Force every blacklisted validator to level 2 with a zero score.

    The blacklist maps identity (or vote address) to a reason.
    """
    if not blacklist:
        return list(scores)

    result = []
    hits = 0
    for s in scores:
        key = s.validator.identity if s.validator.identity in blacklist else s.validator.vote_address
        if key not in blacklist:
            result.append(s)
            continue
        hits += 1
        bt.logging.debug(f"Blacklisted validator {s.validator.identity} ({s.vote_address}): {blacklist[key]}")
        result.append(dataclasses.replace(
            s,
            remove_level=2,
            remove_level_reason=blacklist[key],
            marinade_score=0,
            blacklisted=True,
        ))

    if hits:
        bt.logging.warning(f"{hits} validator(s) matched the blacklist")
    return result


def build_blacklist(entries) -> Dict[str, str]:
    """Normalize a blacklist given as a mapping or as a plain list of identities."""
    if entries is None:
        return {}
    if isinstance(entries, Mapping):
        return {str(k): str(v) if v else DEFAULT_BLACKLIST_REASON for k, v in entries.items()}
    return {str(identity): DEFAULT_BLACKLIST_REASON for identity in entries}
