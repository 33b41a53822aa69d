#!/usr/bin/env python3
"""
Mock Cluster Data Generator for the Validator Scoring Pipeline

This script generates a synthetic validator set with the same files the
scoring entry point reads: averaged scores CSV, `solana validators` JSON,
delegated stake, governance votes, referral collateral, previous-epoch
performance and an optional blacklist.

Validators are drawn from behaviour profiles (reliable, average, low-fee,
high-fee, underperformer, offline, whale) so that every rung of the health
ladder shows up in a realistic proportion.

Examples of usage:
# Default cluster of 1000 validators
python tests/gen_mock_data.py --validators 1000 --seed 7

# Cluster in the middle of an outage (the health gate should abort)
python tests/gen_mock_data.py --validators 800 --scenario outage

# Cluster with a few blacklisted validators and more collateral
python tests/gen_mock_data.py --validators 600 --blacklisted 5 --collateral 0.1
"""

import os
import sys
import json
import argparse
import numpy as np
import pandas as pd
from pathlib import Path
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from numpy.random import default_rng

# Add parent directory to path so we can import the scoring modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from constants import LAMPORTS_PER_SOL
from models import ValidatorRecord, ScoringParams
from classification import flag_superminority, compute_average_position, compute_base_score

# =============================================================================
# CONFIGURATION
# =============================================================================

# Vote credits a perfect validator earns in one epoch
MAX_EPOCH_CREDITS = 432_000

# Leader slots in one epoch
SLOTS_PER_EPOCH = 432_000

# Active stake distribution (lognormal, in SOL)
STAKE_MU = 11.0
STAKE_SIGMA = 1.2
STAKE_FLOOR_SOL = 1_000.0

CURRENT_VERSION = "1.18.22"
OLD_VERSION = "1.16.27"


@dataclass
class ValidatorProfile:
    """Behaviour profile a mock validator is drawn from"""
    name: str
    credit_ratio_mean: float     # observed credits as a fraction of the maximum
    credit_ratio_std: float
    this_epoch_drift: float      # multiplier on credits for the current epoch
    skip_rate_mean: float
    commissions: tuple
    stake_multiplier: float
    old_version_probability: float


VALIDATOR_PROFILES = {
    "reliable": ValidatorProfile("reliable", 0.93, 0.01, 1.0, 0.02, (0, 5, 7), 1.0, 0.0),
    "average": ValidatorProfile("average", 0.88, 0.02, 1.0, 0.05, (5, 8, 10), 1.0, 0.02),
    "low_fee": ValidatorProfile("low_fee", 0.90, 0.02, 1.0, 0.04, (0, 0, 5, 6), 0.8, 0.0),
    "high_fee": ValidatorProfile("high_fee", 0.90, 0.02, 1.0, 0.04, (15, 25, 100), 1.2, 0.05),
    "underperformer": ValidatorProfile("underperformer", 0.75, 0.05, 0.82, 0.15, (5, 10), 0.6, 0.2),
    "offline": ValidatorProfile("offline", 0.40, 0.20, 0.0, 0.80, (10,), 0.4, 0.5),
    "whale": ValidatorProfile("whale", 0.92, 0.01, 1.0, 0.02, (7, 8, 10), 25.0, 0.0),
}

DEFAULT_PROFILE_DISTRIBUTION = {
    "reliable": 0.30,
    "average": 0.30,
    "low_fee": 0.15,
    "high_fee": 0.07,
    "underperformer": 0.08,
    "offline": 0.05,
    "whale": 0.05,
}

SCENARIOS = {
    "balanced": DEFAULT_PROFILE_DISTRIBUTION,
    "outage": {"reliable": 0.2, "average": 0.2, "underperformer": 0.2, "offline": 0.4},
    "low-fee-heavy": {"low_fee": 0.6, "reliable": 0.3, "whale": 0.1},
}

# =============================================================================
# GENERATION
# =============================================================================

def create_validator(index: int, profile: ValidatorProfile, rng) -> Dict[str, Any]:
    """Draw one validator from its profile"""
    credit_ratio = float(np.clip(rng.normal(profile.credit_ratio_mean, profile.credit_ratio_std), 0.0, 1.0))
    epoch_credits = int(credit_ratio * MAX_EPOCH_CREDITS)
    this_epoch_credits = int(epoch_credits * profile.this_epoch_drift * rng.uniform(0.97, 1.03))

    stake_sol = max(STAKE_FLOOR_SOL, float(np.exp(rng.normal(STAKE_MU, STAKE_SIGMA)))) * profile.stake_multiplier
    version = OLD_VERSION if rng.random() < profile.old_version_probability else CURRENT_VERSION

    return {
        "identity": f"Node{index:05d}{profile.name[:3].upper()}",
        "vote_address": f"Vote{index:05d}{profile.name[:3].upper()}",
        "name": f"{profile.name}-{index}",
        "profile": profile.name,
        "commission": int(rng.choice(profile.commissions)),
        "epoch_credits": epoch_credits,
        "this_epoch_credits": this_epoch_credits,
        "active_stake": int(stake_sol * LAMPORTS_PER_SOL),
        "data_center_concentration": float(np.round(rng.uniform(0.0, 0.25), 4)),
        "skip_rate": float(np.clip(rng.normal(profile.skip_rate_mean, 0.02), 0.0, 1.0)),
        "version": version,
    }


def generate_mock_cluster(
    num_validators: int = 1000,
    seed: Optional[int] = None,
    profile_distribution: Optional[Dict[str, float]] = None,
    delegated_percentage: float = 0.6,
    voters_percentage: float = 0.3,
    collateral_percentage: float = 0.05,
    num_blacklisted: int = 0,
) -> Dict[str, Any]:
    """
    Generate a full mock cluster.

    Returns a dict with:
      - avg_df:       averaged scores (same columns as the avg CSV file)
      - validators:   `solana validators` JSON document
      - stake:        vote address -> delegated SOL
      - votes:        vote address -> governance votes
      - collateral:   vote address -> {"deposit", "balance"} in lamports
      - performance:  previous-epoch rows for the cluster health gate
      - blacklist:    identity -> reason
    """
    rng = default_rng(seed)
    distribution = profile_distribution or DEFAULT_PROFILE_DISTRIBUTION
    names = list(distribution.keys())
    weights = np.array(list(distribution.values()), dtype=np.float64)
    weights = weights / weights.sum()

    rows = [
        create_validator(i, VALIDATOR_PROFILES[rng.choice(names, p=weights)], rng)
        for i in range(num_validators)
    ]

    # Superminority flags, same rule as the pipeline
    flagged = flag_superminority([
        ValidatorRecord(identity=r["identity"], vote_address=r["vote_address"], active_stake=r["active_stake"])
        for r in rows
    ])

    params = ScoringParams()
    avg_epoch_credits = sum(r["epoch_credits"] for r in rows) // max(len(rows), 1)
    for r, record in zip(rows, flagged):
        r["can_halt_the_network_group"] = record.under_nakamoto_coefficient
        r["average_position"] = compute_average_position(r["epoch_credits"], avg_epoch_credits)
        r["score"] = compute_base_score(
            r["epoch_credits"],
            r["average_position"],
            r["commission"],
            r["active_stake"],
            r["data_center_concentration"],
            r["can_halt_the_network_group"],
            params,
        )
        r["avg_active_stake"] = r["active_stake"]

    avg_df = pd.DataFrame(rows)[[
        "identity", "vote_address", "name", "score", "commission", "epoch_credits",
        "average_position", "data_center_concentration", "avg_active_stake",
        "can_halt_the_network_group", "version",
    ]]

    validators = {"validators": [
        {
            "identityPubkey": r["identity"],
            "voteAccountPubkey": r["vote_address"],
            "commission": r["commission"],
            "epochCredits": r["this_epoch_credits"],
            "delinquent": r["this_epoch_credits"] == 0,
            "version": r["version"],
            "activatedStake": r["active_stake"],
        }
        for r in rows
    ]}

    stake = {}
    votes = {}
    collateral = {}
    for r in rows:
        if rng.random() < delegated_percentage:
            stake[r["vote_address"]] = float(np.round(rng.uniform(1_000, 30_000), 2))
        if rng.random() < voters_percentage:
            votes[r["vote_address"]] = int(rng.integers(1, 50_000))
        if rng.random() < collateral_percentage:
            deposit = int(rng.uniform(1_000, 50_000)) * LAMPORTS_PER_SOL
            balance = deposit if rng.random() < 0.8 else deposit // 2
            collateral[r["vote_address"]] = {"deposit": deposit, "balance": balance}

    # Leader slots follow stake share
    total_stake = sum(r["active_stake"] for r in rows)
    performance = []
    for r in rows:
        leader_slots = int(SLOTS_PER_EPOCH * r["active_stake"] // total_stake)
        performance.append({
            "identity": r["identity"],
            "leader_slots": leader_slots,
            "blocks_produced": int(leader_slots * (1.0 - r["skip_rate"])),
            "epoch_credits": r["epoch_credits"],
            "node_version": r["version"],
        })

    blacklist = {}
    if num_blacklisted > 0:
        for idx in rng.choice(len(rows), size=min(num_blacklisted, len(rows)), replace=False):
            blacklist[rows[idx]["identity"]] = "Mock blacklist entry"

    return {
        "avg_df": avg_df,
        "validators": validators,
        "stake": stake,
        "votes": votes,
        "collateral": collateral,
        "performance": performance,
        "blacklist": blacklist,
    }


def write_mock_cluster(data: Dict[str, Any], output_dir: str) -> Dict[str, str]:
    """Write the generated cluster to `output_dir`. Returns the file paths by name."""
    os.makedirs(output_dir, exist_ok=True)
    paths = {
        "avg_file": os.path.join(output_dir, "avg.csv"),
        "validators_file": os.path.join(output_dir, "validators.json"),
        "stake_file": os.path.join(output_dir, "stake.json"),
        "votes_file": os.path.join(output_dir, "votes.json"),
        "collateral_file": os.path.join(output_dir, "collateral.json"),
        "performance_file": os.path.join(output_dir, "performance.json"),
        "blacklist_file": os.path.join(output_dir, "blacklist.json"),
    }

    data["avg_df"].to_csv(paths["avg_file"], index=False)
    for key, name in (
        ("validators", "validators_file"),
        ("stake", "stake_file"),
        ("votes", "votes_file"),
        ("collateral", "collateral_file"),
        ("performance", "performance_file"),
        ("blacklist", "blacklist_file"),
    ):
        with open(paths[name], "w") as f:
            json.dump(data[key], f, indent=2)

    return paths


def main():
    """Main function with CLI"""
    parser = argparse.ArgumentParser(
        description='Generate a mock validator cluster for the scoring pipeline',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('--validators', type=int, default=1000,
                        help='Number of validators (default: 1000)')
    parser.add_argument('--output-dir', type=str, default='tests/mock_cluster',
                        help='Output directory (default: tests/mock_cluster)')
    parser.add_argument('--seed', type=int,
                        help='Random seed for reproducible results')
    parser.add_argument('--delegated', type=float, default=0.6,
                        help='Fraction of validators that already hold delegated stake (default: 0.6)')
    parser.add_argument('--voters', type=float, default=0.3,
                        help='Fraction of validators with governance votes (default: 0.3)')
    parser.add_argument('--collateral', type=float, default=0.05,
                        help='Fraction of validators with referral collateral (default: 0.05)')
    parser.add_argument('--blacklisted', type=int, default=0,
                        help='Number of blacklisted validators (default: 0)')
    parser.add_argument('--profiles', type=str,
                        help='Profile distribution as comma-separated name:weight pairs '
                             '(e.g., "reliable:0.5,average:0.4,offline:0.1")')
    parser.add_argument('--scenario', type=str, choices=list(SCENARIOS.keys()),
                        help='Use a preset scenario instead of custom profiles')
    args = parser.parse_args()

    if args.scenario:
        profile_distribution = SCENARIOS[args.scenario]
        print(f"Using scenario '{args.scenario}': {profile_distribution}")
    elif args.profiles:
        profile_distribution = {}
        for pair in args.profiles.split(','):
            name, weight = pair.split(':')
            profile_distribution[name.strip()] = float(weight)
        print(f"Using custom profiles: {profile_distribution}")
    else:
        profile_distribution = None

    data = generate_mock_cluster(
        num_validators=args.validators,
        seed=args.seed,
        profile_distribution=profile_distribution,
        delegated_percentage=args.delegated,
        voters_percentage=args.voters,
        collateral_percentage=args.collateral,
        num_blacklisted=args.blacklisted,
    )
    paths = write_mock_cluster(data, args.output_dir)

    print(f"Generated {args.validators} validators")
    for name, path in paths.items():
        print(f"  {name}: {path}")


if __name__ == "__main__":
    main()
