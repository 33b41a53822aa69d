"""Output writers and the terminal report for a scoring run."""

import os
import json
import numpy as np
import pandas as pd
import bittensor as bt

from typing import Optional
from tabulate import tabulate
from constants import LAMPORTS_PER_SOL
from models import EpochScores
from scoring import score_summary

CSV_COLUMNS = [
    "epoch",
    "rank",
    "score",
    "marinade_score",
    "collateral_score",
    "collateral_shares",
    "vote_score",
    "votes_read",
    "votes_effective",
    "name",
    "credits_observed",
    "vote_address",
    "commission",
    "average_position",
    "data_center_concentration",
    "delinquent",
    "this_epoch_credits",
    "pct",
    "marinade_staked",
    "should_have",
    "remove_level",
    "remove_level_reason",
    "blacklisted",
    "allow_listed",
    "under_nakamoto_coefficient",
    "identity",
    "base_score",
    "node_version",
    "active_stake",
]


def scores_dataframe(result: EpochScores, epoch: Optional[int] = None) -> pd.DataFrame:
    df = pd.DataFrame([s.to_row() for s in result.scores])
    if df.empty:
        return pd.DataFrame(columns=CSV_COLUMNS)
    df.insert(0, "epoch", epoch)
    return df[CSV_COLUMNS]


def _ensure_parent(path: str):
    parent = os.path.dirname(os.path.abspath(path))
    os.makedirs(parent, exist_ok=True)


def write_scores_csv(result: EpochScores, path: str, epoch: Optional[int] = None):
    """Write one row per validator in rank order. Aborted runs are never written."""
    if result.aborted:
        raise ValueError("Refusing to write scores of an aborted run")
    _ensure_parent(path)
    scores_dataframe(result, epoch).to_csv(path, index=False)
    bt.logging.info(f"Saved {len(result.scores)} scores to {path}")


def write_scores_json(result: EpochScores, path: str, epoch: Optional[int] = None):
    if result.aborted:
        raise ValueError("Refusing to write scores of an aborted run")

    targets = result.stake_targets
    payload = {
        "epoch": epoch,
        "notes": result.notes,
        "summary": score_summary(result),
        "avg_this_epoch_credits": result.avg_this_epoch_credits,
        "total_stake_target": targets.total_stake_target if targets else None,
        "stake_from_collateral": targets.stake_from_collateral if targets else None,
        "scores": [s.to_row() for s in result.scores],
    }
    _ensure_parent(path)
    with open(path, "w") as f:
        json.dump(payload, f, indent=2)
    bt.logging.info(f"Saved {len(result.scores)} scores to {path}")


def create_score_table(result: EpochScores, top: Optional[int] = None):
    """Rows for the per-validator table, in rank order."""
    rows = []
    for s in result.scores[:top]:
        v = s.validator
        rows.append([
            s.rank,
            (v.name or v.vote_address)[:24],
            f"{v.commission}%",
            f"{s.marinade_score:,}",
            f"{s.vote_score:,}",
            f"{s.collateral_score:,}",
            f"{s.score:,}",
            f"{s.pct:.4f}%",
            f"{v.marinade_staked:,.0f}",
            f"{s.should_have:,.0f}",
            s.remove_level,
            s.remove_level_reason[:40],
        ])
    return rows


def print_score_stats(result: EpochScores, top: Optional[int] = 25):
    """Print the notes, a summary and the top of the ranking."""
    if result.notes:
        print("--- NOTES ---")
        for note in result.notes:
            print(f"  {note}")

    if result.aborted:
        print("\nRun aborted by the cluster health gate, no scores produced")
        return

    summary = score_summary(result)
    scores = np.array([s.score for s in result.scores], dtype=np.float64)
    positive = scores[scores > 0]
    targets = result.stake_targets

    stats = [
        ["Validators", summary["validators"]],
        ["Positive scores", summary["positive"]],
        ["Total score", f"{summary['total_score']:,}"],
        ["Median positive score", f"{np.median(positive):,.0f}" if positive.size else "-"],
        ["Max score", f"{scores.max():,.0f}" if scores.size else "-"],
        ["Healthy / warn / unstake / delist",
         f"{summary['healthy']} / {summary['warning']} / {summary['unstake']} / {summary['delist']}"],
        ["Blacklisted", summary["blacklisted"]],
        ["Avg this epoch credits", f"{result.avg_this_epoch_credits:,}"],
    ]
    if targets is not None:
        stats.append(["Total stake target", f"{targets.total_stake_target / LAMPORTS_PER_SOL:,.2f}"])
        stats.append(["Stake from collateral", f"{targets.stake_from_collateral / LAMPORTS_PER_SOL:,.2f}"])

    print("\n--- EPOCH SUMMARY ---")
    print(tabulate(stats, tablefmt="grid", stralign="right"))

    headers = ["Rank", "Validator", "Comm", "Marinade", "Vote", "Collat", "Score", "Pct",
               "Staked", "Should Have", "Lvl", "Reason"]
    print(f"\n--- TOP {top or len(result.scores)} VALIDATORS ---")
    print(tabulate(create_score_table(result, top), headers=headers, tablefmt="grid", stralign="right"))
