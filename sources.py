"""
sources.py - input loaders

Everything the scoring pipeline consumes comes through here:

  - avg file          CSV with the averaged previous-epoch scores (pandas)
  - validators file   `solana validators --output json` dump
  - stake / votes / collateral files   JSON maps keyed by vote address
  - blacklist         JSON object identity -> reason, or a list of identities
  - performance file  previous-epoch block production + credits (gate input)

and optionally straight from a JSON-RPC node (single request, no retry).
"""

import json
import requests
import pandas as pd
import bittensor as bt

from typing import Any, Dict, List, Optional
from health import build_blacklist
from models import ValidatorRecord, EpochPerformance, InputIntegrityError

AVG_FILE_COLUMNS = [
    "identity",
    "vote_address",
    "name",
    "score",
    "commission",
    "epoch_credits",
    "average_position",
    "data_center_concentration",
    "avg_active_stake",
    "can_halt_the_network_group",
    "version",
]

RPC_TIMEOUT = 30


def _read_json(path: str) -> Any:
    try:
        with open(path, "r") as f:
            return json.load(f)
    except json.JSONDecodeError as exc:
        raise InputIntegrityError(f"Malformed JSON in {path}: {exc}") from exc


def load_avg_file(path: str) -> pd.DataFrame:
    """Load the averaged scores CSV. Missing columns are an input-integrity failure."""
    bt.logging.info(f"Start from scores file {path}")
    df = pd.read_csv(path, dtype={"identity": str, "vote_address": str, "name": str, "version": str})

    missing = [c for c in AVG_FILE_COLUMNS if c not in df.columns]
    if missing:
        raise InputIntegrityError(f"{path} is missing required columns: {missing}")

    df["name"] = df["name"].fillna("")
    df["version"] = df["version"].fillna("")
    for column in ("identity", "vote_address"):
        if df[column].isna().any():
            raise InputIntegrityError(f"{path} has rows without {column}")

    bt.logging.info(f"avg file contains {len(df)} records, total_score {int(df['score'].sum()):,}")
    return df


def load_validators_file(path: str) -> Dict[str, Dict[str, Any]]:
    """
    Load a `solana validators --output json` dump.

    Returns vote address -> {this_epoch_credits, delinquent, version, active_stake}.
    """
    bt.logging.info(f"Read solana validators output from {path}")
    data = _read_json(path)
    validators = data.get("validators") if isinstance(data, dict) else None
    if not isinstance(validators, list):
        raise InputIntegrityError(f"{path} has no 'validators' list")

    result = {}
    for info in validators:
        vote = info.get("voteAccountPubkey")
        if not vote:
            continue
        result[vote] = {
            "this_epoch_credits": int(info.get("epochCredits") or 0),
            "delinquent": bool(info.get("delinquent", False)),
            "version": info.get("version") or "",
            "active_stake": int(info.get("activatedStake") or 0),
        }
    return result


def load_stake_file(path: str) -> Dict[str, float]:
    """Currently delegated stake per vote address, in SOL."""
    return {vote: float(amount) for vote, amount in _read_json(path).items()}


def load_votes_file(path: str) -> Dict[str, int]:
    """Governance vote weight per vote address."""
    return {vote: int(votes) for vote, votes in _read_json(path).items()}


def load_collateral_file(path: str) -> Dict[str, Dict[str, int]]:
    """Referral collateral per vote address: {"deposit": lamports, "balance": lamports}."""
    result = {}
    for vote, entry in _read_json(path).items():
        if isinstance(entry, dict):
            deposit = int(entry.get("deposit", 0))
            balance = int(entry.get("balance", deposit))
        else:
            deposit = balance = int(entry)
        result[vote] = {"deposit": deposit, "balance": balance}
    return result


def load_blacklist(path: Optional[str]) -> Dict[str, str]:
    if not path:
        return {}
    blacklist = build_blacklist(_read_json(path))
    bt.logging.info(f"Loaded {len(blacklist)} blacklist entries from {path}")
    return blacklist


def load_epoch_performance(path: str) -> List[EpochPerformance]:
    """Previous-epoch performance rows for the cluster health gate."""
    data = _read_json(path)
    if not isinstance(data, list):
        raise InputIntegrityError(f"{path} must contain a list of performance rows")
    try:
        return [
            EpochPerformance(
                identity=row["identity"],
                leader_slots=int(row.get("leader_slots", 0)),
                blocks_produced=int(row.get("blocks_produced", 0)),
                epoch_credits=int(row.get("epoch_credits", 0)),
                node_version=row.get("node_version") or "",
            )
            for row in data
        ]
    except KeyError as exc:
        raise InputIntegrityError(f"{path} has a performance row without {exc}") from exc


def build_validator_records(
    avg_df: pd.DataFrame,
    cluster: Optional[Dict[str, Dict[str, Any]]] = None,
    stake: Optional[Dict[str, float]] = None,
    votes: Optional[Dict[str, int]] = None,
    collateral: Optional[Dict[str, Dict[str, int]]] = None,
) -> List[ValidatorRecord]:
    """Merge the avg file with the live cluster data and the stake/votes/collateral maps."""
    cluster = cluster or {}
    stake = stake or {}
    votes = votes or {}
    collateral = collateral or {}

    records = []
    for row in avg_df.itertuples(index=False):
        vote = row.vote_address
        live = cluster.get(vote, {})
        deposit = collateral.get(vote, {})
        records.append(ValidatorRecord(
            identity=row.identity,
            vote_address=vote,
            name=row.name,
            commission=int(row.commission),
            node_version=live.get("version") or row.version,
            credits_observed=int(row.epoch_credits),
            this_epoch_credits=live.get("this_epoch_credits", 0),
            average_position=float(row.average_position),
            data_center_concentration=float(row.data_center_concentration),
            under_nakamoto_coefficient=bool(row.can_halt_the_network_group),
            delinquent=live.get("delinquent", False),
            marinade_staked=stake.get(vote, 0.0),
            votes_read=votes.get(vote, 0),
            collateral_deposit=deposit.get("deposit", 0),
            collateral_balance=deposit.get("balance", 0),
            active_stake=live.get("active_stake", int(row.avg_active_stake)),
            base_score=int(row.score),
        ))

    matched = sum(1 for r in records if r.vote_address in cluster)
    bt.logging.info(f"Built {len(records)} validator records ({matched} matched live cluster data)")
    return records


# ---------------------------------------------------------------------------
# JSON-RPC (single shot)
# ---------------------------------------------------------------------------

def _rpc_call(url: str, method: str, params: Optional[list] = None) -> Any:
    payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params or []}
    response = requests.post(url, json=payload, timeout=RPC_TIMEOUT)
    response.raise_for_status()
    body = response.json()
    if "error" in body:
        raise InputIntegrityError(f"RPC {method} failed: {body['error']}")
    return body["result"]


def fetch_vote_accounts(url: str) -> Dict[str, Dict[str, Any]]:
    """
    Query getVoteAccounts.

    Returns the same shape as load_validators_file, plus identity and commission.
    """
    result = _rpc_call(url, "getVoteAccounts")
    accounts = {}
    for delinquent, key in ((False, "current"), (True, "delinquent")):
        for info in result.get(key, []):
            this_epoch_credits = 0
            if info.get("epochCredits"):
                _, credits, previous_credits = info["epochCredits"][-1]
                this_epoch_credits = credits - previous_credits
            accounts[info["votePubkey"]] = {
                "identity": info["nodePubkey"],
                "commission": int(info.get("commission", 0)),
                "this_epoch_credits": this_epoch_credits,
                "delinquent": delinquent,
                "version": "",
                "active_stake": int(info.get("activatedStake", 0)),
            }
    bt.logging.info(f"Fetched {len(accounts)} vote accounts from {url}")
    return accounts


def fetch_cluster_nodes(url: str) -> Dict[str, str]:
    """Query getClusterNodes. Returns identity -> node version."""
    result = _rpc_call(url, "getClusterNodes")
    return {node["pubkey"]: node.get("version") or "" for node in result}


def fetch_block_production(url: str) -> Dict[str, Dict[str, int]]:
    """Query getBlockProduction. Returns identity -> {leader_slots, blocks_produced}."""
    result = _rpc_call(url, "getBlockProduction")
    by_identity = result["value"]["byIdentity"]
    return {
        identity: {"leader_slots": int(slots), "blocks_produced": int(blocks)}
        for identity, (slots, blocks) in by_identity.items()
    }


def build_epoch_performance(
    vote_accounts: Dict[str, Dict[str, Any]],
    node_versions: Dict[str, str],
    block_production: Dict[str, Dict[str, int]],
) -> List[EpochPerformance]:
    """Assemble gate input from the three RPC queries above."""
    rows = []
    for info in vote_accounts.values():
        identity = info["identity"]
        production = block_production.get(identity, {})
        rows.append(EpochPerformance(
            identity=identity,
            leader_slots=production.get("leader_slots", 0),
            blocks_produced=production.get("blocks_produced", 0),
            epoch_credits=info["this_epoch_credits"],
            node_version=node_versions.get(identity, ""),
        ))
    return rows

