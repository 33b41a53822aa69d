import os
import sys
import argparse
import traceback
import requests
import bittensor as bt

from typing import Dict, List, Optional
from models import (
    ScoringParams,
    EpochPerformance,
    EpochScores,
    InputIntegrityError,
    ScoringInvariantError,
)
from scoring import score_epoch
from reports import write_scores_csv, write_scores_json, print_score_stats
from storage.postgres_score_storage import log_scores_to_database
from sources import (
    load_avg_file,
    load_validators_file,
    load_stake_file,
    load_votes_file,
    load_collateral_file,
    load_blacklist,
    load_epoch_performance,
    build_validator_records,
    build_epoch_performance,
    fetch_vote_accounts,
    fetch_cluster_nodes,
    fetch_block_production,
)
from constants import (
    HEALTHY_VALIDATOR_MAX_COMMISSION,
    MIN_AVERAGE_POSITION,
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
)


class EpochScorer:
    def __init__(self, config=None):
        self.config = config or self.get_config()
        self.setup_logging()
        self.params = self.get_scoring_params()

    def get_config(self):
        # Set up the configuration parser.
        parser = argparse.ArgumentParser(description="Post-process averaged validator scores into stake targets.")
        parser.add_argument('--epoch', type=int, default=0, help="Epoch the scores are computed for.")
        # Inputs
        parser.add_argument('--avg_file', type=str, default=None, help="CSV file with averaged scores (required).")
        parser.add_argument('--validators_file', type=str, default=None, help="Output of `solana validators --output json`.")
        parser.add_argument('--stake_file', type=str, default=None, help="JSON map vote address -> delegated stake (SOL).")
        parser.add_argument('--votes_file', type=str, default=None, help="JSON map vote address -> governance votes.")
        parser.add_argument('--collateral_file', type=str, default=None, help="JSON map vote address -> referral collateral.")
        parser.add_argument('--blacklist_file', type=str, default=None, help="JSON blacklist (identity -> reason, or list).")
        parser.add_argument('--performance_file', type=str, default=None, help="Previous-epoch performance for the cluster health gate.")
        parser.add_argument('--rpc_url', type=str, default=None, help="JSON-RPC endpoint used when live data files are not given.")
        # Outputs
        parser.add_argument('--result_file', type=str, default="scores.csv", help="Path to the output CSV file.")
        parser.add_argument('--result_json', type=str, default=None, help="Optional path to a JSON copy of the output.")
        parser.add_argument('--print_top', type=int, default=25, help="How many validators to print in the report.")
        # Adds postgres database score logging.
        parser.add_argument('--db_score_logging', action='store_true', help="Enable postgres database score logging.")
        # Health ladder
        parser.add_argument('--scoring.max_commission', type=int, default=HEALTHY_VALIDATOR_MAX_COMMISSION)
        parser.add_argument('--scoring.min_average_position', type=float, default=MIN_AVERAGE_POSITION)
        parser.add_argument('--scoring.min_release_version', type=str, default=None, help="Minimum node version not to be unstaked.")
        parser.add_argument('--scoring.recompute_superminority', action='store_true', help="Recompute the superminority from active stake.")
        # Score composition
        parser.add_argument('--scoring.pct_cap', type=float, default=PCT_CAP, help="Max percentage of the total score per validator.")
        parser.add_argument('--scoring.vote_gauges_stake_pct', type=int, default=VOTE_GAUGES_STAKE_PCT)
        parser.add_argument('--scoring.stake_top_n_validators', type=int, default=STAKE_TOP_N_VALIDATORS)
        parser.add_argument('--scoring.stake_from_collateral_max_pct', type=int, default=STAKE_FROM_COLLATERAL_MAX_PCT)
        parser.add_argument('--scoring.stake_delta_sol', type=int, default=STAKE_DELTA_SOL)
        parser.add_argument('--scoring.min_validators', type=int, default=MIN_VALIDATORS)
        parser.add_argument('--scoring.min_positive_validators', type=int, default=MIN_POSITIVE_VALIDATORS)
        # Cluster health gate
        parser.add_argument('--gate.off', action='store_true', help="Skip the cluster health gate.")
        parser.add_argument('--gate.quality_block_producer_percentage', type=int, default=QUALITY_BLOCK_PRODUCER_PERCENTAGE)
        parser.add_argument('--gate.max_poor_block_producer_percentage', type=int, default=MAX_POOR_BLOCK_PRODUCER_PERCENTAGE)
        parser.add_argument('--gate.bad_cluster_average_skip_rate', type=int, default=BAD_CLUSTER_AVERAGE_SKIP_RATE)
        parser.add_argument('--gate.min_epoch_credit_percentage_of_average', type=int, default=MIN_EPOCH_CREDIT_PERCENTAGE_OF_AVERAGE)
        parser.add_argument('--gate.max_poor_voter_percentage', type=int, default=MAX_POOR_VOTER_PERCENTAGE)
        parser.add_argument('--gate.max_old_release_version_percentage', type=int, default=MAX_OLD_RELEASE_VERSION_PERCENTAGE)
        # Adds logging specific arguments.
        bt.logging.add_args(parser)
        # Parse the config.
        config = bt.config(parser)
        # Set up logging directory.
        config.full_path = os.path.expanduser(
            "{}/{}".format(config.logging.logging_dir, "score_epoch")
        )
        # Ensure the logging directory exists.
        os.makedirs(config.full_path, exist_ok=True)
        return config

    def setup_logging(self):
        bt.logging(config=self.config, logging_dir=self.config.full_path)
        bt.logging.info(f"Scoring epoch {self.config.epoch} with config:")
        bt.logging.info(self.config)

    def get_scoring_params(self) -> ScoringParams:
        scoring = self.config.scoring
        gate = self.config.gate
        params = ScoringParams(
            max_commission=scoring.max_commission,
            min_average_position=scoring.min_average_position,
            min_release_version=scoring.min_release_version,
            quality_block_producer_percentage=gate.quality_block_producer_percentage,
            max_poor_block_producer_percentage=gate.max_poor_block_producer_percentage,
            bad_cluster_average_skip_rate=gate.bad_cluster_average_skip_rate,
            min_epoch_credit_percentage_of_average=gate.min_epoch_credit_percentage_of_average,
            max_poor_voter_percentage=gate.max_poor_voter_percentage,
            max_old_release_version_percentage=gate.max_old_release_version_percentage,
            pct_cap=scoring.pct_cap,
            vote_gauges_stake_pct=scoring.vote_gauges_stake_pct,
            stake_top_n_validators=scoring.stake_top_n_validators,
            stake_from_collateral_max_pct=scoring.stake_from_collateral_max_pct,
            stake_delta_sol=scoring.stake_delta_sol,
            recompute_superminority=scoring.recompute_superminority,
            min_validators=scoring.min_validators,
            min_positive_validators=scoring.min_positive_validators,
        )
        params.validate()
        return params

    def load_cluster_data(self) -> Dict[str, Dict]:
        if self.config.validators_file:
            return load_validators_file(self.config.validators_file)
        if self.config.rpc_url:
            accounts = fetch_vote_accounts(self.config.rpc_url)
            versions = fetch_cluster_nodes(self.config.rpc_url)
            for info in accounts.values():
                info["version"] = versions.get(info["identity"], "")
            return accounts
        raise InputIntegrityError("Live cluster data is required: pass --validators_file or --rpc_url")

    def load_performance(self) -> Optional[List[EpochPerformance]]:
        if self.config.gate.off:
            bt.logging.warning("Running with --gate.off, the cluster health gate is skipped")
            return None
        if self.config.performance_file:
            return load_epoch_performance(self.config.performance_file)
        if self.config.rpc_url:
            url = self.config.rpc_url
            return build_epoch_performance(fetch_vote_accounts(url), fetch_cluster_nodes(url), fetch_block_production(url))
        raise InputIntegrityError(
            "The cluster health gate needs --performance_file or --rpc_url, pass --gate.off to skip it"
        )

    def score(self) -> EpochScores:
        config = self.config
        if not config.avg_file:
            raise InputIntegrityError("--avg_file is required")
        avg_df = load_avg_file(config.avg_file)
        cluster = self.load_cluster_data()
        if len(cluster) <= self.params.min_validators:
            raise InputIntegrityError(
                f"Live cluster data has {len(cluster)} validators, more than {self.params.min_validators} required"
            )
        validators = build_validator_records(
            avg_df,
            cluster=cluster,
            stake=load_stake_file(config.stake_file) if config.stake_file else None,
            votes=load_votes_file(config.votes_file) if config.votes_file else None,
            collateral=load_collateral_file(config.collateral_file) if config.collateral_file else None,
        )
        matched = sum(1 for v in validators if v.vote_address in cluster)
        if matched <= self.params.min_validators:
            raise InputIntegrityError(
                f"Only {matched} scored validators match live cluster data, more than {self.params.min_validators} required"
            )
        return score_epoch(
            validators,
            self.params,
            blacklist=load_blacklist(config.blacklist_file),
            performance=self.load_performance(),
        )

    def run(self) -> int:
        bt.logging.info("=========== SCORING EPOCH ===========")
        try:
            result = self.score()
        except (InputIntegrityError, ScoringInvariantError) as e:
            bt.logging.error(f"❌ Scoring failed, nothing written: {e}")
            return 1
        except (OSError, requests.RequestException) as e:
            bt.logging.error(f"❌ Failed to load scoring inputs: {e}")
            traceback.print_exc()
            return 1

        print_score_stats(result, top=self.config.print_top)

        if result.aborted:
            bt.logging.warning("⚠️ Cluster health gate failed, no scores written for this epoch")
            return 0

        write_scores_csv(result, self.config.result_file, epoch=self.config.epoch)
        if self.config.result_json:
            write_scores_json(result, self.config.result_json, epoch=self.config.epoch)

        if self.config.db_score_logging:
            bt.logging.info("Logging scores to database...")
            if log_scores_to_database(result, self.config.epoch):
                bt.logging.success("✅ Successfully logged scores to database!")

        bt.logging.success(f"✅ Scores for epoch {self.config.epoch} written to {self.config.result_file}")
        return 0


if __name__ == "__main__":
    scorer = EpochScorer()
    sys.exit(scorer.run())
