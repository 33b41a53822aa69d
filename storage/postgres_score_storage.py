import os
import contextlib
import threading
from pathlib import Path
from typing import Optional

import psycopg2
import psycopg2.extras
import bittensor as bt
from dotenv import load_dotenv

from constants import LAMPORTS_PER_SOL


class PostgresScoreStorage():
    _instance: Optional['PostgresScoreStorage'] = None
    _lock = threading.Lock()

    @classmethod
    def get_instance(cls) -> 'PostgresScoreStorage':
        with cls._lock:
            if cls._instance is None:
                cls._instance = cls()
            return cls._instance

    def __init__(self):
        self._initialized = False
        self.lock = threading.RLock()
        self.connection_params = None
        self.env_loaded = False

        # Connection parameters are optional until initialize() is called
        try:
            self.connection_params = self._get_connection_params()
            self.env_loaded = True
        except RuntimeError as e:
            bt.logging.warning(f"Failed to load connection parameters: {e}")

    def _load_env_file(self):
        """storage.env next to this module, if any, populates the process environment."""
        env_file = Path(__file__).parent / "storage.env"

        if not env_file.exists():
            bt.logging.debug(f"Environment file not found: {env_file}, using process environment")
            return False

        load_dotenv(env_file)
        bt.logging.info(f"Loaded environment variables from {env_file}")
        return True

    def _get_connection_params(self):
        """Read DB_* variables, loading storage.env first when present."""
        self._load_env_file()

        required_vars = ['DB_HOST', 'DB_PORT', 'DB_NAME', 'DB_USER', 'DB_PASSWORD']
        missing_vars = [var for var in required_vars if not os.getenv(var)]
        if missing_vars:
            raise RuntimeError(f"Missing required environment variables: {', '.join(missing_vars)}")

        try:
            return {
                'host': os.getenv('DB_HOST'),
                'port': int(os.getenv('DB_PORT')),
                'database': os.getenv('DB_NAME'),
                'user': os.getenv('DB_USER'),
                'password': os.getenv('DB_PASSWORD')
            }
        except ValueError as e:
            raise RuntimeError(f"Invalid environment variable format: {e}")

    def initialize(self):
        if self._initialized:
            return

        with self._lock:
            if self._initialized:
                return

            if not self.env_loaded or not self.connection_params:
                raise RuntimeError(
                    "Database connection parameters not loaded. "
                    "Check that storage.env file exists and contains required variables: "
                    "DB_HOST, DB_PORT, DB_NAME, DB_USER, DB_PASSWORD"
                )

            self._initialize_database()
            self._initialized = True

    def _initialize_database(self):
        """Create the run and per-validator score tables."""
        try:
            with contextlib.closing(self._create_connection()) as connection:
                with connection.cursor() as cursor:
                    cursor.execute("""
                        CREATE TABLE IF NOT EXISTS epoch_runs (
                            id SERIAL PRIMARY KEY,
                            epoch INTEGER NOT NULL UNIQUE,
                            aborted BOOLEAN NOT NULL,
                            validators INTEGER NOT NULL,
                            total_score BIGINT NOT NULL,
                            total_stake_target_sol DECIMAL(20, 2),
                            stake_from_collateral_sol DECIMAL(20, 2),
                            avg_this_epoch_credits BIGINT NOT NULL,
                            notes TEXT NOT NULL,
                            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                        )
                    """)

                    cursor.execute("""
                        CREATE TABLE IF NOT EXISTS epoch_validator_scores (
                            id SERIAL PRIMARY KEY,
                            epoch INTEGER NOT NULL,
                            vote_address VARCHAR(64) NOT NULL,
                            identity VARCHAR(64) NOT NULL,
                            name VARCHAR(255),
                            rank INTEGER NOT NULL,
                            score BIGINT NOT NULL,
                            marinade_score BIGINT NOT NULL,
                            vote_score BIGINT NOT NULL,
                            collateral_score BIGINT NOT NULL,
                            pct DECIMAL(12, 6) NOT NULL,
                            should_have DECIMAL(20, 2) NOT NULL,
                            marinade_staked DECIMAL(20, 2) NOT NULL,
                            remove_level SMALLINT NOT NULL,
                            remove_level_reason TEXT NOT NULL,
                            blacklisted BOOLEAN NOT NULL,
                            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                            UNIQUE (epoch, vote_address)
                        )
                    """)

                    # Lookup by validator: score history of one vote account
                    cursor.execute("""
                        CREATE INDEX IF NOT EXISTS idx_epoch_validator_scores_vote_address
                        ON epoch_validator_scores(vote_address)
                    """)

                    # Leaderboard per epoch
                    cursor.execute("""
                        CREATE INDEX IF NOT EXISTS idx_epoch_validator_scores_epoch_rank
                        ON epoch_validator_scores(epoch, rank)
                    """)

                    connection.commit()
                    bt.logging.info("Database tables initialized successfully")
        except psycopg2.Error as e:
            bt.logging.error(f"Failed to initialize database: {e}")
            raise

    def _create_connection(self):
        """Open a new connection; callers close it."""
        connection = psycopg2.connect(**self.connection_params)
        connection.autocommit = False
        return connection

    def insert_epoch_scores(self, epoch_run: dict, rows: list):
        """
        Write one scoring run and its per-validator rows in a single transaction.

        Re-running an epoch overwrites both. Nothing is committed when either
        insert fails.
        """
        with self.lock:
            with contextlib.closing(self._create_connection()) as connection:
                try:
                    with connection.cursor() as cursor:
                        self._insert_epoch_run(cursor, epoch_run)
                        self._insert_epoch_validator_scores(cursor, epoch_run["epoch"], rows)
                    connection.commit()
                except psycopg2.Error:
                    connection.rollback()
                    raise

    def _insert_epoch_run(self, cursor, epoch_run: dict):
        cursor.execute("""
            INSERT INTO epoch_runs (
                epoch, aborted, validators, total_score, total_stake_target_sol,
                stake_from_collateral_sol, avg_this_epoch_credits, notes
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (epoch) DO UPDATE SET
                aborted = EXCLUDED.aborted,
                validators = EXCLUDED.validators,
                total_score = EXCLUDED.total_score,
                total_stake_target_sol = EXCLUDED.total_stake_target_sol,
                stake_from_collateral_sol = EXCLUDED.stake_from_collateral_sol,
                avg_this_epoch_credits = EXCLUDED.avg_this_epoch_credits,
                notes = EXCLUDED.notes,
                updated_at = CURRENT_TIMESTAMP
        """, (
            epoch_run["epoch"],
            epoch_run["aborted"],
            epoch_run["validators"],
            epoch_run["total_score"],
            epoch_run["total_stake_target_sol"],
            epoch_run["stake_from_collateral_sol"],
            epoch_run["avg_this_epoch_credits"],
            epoch_run["notes"],
        ))

    def _insert_epoch_validator_scores(self, cursor, epoch: int, rows: list):
        if not rows:
            return
        psycopg2.extras.execute_values(cursor, """
            INSERT INTO epoch_validator_scores (
                epoch, vote_address, identity, name, rank, score, marinade_score,
                vote_score, collateral_score, pct, should_have, marinade_staked,
                remove_level, remove_level_reason, blacklisted
            ) VALUES %s
            ON CONFLICT (epoch, vote_address) DO UPDATE SET
                rank = EXCLUDED.rank,
                score = EXCLUDED.score,
                marinade_score = EXCLUDED.marinade_score,
                vote_score = EXCLUDED.vote_score,
                collateral_score = EXCLUDED.collateral_score,
                pct = EXCLUDED.pct,
                should_have = EXCLUDED.should_have,
                marinade_staked = EXCLUDED.marinade_staked,
                remove_level = EXCLUDED.remove_level,
                remove_level_reason = EXCLUDED.remove_level_reason,
                blacklisted = EXCLUDED.blacklisted,
                updated_at = CURRENT_TIMESTAMP
        """, [
            (
                epoch,
                row["vote_address"],
                row["identity"],
                row["name"],
                row["rank"],
                row["score"],
                row["marinade_score"],
                row["vote_score"],
                row["collateral_score"],
                row["pct"],
                round(float(row["should_have"]), 2),
                round(float(row["marinade_staked"]), 2),
                row["remove_level"],
                row["remove_level_reason"],
                row["blacklisted"],
            )
            for row in rows
        ])


# Process-wide storage instance
def get_storage() -> PostgresScoreStorage:
    return PostgresScoreStorage.get_instance()


def epoch_run_row(result, epoch: int) -> dict:
    """Flatten an EpochScores into the epoch_runs row."""
    targets = result.stake_targets
    return {
        "epoch": epoch,
        "aborted": result.aborted,
        "validators": len(result.scores),
        "total_score": result.total_score,
        "total_stake_target_sol": round(targets.total_stake_target / LAMPORTS_PER_SOL, 2) if targets else None,
        "stake_from_collateral_sol": round(targets.stake_from_collateral / LAMPORTS_PER_SOL, 2) if targets else None,
        "avg_this_epoch_credits": result.avg_this_epoch_credits,
        "notes": "\n".join(result.notes),
    }


def log_scores_to_database(result, epoch: int) -> bool:
    """
    Utility function to log one scoring run to the database.

    Database logging is optional: failures are logged and reported through the
    return value, they never fail the scoring run.

    Args:
        result: EpochScores returned by score_epoch()
        epoch: epoch number the scores were computed for
    """
    try:
        storage = get_storage()
        storage.initialize()

        storage.insert_epoch_scores(epoch_run_row(result, epoch), [s.to_row() for s in result.scores])

        bt.logging.info(f"Successfully logged {len(result.scores)} scores to database for epoch {epoch}")
        return True
    except (psycopg2.Error, RuntimeError) as e:
        bt.logging.error(f"Failed to log scores to database: {e}")
        return False
