# Base units per native currency unit
LAMPORTS_PER_SOL = 1_000_000_000

# Superminority threshold (percentage of total active stake)
SUPERMINORITY_STAKE_PERCENTAGE = 33

# Health ladder parameters
# Validators above this commission are removed from the allow-list entirely.
HEALTHY_VALIDATOR_MAX_COMMISSION = 20
# 50 = average, validators below this historical position get a warning (score halved)
MIN_AVERAGE_POSITION = 35.0
# Current epoch credits as a fraction of the cluster average (numerator / 10)
SEVERE_UNDERPRODUCTION_TENTHS = 8
MILD_UNDERPRODUCTION_TENTHS = 9
# Minimum node version not to be emergency unstaked. None disables the check.
MIN_RELEASE_VERSION = None

# Cluster health gate parameters (all in percent)
QUALITY_BLOCK_PRODUCER_PERCENTAGE = 15
MAX_POOR_BLOCK_PRODUCER_PERCENTAGE = 20
BAD_CLUSTER_AVERAGE_SKIP_RATE = 50
MIN_EPOCH_CREDIT_PERCENTAGE_OF_AVERAGE = 50
MAX_POOR_VOTER_PERCENTAGE = 20
MAX_OLD_RELEASE_VERSION_PERCENTAGE = 10

# Score composition parameters
# Cap max percentage of total score given to a single validator
PCT_CAP = 1.5
# How much of the total score is redistributed by governance votes (percent)
VOTE_GAUGES_STAKE_PCT = 10
# How many validators are guaranteed to keep their scores
STAKE_TOP_N_VALIDATORS = 430
# How much of the total stake target can come from referral collateral (percent)
STAKE_FROM_COLLATERAL_MAX_PCT = 30
# Imagined stake delta added on top of the currently delegated stake (currency units)
STAKE_DELTA_SOL = 100_000

# Commission bonus tiers: (max commission, multiplier), checked in order
COMMISSION_BONUS_TIERS = (
    (6, 5),
    (7, 4),
    (8, 3),
    (9, 2),
)

# Sanity checks
MIN_VALIDATORS = 100
MIN_POSITIVE_VALIDATORS = 300

# Base score parameters for the previous-epoch classification
SCORE_MAX_COMMISSION = 10
SCORE_MIN_STAKE_SOL = 100
SCORE_CONCENTRATION_POINT_DISCOUNT = 1_500
SCORE_MIN_AVG_POSITION = 40.0

DEFAULT_BLACKLIST_REASON = (
    "This validator is blacklisted for bad behavior (cheating with credits, end of epoch change of commission). "
    "It won't be able to receive stake."
)
