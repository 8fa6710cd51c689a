"""Stream and key name constants for Redis messaging and caching."""

REWARD_STREAM = "bandit:rewards"
CONVERSION_STREAM = "bandit:conversions"
MAINTENANCE_STREAM = "bandit:maintenance"


def arm_stats_key(arm_id: str) -> str:
    return f"ab:arm:{arm_id}"


def assignment_key(experiment_id: str, user_id: str) -> str:
    return f"ab:assign:{experiment_id}:{user_id}"


def pending_key(pending_id: str) -> str:
    return f"bandit:pending:{pending_id}"


def window_key(experiment_id: str, arm_id: str) -> str:
    return f"bandit:window:{experiment_id}:{arm_id}"


def window_stats_key(experiment_id: str, arm_id: str) -> str:
    return f"bandit:window:stats:{experiment_id}:{arm_id}"


def currency_rate_key(currency: str, base: str = "USD") -> str:
    return f"currency:rate:{currency}:{base}"
