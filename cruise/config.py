from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or console

    # Scheduler
    SCHEDULER_TICK_SECONDS: float = 1.0
    TASK_METRICS_INTERVAL_SECONDS: float = 30.0
    METRICS_REPORT_INTERVAL_SECONDS: float = 60.0

    # Rebalance planner thresholds
    PRICE_CHANGE_CACHE_MINUTES: float = 30.0
    PRICE_CHANGE_THRESHOLD: float = 0.05
    VOLUME_CHANGE_THRESHOLD: float = 0.2
    LIQUIDITY_CHANGE_THRESHOLD: float = 0.1
    REDUCE_HEALTH_SCORE_THRESHOLD: float = 2.0
    UNHEALTHY_HEALTH_SCORE_THRESHOLD: float = 3.0
    DEFAULT_REDUCTION_PERCENTAGE: float = 0.3
    DEFAULT_ADJUSTMENT_PERCENTAGE: float = 1.0
    HEALTH_IMPROVEMENT_PER_ACTION: float = 0.2

    # Orchestrator policy
    OPTIMIZE_ON_MARKET_CHANGE: bool = True
    OPTIMIZE_ON_UNHEALTHY_POSITIONS: bool = True

    # Default cruise intervals, used when an agent config leaves them unset
    DEFAULT_MAX_POSITIONS: int = 5
    DEFAULT_HEALTH_CHECK_INTERVAL_MINUTES: float = 5.0
    DEFAULT_MARKET_CHECK_INTERVAL_MINUTES: float = 15.0
    DEFAULT_OPTIMIZATION_INTERVAL_HOURS: float = 4.0

    # Signal service (pool recommendations)
    SIGNAL_SERVICE_URL: str = "http://localhost:3002"
    SIGNAL_SERVICE_TIMEOUT_SECONDS: float = 10.0
    SIGNAL_SERVICE_MAX_RETRIES: int = 3

    class Config:
        env_file = ".env"
        env_prefix = "CRUISE_"
        case_sensitive = True
        extra = "ignore"  # Allow extra fields in .env

# Global settings instance
settings = Settings()

# Optimization action types
class ActionType:
    ADD = "add"
    REMOVE = "remove"
    ADJUST = "adjust"

# Pool recommendation actions
class RecommendationAction:
    MAINTAIN = "maintain"
    REDUCE = "reduce"
    REBALANCE = "rebalance"

# Risk levels reported by the risk controller
class RiskLevel:
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

# Per-agent scheduled task kinds
class TaskKind:
    HEALTH_CHECK = "health_check"
    MARKET_CHECK = "market_check"
    OPTIMIZATION = "optimization"

# Scheduler tag for tasks owned by the orchestrator itself
SYSTEM_TASK_TAG = "system"
