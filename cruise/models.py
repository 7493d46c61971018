from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Annotated, Optional, List, Dict, Any, Union, Literal
from datetime import datetime
from enum import Enum
from .config import settings, ActionType, RecommendationAction, RiskLevel

# Agent Models
class AgentState(str, Enum):
    INITIALIZING = "initializing"
    RUNNING = "running"
    WAITING = "waiting"
    STOPPED = "stopped"
    EMERGENCY_EXIT = "emergency_exit"

    @property
    def is_active(self) -> bool:
        return self is AgentState.RUNNING

class EmergencyThresholds(BaseModel):
    model_config = ConfigDict(frozen=True)

    min_health_score: float = Field(default=1.5, ge=0.0, le=5.0)
    max_drawdown: float = Field(default=0.15, ge=0.0, le=1.0)

class AgentConfig(BaseModel):
    """Per-agent cruise policy. Immutable once handed to the orchestrator."""
    model_config = ConfigDict(frozen=True)

    max_positions: int = Field(default=settings.DEFAULT_MAX_POSITIONS, ge=0)
    min_sol_balance: float = Field(default=0.1, ge=0.0)  # reserve, never deployed
    target_health_score: float = Field(default=4.0, ge=0.0, le=5.0)
    risk_tolerance: str = "medium"
    health_check_interval_minutes: float = Field(default=settings.DEFAULT_HEALTH_CHECK_INTERVAL_MINUTES, gt=0)
    market_change_check_interval_minutes: float = Field(default=settings.DEFAULT_MARKET_CHECK_INTERVAL_MINUTES, gt=0)
    optimization_interval_hours: float = Field(default=settings.DEFAULT_OPTIMIZATION_INTERVAL_HOURS, gt=0)
    emergency_thresholds: EmergencyThresholds = Field(default_factory=EmergencyThresholds)
    name: Optional[str] = None
    wallet_address: Optional[str] = None

    @property
    def health_check_interval_seconds(self) -> float:
        return self.health_check_interval_minutes * 60

    @property
    def market_change_check_interval_seconds(self) -> float:
        return self.market_change_check_interval_minutes * 60

    @property
    def optimization_interval_seconds(self) -> float:
        return self.optimization_interval_hours * 3600

class AgentStateSnapshot(BaseModel):
    state: AgentState
    config: Optional[AgentConfig] = None

class ActiveAgent(BaseModel):
    id: str
    config: AgentConfig

class RegisteredAgent(BaseModel):
    agent_id: str
    config: AgentConfig
    task_ids: List[str] = []
    registered_at: datetime = Field(default_factory=datetime.utcnow)

# Funds Models
class Position(BaseModel):
    pool_address: str
    value_sol: float = Field(ge=0.0)
    value_usd: float = 0.0

class FundsStatus(BaseModel):
    total_value_sol: float
    available_sol: float
    positions: List[Position] = []
    total_value_usd: Optional[float] = None

# Recommendation Models
class TargetBin(BaseModel):
    bin_id: int
    percentage: float

class PoolRecommendation(BaseModel):
    pool_address: Optional[str] = None
    health_score: float = Field(ge=0.0, le=5.0)
    action: Literal["maintain", "reduce", "rebalance"] = RecommendationAction.MAINTAIN
    adjustment_percentage: Optional[float] = None
    target_bins: List[TargetBin] = []
    price_change_24h: float = 0.0
    volume_change: float = 0.0
    liquidity_change: float = 0.0

    @field_validator("price_change_24h", "volume_change", "liquidity_change", mode="before")
    @classmethod
    def _none_as_zero(cls, v):
        return 0.0 if v is None else v

# Risk Models
class RiskAssessment(BaseModel):
    agent_id: Optional[str] = None
    health_score: float
    risk_level: Literal["low", "medium", "high", "critical"] = RiskLevel.LOW
    warnings: List[str] = []
    recommendations: List[str] = []
    drawdown: Optional[float] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)

# Optimization Models
class RemoveAction(BaseModel):
    type: Literal["remove"] = ActionType.REMOVE
    pool_address: str
    amount_sol: float = Field(ge=0.0)

    @property
    def capital_moved_sol(self) -> float:
        return self.amount_sol

    def transaction_data(self) -> Dict[str, Any]:
        return {"pool_address": self.pool_address, "amount_sol": self.amount_sol}

class AdjustAction(BaseModel):
    type: Literal["adjust"] = ActionType.ADJUST
    pool_address: str
    current_amount_sol: float
    target_amount_sol: float
    target_bins: List[TargetBin]

    @property
    def capital_moved_sol(self) -> float:
        return abs(self.target_amount_sol - self.current_amount_sol)

    def transaction_data(self) -> Dict[str, Any]:
        return {
            "pool_address": self.pool_address,
            "current_amount_sol": self.current_amount_sol,
            "target_amount_sol": self.target_amount_sol,
            "target_bins": [b.model_dump() for b in self.target_bins],
        }

class AddAction(BaseModel):
    type: Literal["add"] = ActionType.ADD
    pool_address: str
    amount_sol: float = Field(ge=0.0)
    target_bins: List[TargetBin] = []

    @property
    def capital_moved_sol(self) -> float:
        return self.amount_sol

    def transaction_data(self) -> Dict[str, Any]:
        return {
            "pool_address": self.pool_address,
            "amount_sol": self.amount_sol,
            "target_bins": [b.model_dump() for b in self.target_bins],
        }

OptimizationAction = Annotated[
    Union[RemoveAction, AdjustAction, AddAction],
    Field(discriminator="type"),
]

class OptimizationPlan(BaseModel):
    agent_id: str
    total_value_sol: float
    actions: List[OptimizationAction] = []
    expected_health_improvement: float = 0.0
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_empty(self) -> bool:
        return not self.actions

# Transaction Models
class TransactionType(str, Enum):
    ADD_LIQUIDITY = "add_liquidity"
    REMOVE_LIQUIDITY = "remove_liquidity"
    REBALANCE_LIQUIDITY = "rebalance_liquidity"

class TransactionRequest(BaseModel):
    type: TransactionType
    agent_id: str
    data: Dict[str, Any] = {}

class TransactionResult(BaseModel):
    success: bool
    error: Optional[str] = None
    signature: Optional[str] = None
