"""
Contracts of the services the cruise loop depends on.

Implementations live in the surrounding system; the orchestrator and planner
only rely on the shapes below. Every method may block on I/O and is expected
to be time-bounded by its own implementation.
"""
from typing import Awaitable, Callable, List, Optional, Protocol, runtime_checkable

from .models import (
    ActiveAgent, AgentStateSnapshot, FundsStatus, PoolRecommendation,
    RiskAssessment, TransactionRequest, TransactionResult
)


@runtime_checkable
class AgentStateMachine(Protocol):
    async def get_active_agents(self) -> List[ActiveAgent]: ...

    async def get_agent_state(self, agent_id: str) -> AgentStateSnapshot: ...


@runtime_checkable
class TransactionExecutor(Protocol):
    async def execute_transaction(self, request: TransactionRequest) -> TransactionResult: ...


@runtime_checkable
class FundsManager(Protocol):
    async def get_agent_funds(self, agent_id: str) -> FundsStatus: ...


@runtime_checkable
class RiskController(Protocol):
    async def assess_risk(self, agent_id: str) -> RiskAssessment: ...


@runtime_checkable
class PoolRecommendationSource(Protocol):
    async def get_recommendation(self, pool_address: str) -> Optional[PoolRecommendation]: ...


# Invoked when a health check breaches the agent's emergency thresholds
EmergencyHandler = Callable[[str, RiskAssessment, FundsStatus], Awaitable[None]]
