import time
from typing import Callable, Dict, List, Optional, Tuple
import structlog

from .config import settings, RecommendationAction
from .collaborators import PoolRecommendationSource
from .error_handling import RecommendationLookupError, error_collector
from .models import (
    AgentConfig, AdjustAction, FundsStatus, OptimizationAction, OptimizationPlan,
    PoolRecommendation, Position, RemoveAction, RiskAssessment
)

logger = structlog.get_logger()

class RebalancePlanner:
    """Turns funds and pool recommendations into a bounded rebalancing plan"""

    def __init__(
        self,
        recommendation_source: PoolRecommendationSource,
        clock: Optional[Callable[[], float]] = None,
        price_cache_ttl_seconds: Optional[float] = None
    ):
        self.recommendation_source = recommendation_source
        self._clock = clock or time.monotonic
        self.price_cache_ttl = (
            price_cache_ttl_seconds if price_cache_ttl_seconds is not None
            else settings.PRICE_CHANGE_CACHE_MINUTES * 60
        )
        # pool_address -> (price_change_24h, fetched_at)
        self._recent_price_changes: Dict[str, Tuple[float, float]] = {}

    async def calculate_optimal_positions(
        self, agent_id: str, funds: FundsStatus, config: AgentConfig
    ) -> Optional[OptimizationPlan]:
        """Compute the ordered actions for one optimization cycle.

        Returns None only when a collaborator fails; an empty plan is a valid result.
        """
        try:
            logger.info("Calculating optimal positions", agent_id=agent_id)

            plan = OptimizationPlan(agent_id=agent_id, total_value_sol=funds.total_value_sol)

            # The reserve is never deployed
            if funds.available_sol <= config.min_sol_balance:
                logger.info("Insufficient funds for optimization",
                            agent_id=agent_id,
                            available_sol=funds.available_sol,
                            min_sol_balance=config.min_sol_balance)
                return plan

            recommendations = await self._fetch_recommendations(funds.positions)

            reduction_actions = self._identify_reduction_actions(funds.positions, recommendations)
            adjustment_actions = self._identify_adjustment_actions(funds.positions, recommendations)
            actions: List[OptimizationAction] = [*reduction_actions, *adjustment_actions]

            available_sol = funds.available_sol + sum(a.amount_sol for a in reduction_actions)
            available_sol -= config.min_sol_balance

            if available_sol > 0:
                max_new_positions = config.max_positions - len(funds.positions) + len(reduction_actions)
                actions.extend(await self._identify_addition_actions(
                    agent_id,
                    [p.pool_address for p in funds.positions],
                    available_sol,
                    max_new_positions
                ))

            plan.actions = actions
            plan.expected_health_improvement = self._calculate_expected_improvement(actions)

            logger.info("Optimization plan created",
                        agent_id=agent_id,
                        actions=len(plan.actions),
                        expected_improvement=plan.expected_health_improvement)
            return plan

        except Exception as e:
            logger.error(f"Failed to calculate optimal positions for agent {agent_id}", error=str(e))
            error_collector.record_error(e, {"agent_id": agent_id, "operation": "calculate_optimal_positions"})
            return None

    async def identify_unhealthy_positions(
        self, positions: List[Position], risk_assessment: Optional[RiskAssessment] = None
    ) -> List[Position]:
        """Positions scoring below the unhealthy threshold or flagged for reduction, worst first"""
        if not positions:
            return []

        recommendations = await self._fetch_recommendations(positions)

        unhealthy = [
            position for position in positions
            if position.pool_address in recommendations
            and self._is_unhealthy(recommendations[position.pool_address])
        ]
        unhealthy.sort(key=lambda p: recommendations[p.pool_address].health_score)

        if unhealthy and risk_assessment is not None:
            logger.info("Unhealthy positions identified",
                        agent_id=risk_assessment.agent_id,
                        count=len(unhealthy),
                        agent_health_score=risk_assessment.health_score)
        return unhealthy

    async def check_for_significant_changes(
        self, agent_id: str, positions: List[Position]
    ) -> Optional[List[Position]]:
        """Positions whose pool moved past the price, volume or liquidity thresholds.

        Returns None when nothing changed enough to act on.
        """
        if not positions:
            return None

        changed: List[Position] = []
        for position in positions:
            recommendation = await self._get_recommendation(position.pool_address)
            if recommendation is None:
                continue

            price_change = self._price_change(position.pool_address, recommendation)
            volume_change = recommendation.volume_change
            liquidity_change = recommendation.liquidity_change

            if (abs(price_change) > settings.PRICE_CHANGE_THRESHOLD
                    or abs(volume_change) > settings.VOLUME_CHANGE_THRESHOLD
                    or abs(liquidity_change) > settings.LIQUIDITY_CHANGE_THRESHOLD):
                logger.info("Significant change detected",
                            agent_id=agent_id,
                            pool_address=position.pool_address,
                            price_change=price_change,
                            volume_change=volume_change,
                            liquidity_change=liquidity_change)
                changed.append(position)

        return changed or None

    def clear_price_cache(self):
        self._recent_price_changes.clear()

    def _price_change(self, pool_address: str, recommendation: PoolRecommendation) -> float:
        # A price change seen within the cache window wins over the fresh value
        now = self._clock()
        self._prune_price_cache(now)

        cached = self._recent_price_changes.get(pool_address)
        if cached is not None:
            return cached[0]

        self._recent_price_changes[pool_address] = (recommendation.price_change_24h, now)
        return recommendation.price_change_24h

    def _prune_price_cache(self, now: float):
        expired = [
            pool_address for pool_address, (_, fetched_at) in self._recent_price_changes.items()
            if now - fetched_at >= self.price_cache_ttl
        ]
        for pool_address in expired:
            del self._recent_price_changes[pool_address]

    async def _get_recommendation(self, pool_address: str) -> Optional[PoolRecommendation]:
        try:
            return await self.recommendation_source.get_recommendation(pool_address)
        except Exception as e:
            raise RecommendationLookupError(pool_address, cause=e) from e

    async def _fetch_recommendations(self, positions: List[Position]) -> Dict[str, PoolRecommendation]:
        recommendations: Dict[str, PoolRecommendation] = {}
        for position in positions:
            recommendation = await self._get_recommendation(position.pool_address)
            if recommendation is not None:
                recommendations[position.pool_address] = recommendation
        return recommendations

    def _is_unhealthy(self, recommendation: PoolRecommendation) -> bool:
        return (recommendation.health_score < settings.UNHEALTHY_HEALTH_SCORE_THRESHOLD
                or recommendation.action == RecommendationAction.REDUCE)

    def _identify_reduction_actions(
        self, positions: List[Position], recommendations: Dict[str, PoolRecommendation]
    ) -> List[RemoveAction]:
        actions = []
        for position in positions:
            recommendation = recommendations.get(position.pool_address)
            if recommendation is None:
                continue

            if (recommendation.action == RecommendationAction.REDUCE
                    or recommendation.health_score < settings.REDUCE_HEALTH_SCORE_THRESHOLD):
                fraction = recommendation.adjustment_percentage or settings.DEFAULT_REDUCTION_PERCENTAGE
                fraction = min(max(fraction, 0.0), 1.0)
                actions.append(RemoveAction(
                    pool_address=position.pool_address,
                    amount_sol=position.value_sol * fraction
                ))
        return actions

    def _identify_adjustment_actions(
        self, positions: List[Position], recommendations: Dict[str, PoolRecommendation]
    ) -> List[AdjustAction]:
        actions = []
        for position in positions:
            recommendation = recommendations.get(position.pool_address)
            if recommendation is None:
                continue

            if recommendation.action == RecommendationAction.REBALANCE and recommendation.target_bins:
                fraction = recommendation.adjustment_percentage or settings.DEFAULT_ADJUSTMENT_PERCENTAGE
                actions.append(AdjustAction(
                    pool_address=position.pool_address,
                    current_amount_sol=position.value_sol,
                    target_amount_sol=position.value_sol * fraction,
                    target_bins=recommendation.target_bins
                ))
        return actions

    async def _identify_addition_actions(
        self,
        agent_id: str,
        current_pools: List[str],
        available_sol: float,
        max_new_positions: int
    ) -> List[OptimizationAction]:
        """Select new pools for idle capital.

        No selection criteria exist yet, so this always yields no actions.
        """
        if available_sol <= 0 or max_new_positions <= 0:
            return []

        logger.debug("Addition pass has no pool selection criteria",
                     agent_id=agent_id,
                     available_sol=available_sol,
                     open_slots=max_new_positions,
                     held_pools=len(current_pools))
        return []

    def _calculate_expected_improvement(self, actions: List[OptimizationAction]) -> float:
        # Placeholder: a flat score per action
        return len(actions) * settings.HEALTH_IMPROVEMENT_PER_ACTION
