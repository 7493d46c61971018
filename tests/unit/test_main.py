import pytest
import structlog

from cruise.error_handling import ConfigurationError
from cruise.external_apis import SignalServiceClient
from cruise.main import configure_logging, create_cruise_orchestrator, cruise_lifespan
from cruise.orchestrator import CruiseOrchestrator


@pytest.fixture
def restore_structlog():
    yield
    structlog.reset_defaults()


class TestMain:

    @pytest.mark.parametrize("log_format", ["json", "console"])
    def test_configure_logging(self, restore_structlog, log_format):
        configure_logging(log_level="ERROR", log_format=log_format)
        assert structlog.is_configured()

    def test_unknown_log_format_rejected(self):
        with pytest.raises(ConfigurationError):
            configure_logging(log_format="xml")

    def test_factory_defaults_to_signal_service(self, agent_state_machine, transaction_executor,
                                                funds_manager, risk_controller):
        orchestrator = create_cruise_orchestrator(agent_state_machine, transaction_executor,
                                                  funds_manager, risk_controller)

        assert isinstance(orchestrator, CruiseOrchestrator)
        assert isinstance(orchestrator.planner.recommendation_source, SignalServiceClient)
        assert orchestrator.emergency_handler is None

    def test_factory_builds_independent_instances(self, agent_state_machine, transaction_executor,
                                                  funds_manager, risk_controller, recommendation_source):
        first = create_cruise_orchestrator(agent_state_machine, transaction_executor, funds_manager,
                                           risk_controller, recommendation_source)
        second = create_cruise_orchestrator(agent_state_machine, transaction_executor, funds_manager,
                                            risk_controller, recommendation_source)

        assert first.scheduler is not second.scheduler
        assert first.metrics is not second.metrics

    @pytest.mark.asyncio
    async def test_lifespan_starts_and_stops(self, orchestrator, agent_state_machine, active_agent):
        agent_state_machine.get_active_agents.return_value = [active_agent]

        async with cruise_lifespan(orchestrator) as running:
            assert running is orchestrator
            assert orchestrator.is_running is True
            assert orchestrator.is_agent_registered(active_agent.id)

        assert orchestrator.is_running is False
        assert orchestrator.get_registered_agent_count() == 0
        await orchestrator.scheduler.drain()

    @pytest.mark.asyncio
    async def test_lifespan_opens_and_closes_http_client(self, agent_state_machine, transaction_executor,
                                                         funds_manager, risk_controller):
        orchestrator = create_cruise_orchestrator(agent_state_machine, transaction_executor,
                                                  funds_manager, risk_controller)
        client = orchestrator.planner.recommendation_source

        async with cruise_lifespan(orchestrator):
            assert client.client is not None

        assert client.client is None
        await orchestrator.scheduler.drain()
