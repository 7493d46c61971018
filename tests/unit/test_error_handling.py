import pytest

from cruise.error_handling import (
    CollaboratorError, ErrorCollector, RecommendationLookupError, collaborator_call
)


class TestErrorCollector:

    def test_summary_includes_all_time_counts(self):
        collector = ErrorCollector(max_errors=2)
        collector.record_error(ValueError("a"), {"agent_id": "a1"})
        collector.record_error(ValueError("b"))
        collector.record_error(KeyError("c"))

        summary = collector.get_error_summary()

        # Only the last two errors are retained, counts cover every recorded error
        assert summary["total_errors"] == 2
        assert summary["error_types"]["ValueError"]["count"] == 1
        assert summary["all_time_counts"] == {"ValueError": 2, "KeyError": 1}

    def test_clear(self):
        collector = ErrorCollector()
        collector.record_error(RuntimeError("x"))
        collector.clear()

        summary = collector.get_error_summary()
        assert summary["total_errors"] == 0
        assert summary["all_time_counts"] == {}


class TestCollaboratorCall:

    @pytest.mark.asyncio
    async def test_wraps_plain_exceptions(self):
        with pytest.raises(CollaboratorError) as exc_info:
            async with collaborator_call("funds_manager", "get_agent_funds", "a1"):
                raise TimeoutError("slow")

        error = exc_info.value
        assert error.collaborator == "funds_manager"
        assert error.operation == "get_agent_funds"
        assert error.agent_id == "a1"
        assert isinstance(error.cause, TimeoutError)

    @pytest.mark.asyncio
    async def test_collaborator_errors_pass_through(self):
        original = RecommendationLookupError("P1", cause=RuntimeError("down"))

        with pytest.raises(RecommendationLookupError) as exc_info:
            async with collaborator_call("pool_recommendation_source", "identify_unhealthy_positions"):
                raise original

        assert exc_info.value is original
