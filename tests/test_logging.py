import pytest
import structlog
from structlog.testing import capture_logs

from agent_core.infrastructure.observability.logging import (
    AgentLogger,
    MetricsCollector,
    add_service_context,
    setup_logging,
)


@pytest.fixture
def reset_structlog():
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


def test_setup_logging_binds_service_context(reset_structlog) -> None:
    setup_logging(log_level="debug", log_format="console", service_name="travel-agent")

    bound = structlog.contextvars.get_contextvars()
    processors = structlog.get_config()["processors"]

    assert bound["service"] == "travel-agent"
    assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)
    assert add_service_context in processors


def test_json_format_uses_the_json_renderer(reset_structlog) -> None:
    setup_logging(log_format="json")

    assert isinstance(structlog.get_config()["processors"][-1], structlog.processors.JSONRenderer)


def test_service_context_fills_operation_fields_from_context_vars(reset_structlog) -> None:
    structlog.contextvars.bind_contextvars(operation_id="op-1", user_id="u1")

    event = add_service_context(None, "info", {"event": "x", "user_id": "explicit"})

    assert event["operation_id"] == "op-1"
    assert event["user_id"] == "explicit"
    assert "conversation_id" not in event
    assert event["timestamp"]


def test_agent_events_are_logged() -> None:
    with capture_logs() as logs:
        AgentLogger("tests").log_agent_event("bailed", "supervisor", "op-1", {"sub_agent": "writer"})

    assert logs[0]["event"] == "agent_event"
    assert logs[0]["event_type"] == "bailed"
    assert logs[0]["data"] == {"sub_agent": "writer"}


def test_metrics_summary() -> None:
    collector = MetricsCollector()
    collector.record_latency("generate_text", 10.0)
    collector.record_latency("generate_text", 30.0)
    collector.increment_counter("operations.failed")
    collector.increment_counter("operations.failed", 2)

    summary = collector.get_metrics_summary()

    assert summary["latency.generate_text"] == {"count": 2, "avg": 20.0, "min": 10.0, "max": 30.0}
    assert summary["operations.failed"] == 3
