import pytest

from yeelight_lan_bridge import metrics
from yeelight_lan_bridge.backoff import RetryPolicy
from yeelight_lan_bridge.exceptions import CommandFailed
from yeelight_lan_bridge.models import Endpoint
from yeelight_lan_bridge.session import DeviceSession


def _sample(name: str, **labels: str) -> float:
    value = metrics.get_registry().get_sample_value(name, labels or None)
    return value or 0.0


def test_discovery_helpers_increment_counters() -> None:
    before = _sample("yeelight_discovery_errors_total", reason="non_utf8")
    metrics.record_discovery_error("non_utf8")
    assert _sample("yeelight_discovery_errors_total", reason="non_utf8") == before + 1
    assert b"yeelight_discovery_errors_total" in metrics.latest_metrics()


@pytest.mark.asyncio
async def test_failed_query_recorded_by_method_and_result(unused_tcp_port: int) -> None:
    labels = {"method": "get_prop", "kind": "query", "result": "failed"}
    before = _sample("yeelight_commands_total", **labels)
    session = DeviceSession("15243f", Endpoint("127.0.0.1", unused_tcp_port), policy=RetryPolicy(retries=1, timeout=0.02))

    with pytest.raises(CommandFailed):
        await session.query(["power"])

    assert _sample("yeelight_commands_total", **labels) == before + 1
    assert _sample("yeelight_command_attempts_total", outcome="transient") >= 2
