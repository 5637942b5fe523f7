import asyncio

import pytest

from agent_core.domain.orchestration.core.abort import (
    AbortController,
    Bailed,
    Cancelled,
    is_bail,
    to_abort_reason,
)
from agent_core.domain.orchestration.core.errors import AbortedError


def test_first_abort_reason_wins() -> None:
    controller = AbortController()
    seen = []
    controller.signal.add_listener(seen.append)

    controller.abort("user pressed stop")
    controller.abort(Bailed(agent_name="writer", response="late"))

    assert controller.signal.aborted
    assert controller.signal.reason == Cancelled(reason="user pressed stop", message="user pressed stop")
    assert seen == [controller.signal.reason]


def test_listener_added_after_abort_fires_immediately() -> None:
    controller = AbortController()
    controller.abort()

    seen = []
    controller.signal.add_listener(seen.append)

    assert seen == [Cancelled()]


def test_removed_listener_is_not_called() -> None:
    controller = AbortController()
    seen = []
    controller.signal.add_listener(seen.append)
    controller.signal.remove_listener(seen.append)

    controller.abort()

    assert seen == []


def test_failing_listener_does_not_stop_the_others() -> None:
    controller = AbortController()
    seen = []

    def broken(reason):
        raise RuntimeError("listener bug")

    controller.signal.add_listener(broken)
    controller.signal.add_listener(seen.append)
    controller.abort()

    assert len(seen) == 1


def test_exception_reason_keeps_the_original_object() -> None:
    cause = ValueError("quota exceeded")
    reason = to_abort_reason(cause)

    assert reason.reason is cause
    assert reason.message == "quota exceeded"
    assert not is_bail(reason)
    assert is_bail(Bailed(agent_name="writer", response="done"))


def test_throw_if_aborted_carries_the_reason() -> None:
    controller = AbortController()
    controller.signal.throw_if_aborted()

    bail = Bailed(agent_name="writer", response="done")
    controller.abort(bail)

    with pytest.raises(AbortedError) as exc_info:
        controller.signal.throw_if_aborted()
    assert exc_info.value.reason is bail
    assert "writer" in exc_info.value.message


def test_race_returns_the_result_when_not_aborted() -> None:
    async def scenario():
        controller = AbortController()
        return await controller.signal.race(asyncio.sleep(0, result="value"))

    assert asyncio.run(scenario()) == "value"


def test_race_gives_up_when_the_signal_fires() -> None:
    async def scenario():
        controller = AbortController()
        slow = asyncio.ensure_future(asyncio.sleep(10))
        asyncio.get_running_loop().call_later(0.01, controller.abort, "stop")

        with pytest.raises(AbortedError) as exc_info:
            await controller.signal.race(slow)

        await asyncio.sleep(0)
        return exc_info.value, slow

    error, slow = asyncio.run(scenario())
    assert error.reason.message == "stop"
    assert slow.cancelled()


def test_race_lets_started_work_finish_on_a_bail() -> None:
    async def work():
        await asyncio.sleep(0.02)
        return "sub-agent answer"

    async def scenario():
        controller = AbortController()
        asyncio.get_running_loop().call_later(0.005, controller.abort, Bailed(agent_name="writer", response="done"))
        return await controller.signal.race(work())

    assert asyncio.run(scenario()) == "sub-agent answer"


def test_race_on_aborted_signal_does_not_start_the_work() -> None:
    started = []

    async def work():
        started.append(True)

    async def scenario():
        controller = AbortController()
        controller.abort()
        with pytest.raises(AbortedError):
            await controller.signal.race(work())

    asyncio.run(scenario())
    assert started == []


def test_timeout_controller_aborts_itself() -> None:
    async def scenario():
        controller = AbortController.timeout(0.01)
        reason = await asyncio.wait_for(controller.signal.wait(), timeout=1)
        return reason

    reason = asyncio.run(scenario())
    assert reason.reason == "timeout"
    assert "timed out" in reason.message
