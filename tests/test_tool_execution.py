import asyncio

from pydantic import BaseModel
from structlog.testing import capture_logs

from agent_core.domain.context.memory.memory_manager import MemoryManager
from agent_core.domain.context.operation_context_factory import OperationContextFactory
from agent_core.domain.llm.protocol import ToolCallOptions
from agent_core.domain.orchestration.core.errors import ToolDeniedError
from agent_core.domain.orchestration.core.hooks import AgentHooks
from agent_core.domain.orchestration.core.options import GenerationOptions
from agent_core.domain.tool.tool import create_tool
from agent_core.domain.tool.tool_executor import ToolExecutionWrapper

CITY_PARAMS = {
    "type": "object",
    "properties": {"city": {"type": "string"}},
    "required": ["city"],
}


class Forecast(BaseModel):
    temp: int


class QuotaError(Exception):
    def __init__(self, message, retry_after, details=None):
        super().__init__(message)
        self.retry_after = retry_after
        self.details = details


def _operation(tracer):
    factory = OperationContextFactory(
        agent_id="assistant",
        agent_name="assistant",
        tracer=tracer,
        memory_manager=MemoryManager(None, agent_id="assistant", agent_name="assistant")
    )
    return factory.create("hi", GenerationOptions(context={"units": "metric"}), "generate_text")


def _hooks(recorder, **overrides):
    hooks = AgentHooks(on_tool_start=recorder.on_tool_start, on_tool_end=recorder.on_tool_end)
    for name, hook in overrides.items():
        setattr(hooks, name, hook)
    return hooks


def _run(tool, args, tracer, hooks, abort_after=None):
    async def scenario():
        oc = _operation(tracer)
        if abort_after is not None:
            asyncio.get_running_loop().call_later(abort_after, oc.abort_controller.abort, "user stopped")
        execute = ToolExecutionWrapper(agent="assistant-agent").create_execute(tool, oc, hooks)
        result = await execute(args, ToolCallOptions(tool_call_id="call_1"))
        return oc, result

    return asyncio.run(scenario())


def test_successful_call_runs_hooks_and_records_a_span(tracer, hook_recorder) -> None:
    recorder = hook_recorder()

    async def weather(args, ctx):
        return {"city": args["city"], "units": ctx.context["units"], "call": ctx.tool_call_id}

    tool = create_tool("weather", weather, "Current weather", CITY_PARAMS)
    with capture_logs() as logs:
        oc, result = _run(tool, {"city": "Oslo"}, tracer, _hooks(recorder))

    assert result == {"city": "Oslo", "units": "metric", "call": "call_1"}
    assert recorder.names() == ["on_tool_start", "on_tool_end"]
    assert recorder.of("on_tool_start")[0]["args"] == {"city": "Oslo"}
    assert recorder.of("on_tool_start")[0]["agent"] == "assistant-agent"
    end = recorder.of("on_tool_end")[0]
    assert end["output"] == result
    assert end["error"] is None
    assert end["context"] is oc

    span = tracer.find("tool.execution:weather")[0]
    assert span.input == {"city": "Oslo"}
    assert span.output == result
    assert span.metadata["tool.call.id"] == "call_1"
    assert span.metadata["status"] == "completed"

    entry = next(log for log in logs if log["event"] == "tool_execution")
    assert entry["success"] is True
    assert entry["tool_name"] == "weather"


def test_sync_tools_are_supported(tracer, hook_recorder) -> None:
    tool = create_tool("echo", lambda args, ctx: args["text"], parameters={
        "type": "object", "properties": {"text": {"type": "string"}}
    })

    _, result = _run(tool, {"text": "hi"}, tracer, _hooks(hook_recorder()))
    assert result == "hi"


def test_failure_becomes_an_error_payload(tracer, hook_recorder) -> None:
    recorder = hook_recorder()

    async def weather(args, ctx):
        raise RuntimeError("service unavailable")

    tool = create_tool("weather", weather, parameters=CITY_PARAMS)
    oc, result = _run(tool, {"city": "Oslo"}, tracer, _hooks(recorder))

    assert result["error"] is True
    assert result["name"] == "RuntimeError"
    assert result["message"] == "service unavailable"
    assert result["tool_call_id"] == "call_1"
    assert result["tool_name"] == "weather"
    assert "RuntimeError" in result["stack"]
    assert not oc.abort_signal.aborted

    end = recorder.of("on_tool_end")[0]
    assert end["output"] is None
    assert isinstance(end["error"], RuntimeError)

    span = tracer.find("tool.execution:weather")[0]
    assert span.metadata["status"] == "error"
    assert span.output == result


def test_error_payload_keeps_custom_attributes_and_cause(tracer, hook_recorder) -> None:
    details = {"plan": "free"}
    details["self"] = details

    async def weather(args, ctx):
        try:
            raise ValueError("upstream 429")
        except ValueError as e:
            raise QuotaError("quota exceeded", retry_after=30, details=details) from e

    tool = create_tool("weather", weather, parameters=CITY_PARAMS)
    _, result = _run(tool, {"city": "Oslo"}, tracer, _hooks(hook_recorder()))

    assert result["name"] == "QuotaError"
    assert result["retry_after"] == 30
    assert result["details"] == '{"plan":"free","self":"[Circular]"}'
    assert result["cause"]["name"] == "ValueError"
    assert result["cause"]["message"] == "upstream 429"


def test_denied_tool_aborts_the_call_chain(tracer, hook_recorder) -> None:
    recorder = hook_recorder()
    ran = []

    def deny(**kwargs):
        raise ToolDeniedError("delete_account", "Deleting accounts requires approval")

    tool = create_tool("delete_account", lambda args, ctx: ran.append(args))
    oc, result = _run(tool, {}, tracer, _hooks(recorder, on_tool_start=deny))

    assert ran == []
    assert result["error"] is True
    assert result["name"] == "ToolDeniedError"
    assert result["code"] == "TOOL_FORBIDDEN"
    assert oc.abort_signal.aborted
    assert isinstance(oc.abort_signal.reason.reason, ToolDeniedError)
    assert oc.abort_signal.reason.message == "Deleting accounts requires approval"
    assert isinstance(recorder.of("on_tool_end")[0]["error"], ToolDeniedError)


def test_invalid_arguments_are_reported_without_running_the_tool(tracer, hook_recorder) -> None:
    ran = []
    tool = create_tool("weather", lambda args, ctx: ran.append(args), parameters=CITY_PARAMS)

    _, result = _run(tool, {"city": 12}, tracer, _hooks(hook_recorder()))

    assert ran == []
    assert result["name"] == "ToolParameterError"
    assert "city" in result["message"]
    assert result["code"] == "TOOL_PARAMETERS_INVALID"


def test_output_schema_validates_the_result(tracer, hook_recorder) -> None:
    recorder = hook_recorder()
    tool = create_tool("forecast", lambda args, ctx: {"temp": 21}, output_schema=Forecast)

    _, result = _run(tool, {}, tracer, _hooks(recorder))

    assert result == {"temp": 21}
    assert recorder.of("on_tool_end")[0]["output"] == Forecast(temp=21)


def test_output_schema_mismatch_becomes_an_error_payload(tracer, hook_recorder) -> None:
    tool = create_tool("forecast", lambda args, ctx: {"temp": "hot"}, output_schema=Forecast)

    _, result = _run(tool, {}, tracer, _hooks(hook_recorder()))

    assert result["error"] is True
    assert result["name"] == "ToolOutputValidationError"
    assert result["code"] == "TOOL_OUTPUT_INVALID"
    assert result["cause"]["name"] == "ValidationError"


def test_abort_interrupts_a_running_tool(tracer, hook_recorder) -> None:
    async def slow(args, ctx):
        await asyncio.sleep(10)

    tool = create_tool("slow", slow)
    oc, result = _run(tool, {}, tracer, _hooks(hook_recorder()), abort_after=0.01)

    assert result["error"] is True
    assert result["name"] == "AbortedError"
    assert result["message"] == "user stopped"
    assert oc.abort_signal.aborted
