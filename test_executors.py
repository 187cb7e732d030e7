"""
Step Executor Tests

Test list:
1. test_http_executor_success - Worker payload and response parsing
2. test_http_executor_failures - HTTP errors become failed results
3. test_http_executor_with_controller - Worker-backed run end to end
4. test_dry_run_executor - Succeeds with the estimate
5. test_build_executor - Factory picks the executor from config
"""

import json

import httpx
import pytest

from config import ExecutorConfig
from execution import ExecutionController
from executors import DryRunStepExecutor, HttpStepExecutor, build_executor
from plan_store import PlanStore
from schemas import PauseReason, PlanStep


@pytest.fixture
def step():
    return PlanStep(id="abc", order=1, title="Build", description="Run the build", estimated_tokens=300)


# =============================================================================
# TEST 1-3: HTTP executor
# =============================================================================

@pytest.mark.asyncio
async def test_http_executor_success(step):
    """
    Test 1: Worker payload and response parsing.

    Verifies:
    - The step is posted as JSON with its index
    - The bearer token is sent when configured
    - tokensUsed is read into tokens_used
    """
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"success": True, "tokensUsed": 812})

    executor = HttpStepExecutor(
        "http://worker/steps", api_key="secret", transport=httpx.MockTransport(handler)
    )
    result = await executor(step, 0)

    assert result.success is True
    assert result.tokens_used == 812
    assert result.error is None

    body = json.loads(requests[0].content)
    assert body["index"] == 0
    assert body["step"]["title"] == "Build"
    assert body["step"]["status"] == "pending"
    assert requests[0].headers["Authorization"] == "Bearer secret"

    print("✓ Test 1 passed: HTTP executor posts the step")


@pytest.mark.asyncio
async def test_http_executor_failures(step):
    """
    Test 2: HTTP errors become failed results.
    """
    def server_error(request):
        return httpx.Response(500, text="worker crashed")

    executor = HttpStepExecutor("http://worker/steps", transport=httpx.MockTransport(server_error))
    result = await executor(step, 0)
    assert result.success is False
    assert "HTTP 500" in result.error

    def reported_failure(request):
        return httpx.Response(200, json={"success": False, "tokens_used": 40, "error": "disk full"})

    executor = HttpStepExecutor("http://worker/steps", transport=httpx.MockTransport(reported_failure))
    result = await executor(step, 0)
    assert result.success is False
    assert result.tokens_used == 40
    assert result.error == "disk full"

    def not_json(request):
        return httpx.Response(200, text="<html>")

    executor = HttpStepExecutor("http://worker/steps", transport=httpx.MockTransport(not_json))
    result = await executor(step, 0)
    assert result.success is False
    assert "invalid JSON" in result.error

    def unreachable(request):
        raise httpx.ConnectError("connection refused")

    executor = HttpStepExecutor("http://worker/steps", transport=httpx.MockTransport(unreachable))
    result = await executor(step, 0)
    assert result.success is False
    assert "connection refused" in result.error


@pytest.mark.asyncio
async def test_http_executor_with_controller():
    """
    Test 3: Worker-backed run end to end.
    """
    def handler(request):
        index = json.loads(request.content)["index"]
        if index == 1:
            return httpx.Response(200, json={"success": False, "error": "lint failed"})
        return httpx.Response(200, json={"success": True, "tokensUsed": 100})

    store = PlanStore()
    store.create_plan("Worker plan", "", [{"title": "A"}, {"title": "B"}, {"title": "C"}])
    store.approve_plan()

    executor = HttpStepExecutor("http://worker/steps", transport=httpx.MockTransport(handler))
    controller = ExecutionController(store, executor)
    await controller.start()

    state = controller.state
    assert state.pause_reason == PauseReason.PLAN_COMPLETE
    assert state.steps_executed == 2
    assert state.total_tokens_used == 200
    assert controller.history[1].error == "lint failed"


# =============================================================================
# TEST 4-5: Dry run and factory
# =============================================================================

@pytest.mark.asyncio
async def test_dry_run_executor(step):
    """
    Test 4: Succeeds with the estimate.
    """
    result = await DryRunStepExecutor()(step, 0)
    assert result.success is True
    assert result.tokens_used == 300

    unestimated = step.model_copy(update={"estimated_tokens": None})
    result = await DryRunStepExecutor(delay=0.001)(unestimated, 0)
    assert result.tokens_used == 0


def test_build_executor(monkeypatch):
    """
    Test 5: Factory picks the executor from config.
    """
    assert isinstance(build_executor(ExecutorConfig()), DryRunStepExecutor)

    monkeypatch.setenv("WORKER_KEY", "k123")
    executor = build_executor(ExecutorConfig(kind="http", url="http://w", api_key_env="WORKER_KEY"))
    assert isinstance(executor, HttpStepExecutor)
    assert executor.api_key == "k123"

    with pytest.raises(ValueError):
        build_executor(ExecutorConfig(kind="http"))
    with pytest.raises(ValueError):
        build_executor(ExecutorConfig(kind="ssh"))
