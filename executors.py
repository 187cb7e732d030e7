"""
Step executors for Plan Autopilot.

WHY THIS FILE EXISTS:
--------------------
The controller treats "doing a step" as an opaque async call. In an editor
integration that call is an LLM code-generation turn; from the command line
we need something concrete to plug in. This module provides:

- HttpStepExecutor:   POSTs the step to a worker endpoint and reads back
                      {"success", "tokensUsed", "error"}
- DryRunStepExecutor: pretends every step succeeds, spending its estimate

Both are plain async callables, so anything with the signature
`async (step, index) -> StepExecutionResult` works just as well.

WORKER PROTOCOL:
---------------
    POST <url>
    {"step": {...PlanStep...}, "index": 0}

    200 {"success": true, "tokensUsed": 812}
    200 {"success": false, "tokensUsed": 40, "error": "disk full"}

HTTP and transport errors become failed results rather than exceptions.
"""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from schemas import PlanStep, StepExecutionResult

logger = logging.getLogger("autopilot.executors")


# =============================================================================
# BASE EXECUTOR CLASS
# =============================================================================

class StepExecutorBase(ABC):
    """
    Base class for step executors.

    Subclasses implement __call__ so instances can be handed straight to
    ExecutionController.
    """

    @abstractmethod
    async def __call__(self, step: PlanStep, index: int) -> StepExecutionResult:
        """
        Perform one step.

        Returns:
            StepExecutionResult; expected failures use success=False
        """
        pass


# =============================================================================
# HTTP EXECUTOR
# =============================================================================

class HttpStepExecutor(StepExecutorBase):
    """
    Hands each step to a remote worker over HTTP.

    The controller may cancel the call when the step times out; httpx
    closes the connection when the request task is cancelled.
    """

    def __init__(
        self,
        url: str,
        api_key: Optional[str] = None,
        request_timeout: float = 600.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            url: Worker endpoint
            api_key: Sent as a Bearer token when given
            request_timeout: httpx timeout in seconds
            transport: Custom httpx transport (tests use httpx.MockTransport)
        """
        self.url = url
        self.api_key = api_key
        self.request_timeout = request_timeout
        self._transport = transport

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @staticmethod
    def _parse_response(data: dict) -> StepExecutionResult:
        tokens = data.get("tokensUsed", data.get("tokens_used", 0)) or 0
        return StepExecutionResult(
            success=bool(data.get("success", False)),
            tokens_used=int(tokens),
            error=data.get("error"),
        )

    async def __call__(self, step: PlanStep, index: int) -> StepExecutionResult:
        payload = {"step": step.model_dump(mode="json"), "index": index}

        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.post(
                    self.url,
                    headers=self._headers(),
                    json=payload,
                    timeout=self.request_timeout
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Worker rejected step {index} ({e.response.status_code})")
            return StepExecutionResult(
                success=False,
                error=f"Worker returned HTTP {e.response.status_code}: {e.response.text[:200]}"
            )
        except httpx.HTTPError as e:
            logger.error(f"Could not reach worker for step {index}: {e}")
            return StepExecutionResult(success=False, error=f"Worker request failed: {e}")
        except ValueError as e:
            return StepExecutionResult(success=False, error=f"Worker sent invalid JSON: {e}")

        if not isinstance(data, dict):
            return StepExecutionResult(success=False, error="Worker sent an unexpected response")
        return self._parse_response(data)


# =============================================================================
# DRY-RUN EXECUTOR
# =============================================================================

class DryRunStepExecutor(StepExecutorBase):
    """Succeeds on every step, reporting the step's token estimate as usage."""

    def __init__(self, delay: float = 0.0):
        self.delay = delay

    async def __call__(self, step: PlanStep, index: int) -> StepExecutionResult:
        if self.delay:
            await asyncio.sleep(self.delay)
        return StepExecutionResult(success=True, tokens_used=step.estimated_tokens or 0)


# =============================================================================
# FACTORY FUNCTION
# =============================================================================

def build_executor(executor_config) -> StepExecutorBase:
    """
    Create the executor described by an ExecutorConfig.

    Raises:
        ValueError: If the kind is unknown or the http executor has no url
    """
    kind = executor_config.kind

    if kind == "dry_run":
        return DryRunStepExecutor(delay=executor_config.dry_run_delay)

    if kind == "http":
        if not executor_config.url:
            raise ValueError("The http executor needs a url (config executor.url or --executor-url)")
        api_key = None
        if executor_config.api_key_env:
            api_key = os.environ.get(executor_config.api_key_env)
        return HttpStepExecutor(
            url=executor_config.url,
            api_key=api_key,
            request_timeout=executor_config.request_timeout,
        )

    raise ValueError(f"Unknown executor kind: '{kind}'. Must be one of: http, dry_run")
