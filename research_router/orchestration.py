"""Execution patterns layered over a single provider adapter call."""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from . import agents
from .providers import AdapterResult, ProviderAdapter, ProviderError
from .schemas import ChatMessage, LLMRequest, ModelConfig, RetryPolicy, Usage

logger = logging.getLogger("uvicorn.error")

Sleep = Callable[[float], Awaitable[None]]


def _add_usage(total: Usage, usage: Optional[Usage]) -> Usage:
    if usage is None:
        return total
    return total + usage


async def run_simple(
    adapter: ProviderAdapter,
    config: ModelConfig,
    credential: Optional[str],
    request: LLMRequest,
) -> AdapterResult:
    return await adapter.call(config, credential, request)


async def run_phased_graph(
    adapter: ProviderAdapter,
    config: ModelConfig,
    credential: Optional[str],
    request: LLMRequest,
) -> AdapterResult:
    history: List[ChatMessage] = []
    final_content: Optional[str] = None
    total = Usage()
    failures: List[str] = []
    for phase in agents.GRAPH_PHASES:
        phase_request = request.model_copy(
            update={
                "messages": [
                    ChatMessage(role="system", content=agents.phase_system(phase)),
                    *request.messages,
                    *history,
                ]
            }
        )
        try:
            result = await adapter.call(config, credential, phase_request)
        except ProviderError as exc:
            # Keep going with whatever context the earlier phases produced.
            logger.warning("Phased graph: %s phase failed on %s: %s", phase, config.id, exc)
            failures.append(f"{phase}: {exc}")
            continue
        final_content = result.content
        total = _add_usage(total, result.usage)
        history.append(ChatMessage(role="assistant", content=result.content))
    if final_content is None:
        raise ProviderError(f"{config.name}: every graph phase failed ({'; '.join(failures)})")
    return AdapterResult(content=final_content, usage=total)


async def run_role_crew(
    adapter: ProviderAdapter,
    config: ModelConfig,
    credential: Optional[str],
    request: LLMRequest,
) -> AdapterResult:
    crew = request.agents or list(agents.DEFAULT_CREW)
    context = ""
    total = Usage()
    succeeded = 0
    failures: List[str] = []
    for agent in crew:
        agent_request = request.model_copy(
            update={
                "messages": [
                    ChatMessage(role="system", content=agents.crew_system(agent, context)),
                    *request.messages,
                ]
            }
        )
        try:
            result = await adapter.call(config, credential, agent_request)
        except ProviderError as exc:
            logger.warning("Role crew: %s failed on %s: %s", agent.role, config.id, exc)
            failures.append(f"{agent.role}: {exc}")
            continue
        succeeded += 1
        context += f"\n\n[{agent.role}]:\n{result.content}"
        total = _add_usage(total, result.usage)
    if not succeeded:
        raise ProviderError(f"{config.name}: every crew agent failed ({'; '.join(failures)})")
    return AdapterResult(content=context.strip(), usage=total)


def backoff_delay_ms(policy: RetryPolicy, attempt: int) -> int:
    return policy.backoff_ms * 2 ** (attempt - 1)


async def run_bounded_retry(
    adapter: ProviderAdapter,
    config: ModelConfig,
    credential: Optional[str],
    request: LLMRequest,
    sleep: Sleep = asyncio.sleep,
) -> AdapterResult:
    policy = request.retry_policy or RetryPolicy()
    last_error: Optional[ProviderError] = None
    for attempt in range(1, policy.max_retries + 1):
        logger.info("Bounded retry: attempt %d/%d on %s", attempt, policy.max_retries, config.id)
        try:
            result = await asyncio.wait_for(
                run_simple(adapter, config, credential, request),
                timeout=policy.timeout_s,
            )
            logger.info("Bounded retry: success on attempt %d", attempt)
            return result
        except asyncio.TimeoutError:
            last_error = ProviderError(f"{config.name} attempt {attempt} timed out", body="timeout")
        except ProviderError as exc:
            last_error = exc
        logger.warning("Bounded retry: attempt %d failed: %s", attempt, last_error)
        if attempt < policy.max_retries:
            await sleep(backoff_delay_ms(policy, attempt) / 1000.0)
    raise last_error or ProviderError(f"{config.name}: retries exhausted")


Pattern = Callable[[ProviderAdapter, ModelConfig, Optional[str], LLMRequest], Awaitable[AdapterResult]]

PATTERNS: Dict[str, Pattern] = {
    "simple": run_simple,
    "phased_graph": run_phased_graph,
    "role_crew": run_role_crew,
    "bounded_retry": run_bounded_retry,
}


async def orchestrate(
    adapter: ProviderAdapter,
    config: ModelConfig,
    credential: Optional[str],
    request: LLMRequest,
) -> AdapterResult:
    pattern = PATTERNS.get(request.orchestration, run_simple)
    return await pattern(adapter, config, credential, request)
