import logging
import time
from typing import Dict, List, Optional

import httpx

from .config import AppSettings, CredentialStore
from .orchestration import orchestrate
from .providers import ProviderAdapter, ProviderError, build_adapters
from .registry import CredentialResolver, ModelRegistry
from .schemas import LLMRequest, LLMResponse

logger = logging.getLogger("uvicorn.error")


class InferenceRouter:
    """Tries the selected model, then its fallback chain, until one call succeeds."""

    def __init__(
        self,
        registry: ModelRegistry,
        credentials: CredentialResolver,
        adapters: Dict[str, ProviderAdapter],
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.registry = registry
        self.credentials = credentials
        self.adapters = adapters
        self.client = client

    @classmethod
    def from_settings(cls, settings: AppSettings) -> "InferenceRouter":
        client = httpx.AsyncClient(
            timeout=settings.provider_timeout_s,
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )
        return cls(
            registry=ModelRegistry.from_settings(settings),
            credentials=CredentialStore.from_settings(settings),
            adapters=build_adapters(client, timeout_s=settings.provider_timeout_s),
            client=client,
        )

    def trial_sequence(self, request: LLMRequest) -> List[str]:
        if request.model and request.model != "auto":
            primary = request.model
        else:
            primary = self.registry.select_model(request.task, request.prefer_local, self.credentials)
        if request.fallback_chain is not None:
            chain = list(request.fallback_chain)
        else:
            chain = self.registry.build_fallback_chain(primary, request.prefer_local)
        sequence: List[str] = []
        for model_id in [primary, *chain]:
            if model_id not in sequence:
                sequence.append(model_id)
        return sequence

    async def execute(self, request: LLMRequest) -> LLMResponse:
        start = time.monotonic()
        fallbacks_used: List[str] = []
        failures: List[str] = []
        try:
            sequence = self.trial_sequence(request)
        except Exception as exc:
            logger.exception("LLM router: could not build trial sequence")
            failures.append(f"unexpected error: {exc}")
            sequence = []
        logger.info(
            "LLM router: task=%s orchestration=%s prefer_local=%s sequence=%s",
            request.task,
            request.orchestration,
            request.prefer_local,
            sequence,
        )
        for model_id in sequence:
            config = self.registry.get(model_id)
            if config is None:
                logger.warning("LLM router: unknown model %s, skipping", model_id)
                continue
            credential: Optional[str] = None
            if config.api_key_ref:
                if not self.credentials.has(config.api_key_ref):
                    logger.info("LLM router: no credential for %s, trying next model", config.name)
                    fallbacks_used.append(model_id)
                    failures.append(f"{model_id} (skipped: {config.api_key_ref} not configured)")
                    continue
                credential = self.credentials.get(config.api_key_ref)
            elif config.optional_key_ref and self.credentials.has(config.optional_key_ref):
                credential = self.credentials.get(config.optional_key_ref)
            adapter = self.adapters.get(config.provider_kind)
            if adapter is None:
                fallbacks_used.append(model_id)
                failures.append(f"{model_id} (no adapter for {config.provider_kind})")
                continue
            logger.info("LLM router: trying %s", config.name)
            try:
                result = await orchestrate(adapter, config, credential, request)
            except ProviderError as exc:
                logger.warning("LLM router: %s failed: %s", config.name, exc)
                fallbacks_used.append(model_id)
                failures.append(f"{model_id} ({exc})")
                continue
            except Exception as exc:
                logger.exception("LLM router: unexpected error from %s", config.name)
                fallbacks_used.append(model_id)
                failures.append(f"{model_id} (unexpected error: {exc})")
                continue
            return LLMResponse(
                success=True,
                model_used=model_id,
                model_name=config.name,
                provider=config.provider,
                content=result.content,
                usage=result.usage,
                fallbacks_used=fallbacks_used,
                orchestration=request.orchestration,
                inference_type=config.tier,
                execution_time_ms=_elapsed_ms(start),
            )
        attempted = "; ".join(failures) or "no models in sequence"
        return LLMResponse(
            success=False,
            fallbacks_used=fallbacks_used,
            orchestration=request.orchestration,
            error=(
                "All models in fallback chain failed. Ensure local inference (Ollama/vLLM/HF TGI) "
                f"is running or API keys are configured. Attempted: {attempted}"
            ),
            execution_time_ms=_elapsed_ms(start),
        )

    def reconfigure(self, settings: AppSettings) -> None:
        """Swap in a registry and credentials built from new settings; the HTTP client stays open."""
        self.registry = ModelRegistry.from_settings(settings)
        self.credentials = CredentialStore.from_settings(settings)
        for adapter in self.adapters.values():
            adapter.timeout_s = settings.provider_timeout_s

    async def close(self) -> None:
        if self.client is not None and not self.client.is_closed:
            await self.client.aclose()


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
