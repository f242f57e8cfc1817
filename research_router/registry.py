"""Model catalog, task-based model selection and fallback ordering."""

from typing import Dict, Iterable, List, Optional, Protocol, Tuple

from .config import AppSettings
from .schemas import ModelConfig, Tier


OPENAI_KEY = "OPENAI_API_KEY"
ANTHROPIC_KEY = "ANTHROPIC_API_KEY"
GATEWAY_KEY = "GATEWAY_API_KEY"

BEST_LOCAL_REASONING = "deepseek-v3"
BEST_LOCAL_PLANNING = "llama-3.3-70b"
BEST_LOCAL_SYNTHESIS = "qwen-2.5"

# task -> (commercial candidates in order of preference, local model used when
# none of them has a credential configured)
COMMERCIAL_PREFERENCES: Dict[str, Tuple[Tuple[str, ...], str]] = {
    "reasoning": (("gpt-4o",), BEST_LOCAL_REASONING),
    "coding": ((), BEST_LOCAL_REASONING),
    "planning": (("claude-sonnet", "gpt-4o"), BEST_LOCAL_PLANNING),
    "synthesis": (("gpt-4o", "claude-sonnet"), BEST_LOCAL_SYNTHESIS),
    "research": (("gpt-4o",), BEST_LOCAL_PLANNING),
}
DEFAULT_COMMERCIAL_PREFERENCE: Tuple[Tuple[str, ...], str] = (("gpt-4o-mini",), BEST_LOCAL_REASONING)

LOCAL_PREFERENCES: Dict[str, str] = {
    "reasoning": BEST_LOCAL_REASONING,
    "coding": BEST_LOCAL_REASONING,
    "planning": BEST_LOCAL_PLANNING,
    "synthesis": BEST_LOCAL_SYNTHESIS,
    "research": BEST_LOCAL_SYNTHESIS,
}


class CredentialResolver(Protocol):
    def has(self, ref: str) -> bool:
        ...

    def get(self, ref: str) -> str:
        ...


def default_models(settings: AppSettings) -> List[ModelConfig]:
    ollama = settings.ollama_url.rstrip("/")
    vllm = settings.vllm_url.rstrip("/")
    tgi = settings.hf_tgi_url.rstrip("/")
    openai = settings.openai_base_url.rstrip("/")
    anthropic = settings.anthropic_base_url.rstrip("/")
    gateway = settings.gateway_url.rstrip("/")
    return [
        ModelConfig(
            id="deepseek-v3",
            name="DeepSeek-V3 (Local Ollama)",
            provider_kind="local_chat",
            provider="ollama",
            endpoint=f"{ollama}/api/chat",
            wire_model_name="deepseek-coder-v2:latest",
            max_tokens=8192,
            capabilities=frozenset({"reasoning", "coding", "planning", "tool_use"}),
            tier="local",
        ),
        ModelConfig(
            id="deepseek-vllm",
            name="DeepSeek-V3 (Local vLLM)",
            provider_kind="openai_compatible",
            provider="vllm",
            endpoint=f"{vllm}/v1/chat/completions",
            wire_model_name="deepseek-ai/DeepSeek-V3",
            max_tokens=8192,
            capabilities=frozenset({"reasoning", "coding", "planning", "tool_use"}),
            tier="local",
        ),
        ModelConfig(
            id="llama-3.3-70b",
            name="Llama 3.3 70B (Local HF TGI)",
            provider_kind="openai_compatible",
            provider="huggingface-tgi",
            endpoint=f"{tgi}/v1/chat/completions",
            wire_model_name="meta-llama/Llama-3.3-70B-Instruct",
            max_tokens=4096,
            capabilities=frozenset({"reasoning", "coding", "instruction_following"}),
            tier="local",
        ),
        ModelConfig(
            id="llama-3.3-70b-ollama",
            name="Llama 3.3 70B (Local Ollama)",
            provider_kind="local_chat",
            provider="ollama",
            endpoint=f"{ollama}/api/chat",
            wire_model_name="llama3.3:70b",
            max_tokens=4096,
            capabilities=frozenset({"reasoning", "coding", "instruction_following"}),
            tier="local",
        ),
        ModelConfig(
            id="qwen-2.5",
            name="Qwen 2.5 72B (Local HF TGI)",
            provider_kind="openai_compatible",
            provider="huggingface-tgi",
            endpoint=f"{tgi}/v1/chat/completions",
            wire_model_name="Qwen/Qwen2.5-72B-Instruct",
            max_tokens=8192,
            capabilities=frozenset({"tool_use", "instruction_following", "reasoning"}),
            tier="local",
        ),
        ModelConfig(
            id="qwen-2.5-ollama",
            name="Qwen 2.5 (Local Ollama)",
            provider_kind="local_chat",
            provider="ollama",
            endpoint=f"{ollama}/api/chat",
            wire_model_name="qwen2.5:72b",
            max_tokens=8192,
            capabilities=frozenset({"tool_use", "instruction_following", "reasoning"}),
            tier="local",
        ),
        ModelConfig(
            id="gpt-4o",
            name="GPT-4o",
            provider_kind="openai_compatible",
            provider="openai",
            endpoint=f"{openai}/chat/completions",
            wire_model_name="gpt-4o",
            max_tokens=4096,
            capabilities=frozenset({"reasoning", "coding", "multimodal", "tool_use"}),
            tier="commercial",
            api_key_ref=OPENAI_KEY,
        ),
        ModelConfig(
            id="gpt-4o-mini",
            name="GPT-4o Mini",
            provider_kind="openai_compatible",
            provider="openai",
            endpoint=f"{openai}/chat/completions",
            wire_model_name="gpt-4o-mini",
            max_tokens=4096,
            capabilities=frozenset({"reasoning", "coding", "general"}),
            tier="commercial",
            api_key_ref=OPENAI_KEY,
        ),
        ModelConfig(
            id="gpt-4-turbo",
            name="GPT-4 Turbo",
            provider_kind="openai_compatible",
            provider="openai",
            endpoint=f"{openai}/chat/completions",
            wire_model_name="gpt-4-turbo-preview",
            max_tokens=4096,
            capabilities=frozenset({"reasoning", "coding", "planning"}),
            tier="commercial",
            api_key_ref=OPENAI_KEY,
        ),
        ModelConfig(
            id="claude-sonnet",
            name="Claude Sonnet 4",
            provider_kind="anthropic",
            provider="anthropic",
            endpoint=f"{anthropic}/messages",
            wire_model_name="claude-sonnet-4-20250514",
            max_tokens=8192,
            capabilities=frozenset({"reasoning", "coding", "planning", "synthesis"}),
            tier="commercial",
            api_key_ref=ANTHROPIC_KEY,
        ),
        ModelConfig(
            id="gemini-2.5-pro",
            name="Gemini 2.5 Pro",
            provider_kind="openai_compatible",
            provider="gateway",
            endpoint=f"{gateway}/chat/completions",
            wire_model_name="google/gemini-2.5-pro",
            max_tokens=8192,
            capabilities=frozenset({"reasoning", "multimodal", "complex_analysis"}),
            tier="fallback",
            optional_key_ref=GATEWAY_KEY,
        ),
        ModelConfig(
            id="gemini-2.5-flash",
            name="Gemini 2.5 Flash",
            provider_kind="openai_compatible",
            provider="gateway",
            endpoint=f"{gateway}/chat/completions",
            wire_model_name="google/gemini-2.5-flash",
            max_tokens=8192,
            capabilities=frozenset({"reasoning", "multimodal", "synthesis"}),
            tier="fallback",
            optional_key_ref=GATEWAY_KEY,
        ),
    ]


def tier_rank(tier: Tier, prefer_local: bool) -> int:
    """Position of a tier in the fallback order; the fallback tier is always last."""
    if tier == "fallback":
        return 2
    if prefer_local:
        return 0 if tier == "local" else 1
    return 0 if tier == "commercial" else 1


class ModelRegistry:
    def __init__(self, models: Iterable[ModelConfig]):
        self._models: Dict[str, ModelConfig] = {}
        for model in models:
            if model.id in self._models:
                raise ValueError(f"duplicate model id: {model.id}")
            self._models[model.id] = model
        if not any(m.tier == "fallback" for m in self._models.values()):
            raise ValueError("registry needs at least one fallback-tier model")

    @classmethod
    def from_settings(cls, settings: AppSettings) -> "ModelRegistry":
        return cls(default_models(settings))

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._models

    def __len__(self) -> int:
        return len(self._models)

    def get(self, model_id: str) -> Optional[ModelConfig]:
        return self._models.get(model_id)

    def ids(self) -> List[str]:
        return list(self._models)

    def models(self) -> List[ModelConfig]:
        return list(self._models.values())

    def select_model(
        self,
        task: Optional[str],
        prefer_local: bool,
        credentials: Optional[CredentialResolver] = None,
    ) -> str:
        if prefer_local:
            return self._first_known([LOCAL_PREFERENCES.get(task or "", BEST_LOCAL_REASONING)])
        candidates, local = COMMERCIAL_PREFERENCES.get(task or "", DEFAULT_COMMERCIAL_PREFERENCE)
        for model_id in candidates:
            config = self._models.get(model_id)
            if config is None:
                continue
            if config.api_key_ref is None or (credentials is not None and credentials.has(config.api_key_ref)):
                return model_id
        return self._first_known([local])

    def _first_known(self, preferred: List[str]) -> str:
        for model_id in preferred:
            if model_id in self._models:
                return model_id
        # Custom registries may not carry the default local models.
        return self.build_fallback_chain("", prefer_local=True)[0]

    def build_fallback_chain(self, primary: str, prefer_local: bool) -> List[str]:
        ordered = sorted(
            enumerate(self._models.values()),
            key=lambda item: (tier_rank(item[1].tier, prefer_local), item[0]),
        )
        chain: List[str] = []
        for _, config in ordered:
            if config.id != primary and config.id not in chain:
                chain.append(config.id)
        return chain

    def catalog(self, credentials: Optional[CredentialResolver] = None) -> List[dict]:
        rows = []
        for config in self._models.values():
            row = config.model_dump(mode="json")
            row["capabilities"] = sorted(config.capabilities)
            row["credential_ok"] = config.api_key_ref is None or bool(
                credentials is not None and credentials.has(config.api_key_ref)
            )
            rows.append(row)
        return rows
