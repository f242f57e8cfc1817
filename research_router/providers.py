import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .schemas import LLMRequest, ModelConfig, ProviderKind, Usage


ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant."


class ProviderError(Exception):
    """An attempted provider call failed (non-2xx, timeout, transport or malformed body)."""

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body


@dataclass
class AdapterResult:
    content: str
    usage: Optional[Usage] = None


def _extract_error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
        if isinstance(data, dict):
            return json.dumps(data, ensure_ascii=True)
    except Exception:
        pass
    try:
        return response.text
    except Exception:
        return ""


def _capped_tokens(config: ModelConfig, request: LLMRequest) -> int:
    return min(request.max_tokens, config.max_tokens)


def _message_dicts(request: LLMRequest) -> List[Dict[str, str]]:
    return [{"role": m.role, "content": m.content} for m in request.messages]


class ProviderAdapter:
    """Base wire adapter: subclasses build the payload and read the response body."""

    kind: ProviderKind

    def __init__(self, client: httpx.AsyncClient, timeout_s: float = 60.0):
        self.client = client
        self.timeout_s = timeout_s

    def build_payload(self, config: ModelConfig, request: LLMRequest) -> Dict[str, Any]:
        raise NotImplementedError

    def build_headers(self, credential: Optional[str]) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if credential:
            headers["Authorization"] = f"Bearer {credential}"
        return headers

    def parse_response(self, data: Dict[str, Any]) -> AdapterResult:
        raise NotImplementedError

    async def call(self, config: ModelConfig, credential: Optional[str], request: LLMRequest) -> AdapterResult:
        payload = self.build_payload(config, request)
        try:
            resp = await self.client.post(
                config.endpoint,
                json=payload,
                headers=self.build_headers(credential),
                timeout=self.timeout_s,
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            detail = _extract_error_detail(exc.response)
            raise ProviderError(
                f"{config.name} API error: {exc.response.status_code} - {detail}",
                status=exc.response.status_code,
                body=detail,
            ) from exc
        except httpx.TimeoutException as exc:
            raise ProviderError(f"{config.name} timed out after {self.timeout_s}s", body="timeout") from exc
        except httpx.RequestError as exc:
            raise ProviderError(f"{config.name} request failed: {exc}", body=str(exc)) from exc
        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderError(
                f"{config.name} returned a non-JSON body", status=resp.status_code, body=resp.text
            ) from exc
        if not isinstance(data, dict):
            raise ProviderError(
                f"{config.name} returned an unexpected body", status=resp.status_code, body=resp.text
            )
        try:
            return self.parse_response(data)
        except (KeyError, IndexError, TypeError, AttributeError, ValueError) as exc:
            raise ProviderError(
                f"{config.name} returned a malformed body: {exc}",
                status=resp.status_code,
                body=json.dumps(data, ensure_ascii=True)[:2000],
            ) from exc


class OpenAICompatibleAdapter(ProviderAdapter):
    """OpenAI chat completions shape: commercial GPT, vLLM, HF TGI and the gateway."""

    kind = "openai_compatible"

    def build_payload(self, config: ModelConfig, request: LLMRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": config.wire_model_name,
            "messages": _message_dicts(request),
            "max_tokens": _capped_tokens(config, request),
            "temperature": request.temperature,
            "stream": False,
        }
        if request.tools:
            payload["tools"] = request.tools
        if request.tool_choice is not None:
            payload["tool_choice"] = request.tool_choice
        return payload

    def parse_response(self, data: Dict[str, Any]) -> AdapterResult:
        message = data["choices"][0]["message"]
        tool_calls = message.get("tool_calls")
        if tool_calls:
            content = json.dumps(tool_calls)
        else:
            content = message.get("content") or ""
        usage = None
        raw = data.get("usage")
        if isinstance(raw, dict):
            usage = Usage(
                prompt_tokens=int(raw.get("prompt_tokens") or 0),
                completion_tokens=int(raw.get("completion_tokens") or 0),
                total_tokens=int(raw.get("total_tokens") or 0),
            )
        return AdapterResult(content=content, usage=usage)


class AnthropicAdapter(ProviderAdapter):
    kind = "anthropic"

    def build_headers(self, credential: Optional[str]) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "anthropic-version": ANTHROPIC_VERSION}
        if credential:
            headers["x-api-key"] = credential
        return headers

    @staticmethod
    def split_system(request: LLMRequest) -> Tuple[str, List[Dict[str, str]]]:
        system_parts = [m.content for m in request.messages if m.role == "system"]
        messages = [
            {"role": "assistant" if m.role == "assistant" else "user", "content": m.content}
            for m in request.messages
            if m.role != "system"
        ]
        system = "\n\n".join(part for part in system_parts if part) or DEFAULT_SYSTEM_PROMPT
        return system, messages

    def build_payload(self, config: ModelConfig, request: LLMRequest) -> Dict[str, Any]:
        system, messages = self.split_system(request)
        payload: Dict[str, Any] = {
            "model": config.wire_model_name,
            "max_tokens": _capped_tokens(config, request),
            "temperature": request.temperature,
            "system": system,
            "messages": messages,
        }
        return payload

    def parse_response(self, data: Dict[str, Any]) -> AdapterResult:
        content = data["content"][0].get("text") or ""
        usage = None
        raw = data.get("usage")
        if isinstance(raw, dict):
            prompt = int(raw.get("input_tokens") or 0)
            completion = int(raw.get("output_tokens") or 0)
            usage = Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion)
        return AdapterResult(content=content, usage=usage)


class LocalChatAdapter(ProviderAdapter):
    """Ollama's native /api/chat shape."""

    kind = "local_chat"

    def build_payload(self, config: ModelConfig, request: LLMRequest) -> Dict[str, Any]:
        return {
            "model": config.wire_model_name,
            "messages": _message_dicts(request),
            "stream": False,
            "options": {
                "num_predict": _capped_tokens(config, request),
                "temperature": request.temperature,
            },
        }

    def parse_response(self, data: Dict[str, Any]) -> AdapterResult:
        content = data["message"].get("content") or ""
        usage = None
        prompt = data.get("prompt_eval_count")
        completion = data.get("eval_count")
        if prompt is not None and completion is not None:
            usage = Usage(
                prompt_tokens=int(prompt),
                completion_tokens=int(completion),
                total_tokens=int(prompt) + int(completion),
            )
        return AdapterResult(content=content, usage=usage)


ADAPTER_TYPES = {
    "openai_compatible": OpenAICompatibleAdapter,
    "anthropic": AnthropicAdapter,
    "local_chat": LocalChatAdapter,
}


def build_adapters(client: httpx.AsyncClient, timeout_s: float = 60.0) -> Dict[str, ProviderAdapter]:
    return {kind: adapter_cls(client, timeout_s=timeout_s) for kind, adapter_cls in ADAPTER_TYPES.items()}
