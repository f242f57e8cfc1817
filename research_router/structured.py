import json
import re
from typing import Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

T = TypeVar("T", bound=BaseModel)

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)


def _json_candidates(text: str) -> list[str]:
    raw = (text or "").strip()
    candidates = [raw]
    fence = _FENCE_RE.search(raw)
    if fence:
        candidates.append(fence.group(1))
    start, end = raw.find("{"), raw.rfind("}")
    if 0 <= start < end:
        candidates.append(raw[start : end + 1])
    return candidates


def parse_structured(text: str, model: Type[T]) -> Optional[T]:
    """Parse model output as JSON and validate its shape; None when either step fails."""
    for candidate in _json_candidates(text):
        try:
            data = json.loads(candidate)
        except (TypeError, ValueError):
            continue
        try:
            return model.model_validate(data)
        except ValidationError:
            return None
    return None


def parse_structured_or_default(text: str, model: Type[T], default: T) -> T:
    parsed = parse_structured(text, model)
    return default if parsed is None else parsed
