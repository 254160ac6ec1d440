"""Extract token usage, model name and reference ids from AI operation responses

Handlers return whatever shape their provider gives back. Each rule below is a
pure function from a usage dict to a ``TokenUsage`` (or None when the dict is
not in its shape); the first rule that matches wins.
"""
from typing import Any, Callable, Dict, List, Optional, Tuple

from app.services.pricing_service import TokenUsage

# Keys a usage object may live under, searched at the top level then under "data"
USAGE_KEYS = ("tokenUsage", "token_usage", "usage")
MODEL_KEYS = ("model", "modelName", "model_name", "aiModel")


def _to_int(value: Any) -> int:
    try:
        return max(0, int(value or 0))
    except (TypeError, ValueError):
        return 0


def _usage_from_keys(input_key: str, output_key: str, total_key: str) -> Callable[[Dict[str, Any]], Optional[TokenUsage]]:
    def rule(raw: Dict[str, Any]) -> Optional[TokenUsage]:
        # total_tokens is shared between shapes, so it cannot identify one
        if input_key not in raw and output_key not in raw:
            return None
        input_tokens = _to_int(raw.get(input_key))
        output_tokens = _to_int(raw.get(output_key))
        total_tokens = _to_int(raw.get(total_key)) or input_tokens + output_tokens
        return TokenUsage(input_tokens, output_tokens, total_tokens)
    return rule


TOKEN_USAGE_RULES: List[Callable[[Dict[str, Any]], Optional[TokenUsage]]] = [
    _usage_from_keys("inputTokens", "outputTokens", "totalTokens"),
    _usage_from_keys("input_tokens", "output_tokens", "total_tokens"),
    _usage_from_keys("prompt_tokens", "completion_tokens", "total_tokens"),
]


def _containers(response: Any) -> List[Dict[str, Any]]:
    if not isinstance(response, dict):
        return []
    containers = [response]
    data = response.get("data")
    if isinstance(data, dict):
        containers.append(data)
    return containers


def _usage_candidates(response: Any) -> List[Dict[str, Any]]:
    candidates = []
    for container in _containers(response):
        for key in USAGE_KEYS:
            value = container.get(key)
            if isinstance(value, dict):
                candidates.append(value)
    return candidates


def extract_token_usage(response: Any) -> Optional[TokenUsage]:
    """Normalized token usage from a response, or None when it carries none"""
    for raw in _usage_candidates(response):
        for rule in TOKEN_USAGE_RULES:
            usage = rule(raw)
            if usage is not None and not usage.is_empty:
                return usage
    return None


def extract_model_name(response: Any) -> Optional[str]:
    """Model the provider reports it actually used"""
    for container in _containers(response):
        for key in MODEL_KEYS:
            value = container.get(key)
            if isinstance(value, str) and value:
                return value
    return None


def extract_reference(response: Any) -> Tuple[Optional[str], Optional[str]]:
    """(reference_id, reference_type) identifying the logical event a response belongs to"""
    if not isinstance(response, dict):
        return None, None
    data = response.get("data")
    if not isinstance(data, dict):
        return None, None
    if data.get("questionId"):
        return str(data["questionId"]), "question"
    if data.get("id") is not None:
        return str(data["id"]), "ai_response"
    return None, None
