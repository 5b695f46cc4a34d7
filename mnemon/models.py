"""LLM gateway for memory extraction and reconciliation."""

import logging
import os
import time
from dataclasses import asdict, dataclass
from typing import Any, Optional

from mnemon.exceptions import ConfigurationError, ProviderError

logger = logging.getLogger(__name__)

# Providers whose requests cannot succeed without an API key
PROVIDER_API_KEY_ENV = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "google": "GOOGLE_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
}


@dataclass
class ModelUsage:
    """Token usage and cost of one (or several merged) completions."""

    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost_usd: float = 0.0
    duration_ms: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class CompletionResult:
    text: str
    usage: Optional[ModelUsage] = None


def parse_model_string(model_string: str) -> tuple[str, str, Optional[str]]:
    """Parse a model string of the form ``provider:model[:variant]``.

    Args:
        model_string: Format like "ollama:qwen2.5-coder:14b" or "openai:gpt-4o-mini"

    Returns:
        Tuple of (provider, model_name, variant)
    """
    parts = model_string.split(":")
    if len(parts) < 2:
        raise ValueError(f"Invalid model string format: {model_string}")

    provider = parts[0]
    model_name = parts[1]
    variant = parts[2] if len(parts) > 2 else None

    return provider, model_name, variant


def get_model_params(model_string: str, **kwargs) -> dict:
    """Get parameters for direct litellm.acompletion() calls.

    Args:
        model_string: Model specification like "openai:gpt-4o-mini"
        **kwargs: Additional model parameters (response_format, temperature, etc.)

    Returns:
        Dict with "model" key and all parameters ready for litellm.acompletion()

    Raises:
        ConfigurationError: If the model string is invalid or the provider's API key is missing

    Examples:
        >>> params = get_model_params("openai:gpt-4o-mini", api_key="sk-test", temperature=0)
        >>> params["model"]
        'openai/gpt-4o-mini'
    """
    try:
        provider, model_name, variant = parse_model_string(model_string)
    except ValueError as e:
        raise ConfigurationError(str(e)) from e

    params = dict(kwargs)

    if provider == "ollama":
        # Ollama: use full model name with variant
        full_model_name = f"{model_name}:{variant}" if variant else model_name
        params["model"] = f"ollama/{full_model_name}"
        params.setdefault("api_base", os.getenv("OLLAMA_BASE_URL", "http://localhost:11434"))
        return params

    if provider == "google":
        params["model"] = f"gemini/{model_name}"
    else:
        params["model"] = f"{provider}/{model_name}"

    env_var = PROVIDER_API_KEY_ENV.get(provider)
    if env_var and "api_key" not in params:
        api_key = os.getenv(env_var)
        if not api_key:
            raise ConfigurationError(f"API key not configured for provider '{provider}' (set {env_var})")
        params["api_key"] = api_key

    return params


def _get(obj: Any, key: str, default: Any = None) -> Any:
    """Read a field from a litellm response object or plain dict."""
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def _response_cost(response: Any) -> float:
    usage = _get(response, "usage")
    reported = _get(usage, "cost") if usage is not None else None
    if isinstance(reported, (int, float)):
        return float(reported)

    hidden = getattr(response, "_hidden_params", None) or {}
    cost = hidden.get("response_cost") if isinstance(hidden, dict) else None
    if isinstance(cost, (int, float)):
        return float(cost)

    try:
        from litellm import completion_cost

        return float(completion_cost(completion_response=response))
    except Exception:
        return 0.0


def parse_usage(response: Any, model_fallback: str, duration_ms: int) -> Optional[ModelUsage]:
    """Build a ModelUsage from a completion response, or None if it carries no usage block."""
    usage = _get(response, "usage")
    if usage is None:
        return None

    prompt_tokens = _get(usage, "prompt_tokens", 0)
    completion_tokens = _get(usage, "completion_tokens", 0)
    prompt_tokens = prompt_tokens if isinstance(prompt_tokens, int) else 0
    completion_tokens = completion_tokens if isinstance(completion_tokens, int) else 0

    model = _get(response, "model")
    if not isinstance(model, str) or not model:
        model = model_fallback

    return ModelUsage(
        model=model,
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=prompt_tokens + completion_tokens,
        cost_usd=_response_cost(response),
        duration_ms=duration_ms,
    )


def merge_usages(first: Optional[ModelUsage], second: Optional[ModelUsage]) -> Optional[ModelUsage]:
    """Sum two usage records, keeping whichever exists when only one does."""
    if first is None:
        return second
    if second is None:
        return first

    return ModelUsage(
        model=first.model if first.model == second.model else f"{first.model},{second.model}",
        prompt_tokens=first.prompt_tokens + second.prompt_tokens,
        completion_tokens=first.completion_tokens + second.completion_tokens,
        total_tokens=first.total_tokens + second.total_tokens,
        cost_usd=first.cost_usd + second.cost_usd,
        duration_ms=first.duration_ms + second.duration_ms,
    )


def _response_text(response: Any) -> str:
    choices = _get(response, "choices") or []
    if not choices:
        return ""
    message = _get(choices[0], "message")
    content = _get(message, "content") if message is not None else None
    return content if isinstance(content, str) else ""


async def complete_json(system_prompt: str, user_content: str, model: str) -> CompletionResult:
    """Send a system+user message pair and request a strict JSON object reply.

    Args:
        system_prompt: System instruction
        user_content: User message
        model: Model string (provider:model)

    Returns:
        CompletionResult with the raw reply text and usage

    Raises:
        ConfigurationError: If the model or credentials are not configured
        ProviderError: If the request fails in transport or the provider rejects it
    """
    from litellm import acompletion
    from litellm.exceptions import AuthenticationError

    messages = [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_content},
    ]
    params = get_model_params(
        model,
        messages=messages,
        temperature=0,
        response_format={"type": "json_object"},
    )

    started = time.monotonic()
    try:
        response = await acompletion(**params)
    except AuthenticationError as e:
        raise ConfigurationError(f"Authentication failed for {model}: {e}") from e
    except Exception as e:
        status_code = getattr(e, "status_code", None)
        raise ProviderError(f"Completion request to {model} failed: {e}", model=model, status_code=status_code) from e

    duration_ms = int((time.monotonic() - started) * 1000)
    logger.debug("Completion from %s took %dms", model, duration_ms)
    return CompletionResult(text=_response_text(response), usage=parse_usage(response, model, duration_ms))
