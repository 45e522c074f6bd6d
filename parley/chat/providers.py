"""Provider variants: per-provider wire quirks as data.

Each variant is a frozen record; the request builder reads these flags
instead of branching on provider names.
"""

from __future__ import annotations

import dataclasses
import re
from dataclasses import dataclass

from parley.errors import ConfigError

# Anthropic API version header
ANTHROPIC_API_VERSION = "2023-06-01"

WIRE_OPENAI = "openai"
WIRE_ANTHROPIC = "anthropic"

# Parameters the gpt-4o search family rejects
SEARCH_EXCLUDED_PARAMS = (
    "frequency_penalty",
    "presence_penalty",
    "temperature",
    "top_p",
    "top_k",
    "stop",
    "logit_bias",
    "seed",
    "response_format",
    "n",
    "logprobs",
    "user",
)

_REASONING_MODEL = re.compile(r"\bo\d\b", re.IGNORECASE)
_SEARCH_MODEL = re.compile(r"gpt-4o.*search")
_NO_SYSTEM_MODEL = re.compile(r"\b(o1-preview|o1-mini|amazon\.titan-text)\b")


@dataclass(frozen=True)
class ProviderVariant:
    """Wire format and quirks of one provider family."""

    name: str
    base_url: str
    wire_format: str = WIRE_OPENAI
    path: str = "/v1/chat/completions"
    system_first: bool = False  # system entry must lead the messages array
    lone_system_as_user: bool = False  # a prompt of one system entry is sent as user
    usage_reporting: bool = False  # request stream_options.include_usage
    include_reasoning: bool = False
    reasoning_key: str = "reasoning_content"
    model_in_body: bool = True
    supports_reasoning_effort: bool = True
    title_role: str = "system"


PROVIDER_VARIANTS: dict[str, ProviderVariant] = {
    "openai": ProviderVariant(
        name="openai",
        base_url="https://api.openai.com",
        usage_reporting=True,
    ),
    "azure": ProviderVariant(
        name="azure",
        base_url="",
        path="/openai/deployments/{model}/chat/completions",
        usage_reporting=True,
        model_in_body=False,
    ),
    "openrouter": ProviderVariant(
        name="openrouter",
        base_url="https://openrouter.ai/api",
        include_reasoning=True,
        reasoning_key="reasoning",
    ),
    "mistral": ProviderVariant(
        name="mistral",
        base_url="https://api.mistral.ai",
        system_first=True,
        lone_system_as_user=True,
        supports_reasoning_effort=False,
    ),
    "ollama": ProviderVariant(
        name="ollama",
        base_url="http://localhost:11434",
        system_first=True,
        supports_reasoning_effort=False,
        title_role="user",
    ),
    "perplexity": ProviderVariant(
        name="perplexity",
        base_url="https://api.perplexity.ai",
        path="/chat/completions",
        lone_system_as_user=True,
        supports_reasoning_effort=False,
    ),
    "anthropic": ProviderVariant(
        name="anthropic",
        base_url="https://api.anthropic.com",
        wire_format=WIRE_ANTHROPIC,
        path="/v1/messages",
        supports_reasoning_effort=False,
        title_role="user",
    ),
    "custom": ProviderVariant(
        name="custom",
        base_url="",
        supports_reasoning_effort=False,
    ),
}

# Base-URL fingerprints that identify a provider behind a "custom" endpoint
_URL_HINTS = (
    ("openrouter", "openrouter"),
    ("api.mistral.ai", "mistral"),
    ("api.perplexity.ai", "perplexity"),
    ("api.anthropic.com", "anthropic"),
)


def resolve_variant(name: str, base_url: str | None = None) -> ProviderVariant:
    """Look up a variant by name, detecting the provider from ``base_url``.

    Raises ConfigError for unknown providers.
    """
    key = (name or "").lower()
    if key in ("", "custom", "openai") and base_url:
        for hint, detected in _URL_HINTS:
            if hint in base_url:
                key = detected
                break
    variant = PROVIDER_VARIANTS.get(key)
    if variant is None:
        raise ConfigError(f"Unknown provider: {name!r}")
    if base_url:
        variant = dataclasses.replace(variant, base_url=base_url.rstrip("/"))
    if not variant.base_url:
        raise ConfigError(f"Provider {variant.name!r} requires an api_base_url")
    return variant


def is_reasoning_model(model: str | None) -> bool:
    """o-series models (o1, o3-mini, ...)."""
    return bool(model and _REASONING_MODEL.search(model))


def is_search_model(model: str | None) -> bool:
    return bool(model and _SEARCH_MODEL.search(model))


def is_no_system_model(model: str | None) -> bool:
    """Model families that reject a system role."""
    return bool(model and _NO_SYSTEM_MODEL.search(model))
