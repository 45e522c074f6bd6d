"""Completion request building: payload + options -> provider wire body.

build_request() is pure: it deep-copies its inputs and runs an ordered list
of policies over the copy. Each policy reads the ProviderVariant flags.
"""

from __future__ import annotations

import copy
import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from parley.chat.models import PromptPayload, RunOptions
from parley.chat.providers import (
    SEARCH_EXCLUDED_PARAMS,
    WIRE_ANTHROPIC,
    ProviderVariant,
    is_reasoning_model,
    is_search_model,
    resolve_variant,
)

logger = logging.getLogger(__name__)

DEFAULT_ANTHROPIC_MAX_TOKENS = 4096


@dataclass(frozen=True)
class RequestOverrides:
    """Operator-supplied parameter edits applied after the built-in policies."""

    add_params: Mapping[str, Any] = field(default_factory=dict)
    drop_params: tuple[str, ...] = ()
    api_version: str | None = None  # azure query parameter


@dataclass(frozen=True)
class ProviderRequest:
    """A fully built provider call."""

    path: str
    body: dict[str, Any]
    params: dict[str, str] = field(default_factory=dict)
    stream: bool = True
    context: str = "message"

    @property
    def model(self) -> str | None:
        return self.body.get("model")


Policy = Callable[[dict[str, Any], ProviderVariant, RequestOverrides], None]


# ------------------------------------------------------------------
# Policies
# ------------------------------------------------------------------


def reorder_system_first(body: dict[str, Any], variant: ProviderVariant, overrides: RequestOverrides) -> None:
    if not variant.system_first:
        return
    messages = body["messages"]
    index = next((i for i, m in enumerate(messages) if m.get("role") == "system"), -1)
    if index > 0:
        messages.insert(0, messages.pop(index))


def relabel_lone_system(body: dict[str, Any], variant: ProviderVariant, overrides: RequestOverrides) -> None:
    messages = body["messages"]
    if variant.lone_system_as_user and len(messages) == 1 and messages[0].get("role") == "system":
        messages[0]["role"] = "user"


def rename_max_tokens(body: dict[str, Any], variant: ProviderVariant, overrides: RequestOverrides) -> None:
    value = body.pop("max_output_tokens", None)
    if value is None:
        value = body.pop("max_tokens", None)
    if variant.wire_format == WIRE_ANTHROPIC:
        body["max_tokens"] = value or DEFAULT_ANTHROPIC_MAX_TOKENS
        return
    if value is None:
        return
    if is_reasoning_model(body.get("model")):
        body["max_completion_tokens"] = value
    else:
        body["max_tokens"] = value


def drop_unsupported(body: dict[str, Any], variant: ProviderVariant, overrides: RequestOverrides) -> None:
    model = body.get("model")
    if is_reasoning_model(model):
        body.pop("temperature", None)
    if is_search_model(model):
        for param in SEARCH_EXCLUDED_PARAMS:
            body.pop(param, None)

    effort = body.pop("reasoning_effort", None)
    if effort is None:
        return
    if variant.include_reasoning:
        body.setdefault("reasoning", {})["effort"] = effort
    elif variant.supports_reasoning_effort and is_reasoning_model(model):
        body["reasoning_effort"] = effort


def usage_reporting(body: dict[str, Any], variant: ProviderVariant, overrides: RequestOverrides) -> None:
    if variant.usage_reporting and body.get("stream"):
        body["stream_options"] = {"include_usage": True}
    if variant.include_reasoning:
        body["include_reasoning"] = True


def anthropic_format(body: dict[str, Any], variant: ProviderVariant, overrides: RequestOverrides) -> None:
    """Hoist system entries to the top-level field and convert tool traffic."""
    if variant.wire_format != WIRE_ANTHROPIC:
        return
    system_parts: list[str] = []
    messages: list[dict[str, Any]] = []
    for entry in body["messages"]:
        role = entry.get("role")
        if role == "system":
            system_parts.append(_text_of(entry.get("content")))
        elif role == "tool":
            block = {
                "type": "tool_result",
                "tool_use_id": entry.get("tool_call_id", ""),
                "content": _text_of(entry.get("content")),
            }
            if messages and messages[-1]["role"] == "user" and isinstance(messages[-1]["content"], list):
                messages[-1]["content"].append(block)
            else:
                messages.append({"role": "user", "content": [block]})
        elif role == "assistant" and entry.get("tool_calls"):
            blocks: list[dict[str, Any]] = []
            if entry.get("content"):
                blocks.append({"type": "text", "text": _text_of(entry["content"])})
            for call in entry["tool_calls"]:
                fn = call.get("function", {})
                try:
                    tool_input = json.loads(fn.get("arguments") or "{}")
                except json.JSONDecodeError:
                    tool_input = {}
                blocks.append({"type": "tool_use", "id": call.get("id", ""), "name": fn.get("name", ""), "input": tool_input})
            messages.append({"role": "assistant", "content": blocks})
        else:
            messages.append({"role": role, "content": entry.get("content", "")})
    # Messages API rejects an empty messages array
    if not messages and system_parts:
        messages.append({"role": "user", "content": system_parts.pop()})
    body["messages"] = messages
    if system_parts:
        body["system"] = "\n\n".join(p for p in system_parts if p)

    if body.get("tools"):
        body["tools"] = [
            {
                "name": t["function"]["name"],
                "description": t["function"].get("description", ""),
                "input_schema": t["function"].get("parameters", {"type": "object", "properties": {}}),
            }
            if "function" in t
            else t
            for t in body["tools"]
        ]
    body.pop("stream_options", None)


def adapt_model_field(body: dict[str, Any], variant: ProviderVariant, overrides: RequestOverrides) -> None:
    if not variant.model_in_body:
        body.pop("model", None)


def merge_add_params(body: dict[str, Any], variant: ProviderVariant, overrides: RequestOverrides) -> None:
    if overrides.add_params:
        body.update(copy.deepcopy(dict(overrides.add_params)))
        logger.debug("Added params: %s", sorted(overrides.add_params))


def apply_drop_params(body: dict[str, Any], variant: ProviderVariant, overrides: RequestOverrides) -> None:
    for param in overrides.drop_params:
        body.pop(param, None)
    if overrides.drop_params:
        logger.debug("Dropped params: %s", list(overrides.drop_params))


DEFAULT_POLICIES: tuple[Policy, ...] = (
    reorder_system_first,
    relabel_lone_system,
    rename_max_tokens,
    drop_unsupported,
    usage_reporting,
    anthropic_format,
    adapt_model_field,
    merge_add_params,
    apply_drop_params,
)


# ------------------------------------------------------------------
# Entry point
# ------------------------------------------------------------------


def build_request(
    payload: PromptPayload | list[dict[str, Any]],
    options: RunOptions,
    variant: ProviderVariant | str,
    overrides: RequestOverrides | None = None,
    *,
    stream: bool = True,
    context: str = "message",
) -> ProviderRequest:
    """Build the provider body for ``payload`` under ``options``.

    Raises ConfigError for an unknown provider name. Inputs are never mutated.
    """
    if isinstance(variant, str):
        variant = resolve_variant(variant)
    overrides = overrides or RequestOverrides()

    entries = payload.all_entries() if isinstance(payload, PromptPayload) else payload
    body: dict[str, Any] = {k: copy.deepcopy(v) for k, v in options.items() if v is not None}
    body["messages"] = copy.deepcopy(list(entries))
    if stream:
        body["stream"] = True
    else:
        body.pop("stream", None)

    model = body.get("model") or ""
    for policy in DEFAULT_POLICIES:
        policy(body, variant, overrides)

    params: dict[str, str] = {}
    if variant.name == "azure" and overrides.api_version:
        params["api-version"] = overrides.api_version

    return ProviderRequest(
        path=variant.path.format(model=model),
        body=body,
        params=params,
        stream=stream,
        context=context,
    )


def _text_of(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(p.get("text", "") for p in content if isinstance(p, dict) and p.get("type") == "text")
    return ""
