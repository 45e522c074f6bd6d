"""Immutable per-request run context."""

from __future__ import annotations

from dataclasses import dataclass

from parley.chat.budget import TokenBudget
from parley.chat.providers import ProviderVariant
from parley.chat.request_builder import RequestOverrides
from parley.chat.tokens import encoding_for_model
from parley.config import Settings


@dataclass(frozen=True)
class RunContext:
    """Everything a request needs that is fixed once the request starts.

    Derived fields (budget, encoding, overrides) are computed once by
    create() and never change for the life of the request.
    """

    request_id: str
    conversation_id: str
    user: str | None
    variant: ProviderVariant
    model: str
    budget: TokenBudget
    encoding: str
    overrides: RequestOverrides
    stream_rate: float  # seconds
    context_strategy: str = "discard"
    image_detail: str = "auto"
    recursion_limit: int = 25
    max_recursion_limit: int | None = None
    window_size: int = 5
    hide_sequential_outputs: bool = False
    chain_enabled: bool = True
    is_new_conversation: bool = False

    @classmethod
    def create(
        cls,
        settings: Settings,
        variant: ProviderVariant,
        *,
        request_id: str,
        conversation_id: str,
        user: str | None = None,
        model: str | None = None,
        max_context_tokens: int | None = None,
        is_new_conversation: bool = False,
    ) -> RunContext:
        """Build from settings. Raises ConfigError for an invalid budget."""
        resolved_model = model or settings.model
        return cls(
            request_id=request_id,
            conversation_id=conversation_id,
            user=user,
            variant=variant,
            model=resolved_model,
            budget=TokenBudget.from_settings(settings, max_context_tokens),
            encoding=encoding_for_model(resolved_model),
            overrides=RequestOverrides(
                add_params=dict(settings.add_params),
                drop_params=tuple(settings.drop_params),
                api_version=settings.azure_api_version,
            ),
            stream_rate=settings.stream_rate / 1000,
            context_strategy=settings.context_strategy,
            image_detail=settings.image_detail,
            recursion_limit=settings.recursion_limit,
            max_recursion_limit=settings.max_recursion_limit,
            window_size=settings.agent_window_size,
            hide_sequential_outputs=settings.hide_sequential_outputs,
            chain_enabled=settings.agent_chain_enabled,
            is_new_conversation=is_new_conversation,
        )
