"""Secondary completions: conversation titles and history summaries.

Both are single bounded, non-streaming calls made alongside the main chat
turn. A title failure never surfaces to the caller; it degrades to the
default title.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from parley.chat.client import CompletionClient
from parley.chat.models import RunOptions
from parley.chat.request_builder import RequestOverrides, build_request
from parley.chat.usage import UsageRecorder, normalize_usage
from parley.config import Settings
from parley.errors import ParleyError

if TYPE_CHECKING:
    from parley.chat.cancellation import CancellationManager

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New Chat"
MAX_TRUNCATE_LENGTH = 40000

TITLE_INSTRUCTION = (
    "a concise, 5-word-or-less title for the conversation, using its same language, "
    "with no punctuation. Apply title case conventions appropriate for the language. "
    'Never directly mention the language name or the word "title"'
)

# Run options that must not leak into the title call
OMIT_TITLE_OPTIONS = frozenset({
    "stream",
    "thinking",
    "streaming",
    "client_options",
    "thinking_config",
    "thinking_budget",
    "include_thoughts",
    "max_output_tokens",
    "additional_model_request_fields",
    "tools",
    "tool_choice",
    "stream_options",
})

# ------------------------------------------------------------------
# Summarization Prompts
# ------------------------------------------------------------------

SUMMARY_SYSTEM_PROMPT = """\
You are a conversation summarizer. Output ONLY a concise summary of the
conversation so far, written so the conversation can continue from it.

Keep:
- The user's goal and any constraints or preferences they stated
- Decisions made and conclusions reached
- Names, numbers, file paths, code identifiers and other exact details
- Open questions that were not yet answered
"""

SUMMARY_UPDATE_PROMPT = """\
You are updating a conversation summary with new messages.
PRESERVE existing information unless it is explicitly superseded, ADD new
decisions and details, and keep exact names and identifiers.

Output ONLY the updated summary."""


def truncate_text(text: str, max_length: int = MAX_TRUNCATE_LENGTH) -> str:
    if len(text) > max_length:
        return f"{text[:max_length]}... [text truncated for brevity]"
    return text


def title_options(options: RunOptions) -> RunOptions:
    """Run options minus everything the title call must not inherit."""
    return {k: v for k, v in options.items() if k not in OMIT_TITLE_OPTIONS}


def clean_title(text: str) -> str:
    return text.replace('"', "").replace("“", "").replace("”", "").strip()


class TitleSummarizer:
    """Generates a short title for a new conversation."""

    def __init__(
        self,
        client: CompletionClient,
        settings: Settings,
        recorder: UsageRecorder | None = None,
    ) -> None:
        self._client = client
        self._settings = settings
        self._recorder = recorder

    async def generate(
        self,
        text: str,
        response_text: str = "",
        *,
        options: RunOptions | None = None,
        signal: CancellationManager | None = None,
        conversation_id: str | None = None,
        user: str | None = None,
    ) -> str:
        """Title for the exchange, or DEFAULT_TITLE on any failure or abort."""
        if signal is not None and signal.aborted:
            return DEFAULT_TITLE

        settings = self._settings
        convo = (
            f'||>User:\n"{truncate_text(text)}"\n'
            f'||>Response:\n"{truncate_text(response_text)}"'
        )
        prompt = f"Please generate {TITLE_INSTRUCTION}\n\n{convo}\n\n||>Title:"

        run_options = title_options(options or {})
        model = settings.title_model or run_options.get("model") or settings.model
        run_options.update(model=model, temperature=0.2, max_output_tokens=settings.title_max_tokens)

        try:
            request = build_request(
                [{"role": self._client.variant.title_role, "content": prompt}],
                run_options,
                self._client.variant,
                RequestOverrides(
                    add_params=settings.add_params,
                    drop_params=tuple(settings.drop_params),
                    api_version=settings.azure_api_version,
                ),
                stream=False,
                context="title",
            )
            response = await self._client.complete(request, signal)
        except ParleyError as e:
            logger.warning("Title generation failed for %s: %s", conversation_id, e)
            return DEFAULT_TITLE
        except Exception:
            logger.exception("Unexpected error generating title for %s", conversation_id)
            return DEFAULT_TITLE

        if self._recorder is not None and response.usage:
            await self._recorder.record(
                [normalize_usage(response.usage, model)],
                model=model,
                context="title",
                conversation_id=conversation_id,
                user=user,
            )

        title = clean_title(response.text) or DEFAULT_TITLE
        logger.info("Generated title for %s: %s", conversation_id, title)
        return title


class ConversationSummarizer:
    """Condenses dropped history into a summary via a secondary completion."""

    MAX_INPUT_CHARS = 48000

    def __init__(
        self,
        client: CompletionClient,
        settings: Settings,
        recorder: UsageRecorder | None = None,
        conversation_id: str | None = None,
        user: str | None = None,
        signal: CancellationManager | None = None,
    ) -> None:
        self._client = client
        self._settings = settings
        self._recorder = recorder
        self._conversation_id = conversation_id
        self._user = user
        self._signal = signal

    async def summarize(
        self,
        entries: list[dict[str, Any]],
        previous_summary: str | None = None,
    ) -> str | None:
        if not entries and not previous_summary:
            return None
        transcript = truncate_text(self._serialize_for_summary(entries), self.MAX_INPUT_CHARS)
        if previous_summary:
            user_content = f"## Existing Summary\n\n{previous_summary}\n\n## New Conversation\n\n{transcript}"
            system = SUMMARY_UPDATE_PROMPT
        else:
            user_content = transcript
            system = SUMMARY_SYSTEM_PROMPT

        settings = self._settings
        model = settings.summary_model or settings.model
        request = build_request(
            [{"role": "system", "content": system}, {"role": "user", "content": user_content}],
            {"model": model, "temperature": 0.2, "max_output_tokens": settings.max_response_tokens},
            self._client.variant,
            stream=False,
            context="summary",
        )
        response = await self._client.complete(request, self._signal)

        if self._recorder is not None and response.usage:
            await self._recorder.record(
                [normalize_usage(response.usage, model)],
                model=model,
                context="summary",
                conversation_id=self._conversation_id,
                user=self._user,
            )
        summary = response.text.strip()
        return summary or None

    @staticmethod
    def _serialize_for_summary(entries: list[dict[str, Any]]) -> str:
        """Serialize prompt entries as readable text for summarization."""
        lines = []
        for entry in entries:
            role = {"user": "User", "system": "System", "tool": "Tool"}.get(entry.get("role"), "Assistant")
            content = entry.get("content", "")
            if isinstance(content, list):
                content = "\n".join(
                    part.get("text", "") for part in content if isinstance(part, dict) and part.get("type") == "text"
                )
            lines.append(f"**{role}:** {content}")
        return "\n\n".join(lines)
