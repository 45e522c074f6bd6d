"""Pydantic request bodies for the REST API.

These models define the wire contract; to_chat_request() converts a
validated body into the runner's dataclasses.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from parley.chat.models import Attachment
from parley.chat.runner import ChatRequest
from parley.chat.sequencer import AgentConfig


class AttachmentBody(BaseModel):
    file_id: str
    type: str = "image/png"
    width: int | None = None
    height: int | None = None
    embedded: bool = False
    file_identifier: str | None = None
    url: str | None = None


class AgentBody(BaseModel):
    """An agent definition supplied inline with the request."""

    id: str
    name: str = ""
    model_parameters: dict[str, Any] = {}
    instructions: str | None = None
    additional_instructions: str | None = None
    tools: list[dict[str, Any]] = []
    recursion_limit: int | None = Field(default=None, ge=1)
    hide_sequential_outputs: bool = False

    def to_config(self) -> AgentConfig:
        return AgentConfig(
            id=self.id,
            name=self.name,
            model_parameters=dict(self.model_parameters),
            instructions=self.instructions,
            additional_instructions=self.additional_instructions,
            tools=list(self.tools),
            recursion_limit=self.recursion_limit,
            hide_sequential_outputs=self.hide_sequential_outputs,
        )


class ChatRequestBody(BaseModel):
    """Body of POST /chat and POST /chat/stream."""

    text: str = Field(min_length=1)
    conversation_id: str | None = None
    parent_message_id: str | None = None
    user: str | None = None
    agent: AgentBody | None = None
    followup_agents: list[AgentBody] = []
    options: dict[str, Any] = {}
    attachments: list[AttachmentBody] = []
    instructions: str | None = None
    response_message_id: str | None = None
    max_context_tokens: int | None = Field(default=None, gt=0)
    request_id: str | None = None

    def to_chat_request(self) -> ChatRequest:
        return ChatRequest(
            text=self.text,
            conversation_id=self.conversation_id,
            parent_message_id=self.parent_message_id,
            user=self.user,
            agent=self.agent.to_config() if self.agent else None,
            followup_agents=[a.to_config() for a in self.followup_agents],
            options=dict(self.options),
            attachments=[Attachment(**a.model_dump()) for a in self.attachments],
            instructions=self.instructions,
            response_message_id=self.response_message_id,
            max_context_tokens=self.max_context_tokens,
            request_id=self.request_id,
        )
