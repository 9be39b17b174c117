"""Conversation, artifact and health-state persistence for chatbridge.

Records live in process memory. An append-only `events.jsonl` under
`local_storage_dir` keeps an audit trail of pipeline events for dev/test.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from chatbridge.config import Settings
from chatbridge.schemas import (
    Conversation,
    ConversationHealthState,
    ConversationSegment,
    EnrichmentArtifact,
    Message,
    SenderRole,
)
from chatbridge.utils import utc_now


class ConversationStore:
    def __init__(self, settings: Settings):
        self._settings = settings
        self._root = Path(settings.local_storage_dir)
        (self._root / "logs").mkdir(parents=True, exist_ok=True)
        self._events_file = self._root / "logs" / "events.jsonl"

        self._conversations: dict[str, Conversation] = {}
        self._messages: dict[str, list[Message]] = {}
        self._messages_by_id: dict[str, Message] = {}
        self._artifacts: dict[str, EnrichmentArtifact] = {}
        self._health: dict[str, ConversationHealthState] = {}
        self._segments: dict[str, list[ConversationSegment]] = {}

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        self._conversations[conversation.id] = conversation
        self._messages.setdefault(conversation.id, [])
        return conversation

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        return self._conversations.get(conversation_id)

    async def add_message(self, message: Message) -> Message:
        if message.conversation_id not in self._conversations:
            raise KeyError(f"unknown conversation: {message.conversation_id}")
        self._messages.setdefault(message.conversation_id, []).append(message)
        self._messages_by_id[message.id] = message
        return message

    async def get_message(self, message_id: str) -> Message | None:
        return self._messages_by_id.get(message_id)

    async def recent_messages(
        self,
        conversation_id: str,
        limit: int | None = None,
        *,
        include_system: bool = True,
    ) -> list[Message]:
        """Messages in chronological order, newest `limit` only when given."""
        messages = sorted(self._messages.get(conversation_id, []), key=lambda m: m.created_at)
        if not include_system:
            messages = [m for m in messages if m.sender_role != SenderRole.SYSTEM]
        if limit is not None:
            messages = messages[-limit:] if limit > 0 else []
        return messages

    async def upsert_artifact(self, message_id: str, **changes: Any) -> EnrichmentArtifact:
        """Create or update the single artifact for a message.

        `extra` is merged key by key into the stored value; every other field
        is replaced.
        """
        current = self._artifacts.get(message_id)
        if current is None:
            artifact = EnrichmentArtifact(message_id=message_id, **changes)
        else:
            update = dict(changes)
            if "extra" in update:
                update["extra"] = {**current.extra, **(update["extra"] or {})}
            update["updated_at"] = utc_now()
            artifact = current.model_copy(update=update)
        self._artifacts[message_id] = artifact
        return artifact

    async def get_artifact(self, message_id: str) -> EnrichmentArtifact | None:
        return self._artifacts.get(message_id)

    async def get_health_state(self, conversation_id: str) -> ConversationHealthState:
        state = self._health.get(conversation_id)
        if state is None:
            return ConversationHealthState(conversation_id=conversation_id)
        return state.model_copy(deep=True)

    async def save_health_state(self, state: ConversationHealthState) -> None:
        self._health[state.conversation_id] = state.model_copy(deep=True)

    async def replace_segments(self, conversation_id: str, segments: list[ConversationSegment]) -> None:
        self._segments[conversation_id] = [
            segment.model_copy(update={"conversation_id": conversation_id}) for segment in segments
        ]

    async def get_segments(self, conversation_id: str) -> list[ConversationSegment]:
        return list(self._segments.get(conversation_id, []))

    async def append_event(self, event_name: str, payload: dict[str, Any]) -> None:
        envelope = {
            "timestamp": utc_now().isoformat(),
            "event": event_name,
            "payload": payload,
        }
        with self._events_file.open("a", encoding="utf-8") as fp:
            fp.write(json.dumps(envelope, ensure_ascii=False, default=str) + "\n")

    def read_events(self) -> list[dict[str, Any]]:
        if not self._events_file.exists():
            return []
        with self._events_file.open("r", encoding="utf-8") as fp:
            return [json.loads(line) for line in fp if line.strip()]
