"""Background message enrichment orchestration."""

from __future__ import annotations

import asyncio
import logging
import weakref
from contextlib import nullcontext
from typing import Any, Awaitable

from chatbridge.config import Settings
from chatbridge.consultation import HealthConsultationFlow
from chatbridge.gateway import LanguageModelGateway
from chatbridge.publisher import MESSAGE_UPDATED, Publisher
from chatbridge.schemas import (
    ContextualSuggestionRequest,
    Conversation,
    ConversationSegment,
    EnrichmentArtifact,
    HealthAnalysis,
    HistoryTurn,
    ImageAnalysis,
    ImageAnalysisRequest,
    Message,
    SenderRole,
    SuggestedReply,
    TranslationRequest,
    TranslationResult,
)
from chatbridge.storage import ConversationStore
from chatbridge.suggestions import SuggestionGenerator
from chatbridge.utils import days_between, elapsed_ms, normalize_locale, now_ms, utc_now

logger = logging.getLogger(__name__)


def days_since_last_worker_message(history: list[HistoryTurn]) -> float:
    for turn in reversed(history):
        if turn.sender_role == SenderRole.MEMBER:
            return max(0.0, days_between(turn.created_at, utc_now()))
    return 0.0


class EnrichmentOrchestrator:
    """Runs the per-message enrichment phases off the request path.

    Each phase is isolated: an exception is logged and only that phase's
    contribution is lost. Nothing raised inside a scheduled task reaches the
    caller of `schedule`.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        store: ConversationStore,
        gateway: LanguageModelGateway,
        flow: HealthConsultationFlow,
        suggestions: SuggestionGenerator,
        publisher: Publisher,
    ):
        self._settings = settings
        self._store = store
        self._gateway = gateway
        self._flow = flow
        self._suggestions = suggestions
        self._publisher = publisher
        self._tasks: set[asyncio.Task[Any]] = set()
        # Entries vanish once no running or waiting enrichment holds the lock.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    # ------------------------------------------------------------------ scheduling

    def _track(self, coro: Awaitable[Any], label: str) -> asyncio.Task[Any]:
        async def _guarded() -> Any:
            try:
                return await coro
            except Exception:
                logger.exception("background_task_failed: %s", label)
                return None

        task = asyncio.create_task(_guarded(), name=label)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def schedule(self, message: Message) -> asyncio.Task[Any]:
        """Start enrichment and segmentation for a persisted message without awaiting either."""
        task = self._track(self.run(message), f"enrich:{message.id}")
        self._track(self.regenerate_segments(message.conversation_id), f"segments:{message.conversation_id}")
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _lock_for(self, conversation_id: str):
        if not self._settings.serialize_conversations:
            return nullcontext()
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = self._locks[conversation_id] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------ helpers

    def _locales(self, conversation: Conversation) -> tuple[str, str]:
        manager_locale = normalize_locale(conversation.manager_locale) or self._settings.default_manager_locale
        worker_locale = normalize_locale(conversation.worker.locale) or self._settings.default_worker_locale
        return manager_locale, worker_locale

    def _publish_update(self, message: Message, artifact: EnrichmentArtifact) -> None:
        self._publisher.publish(
            message.conversation_id,
            MESSAGE_UPDATED,
            {
                "conversation_id": message.conversation_id,
                "message": message.model_dump(mode="json"),
                "artifact": artifact.model_dump(mode="json"),
            },
        )

    async def _history(self, conversation_id: str) -> list[HistoryTurn]:
        messages = await self._store.recent_messages(conversation_id, self._settings.history_limit)
        return [HistoryTurn.from_message(m) for m in messages]

    def _contextual_request(
        self, conversation: Conversation, history: list[HistoryTurn]
    ) -> ContextualSuggestionRequest:
        manager_locale, worker_locale = self._locales(conversation)
        return ContextualSuggestionRequest(
            history=history,
            worker=conversation.worker,
            group=conversation.group,
            language=manager_locale,
            persona="manager",
            target_translation_language=worker_locale if worker_locale != manager_locale else None,
            days_since_last_worker_message=days_since_last_worker_message(history),
        )

    # ------------------------------------------------------------------ phases

    async def _translate(self, message: Message, target: str) -> TranslationResult | None:
        source = normalize_locale(message.language) or message.language
        if not message.body.strip() or source == target:
            return None
        return await self._gateway.translate(
            TranslationRequest(content=message.body, source_language=source, target_language=target)
        )

    async def _analyze_image(self, message: Message, conversation: Conversation) -> ImageAnalysis | None:
        if not message.content_url:
            return None
        return await self._gateway.analyze_image(
            ImageAnalysisRequest(
                image_url=message.content_url,
                user_message=message.body or None,
                worker_locale=conversation.worker.locale,
            )
        )

    async def _consult(
        self, message: Message, conversation: Conversation, history: list[HistoryTurn]
    ) -> tuple[HealthAnalysis | None, bool]:
        if message.sender_role != SenderRole.MEMBER:
            return None, False
        analysis = await self._gateway.analyze_health_consultation(history, conversation.worker.address)
        state = await self._store.get_health_state(conversation.id)
        if not (analysis.is_health_related or state.state.is_active):
            return analysis, False
        in_progress = await self._flow.handle_turn(conversation, analysis, message, history)
        return analysis, in_progress

    async def _suggest(
        self,
        message: Message,
        conversation: Conversation,
        history: list[HistoryTurn],
        image_analysis: ImageAnalysis | None,
    ) -> list[SuggestedReply]:
        if image_analysis is not None:
            manager_locale, worker_locale = self._locales(conversation)
            return await self._suggestions.generate_for_image(
                image_analysis,
                worker=conversation.worker,
                language=manager_locale,
                user_message=message.body or None,
                target_translation_language=worker_locale if worker_locale != manager_locale else None,
            )
        return await self._suggestions.generate(self._contextual_request(conversation, history))

    async def run(self, message: Message) -> EnrichmentArtifact | None:
        conversation = await self._store.get_conversation(message.conversation_id)
        if conversation is None:
            logger.warning("enrichment_skipped: unknown conversation %s", message.conversation_id)
            return None
        async with self._lock_for(conversation.id):
            return await self._run_phases(message, conversation)

    async def _run_phases(self, message: Message, conversation: Conversation) -> EnrichmentArtifact | None:
        started = now_ms()
        manager_locale, worker_locale = self._locales(conversation)
        target = manager_locale if message.sender_role == SenderRole.MEMBER else worker_locale

        translation: TranslationResult | None = None
        try:
            translation = await self._translate(message, target)
            if translation is not None:
                artifact = await self._store.upsert_artifact(
                    message.id,
                    translation=translation.translation,
                    translation_lang=target,
                    extra={"provider": translation.provider, "model": translation.model},
                )
                self._publish_update(message, artifact)
        except Exception:
            logger.exception("enrichment_phase_failed: translate message=%s", message.id)

        image_analysis: ImageAnalysis | None = None
        try:
            image_analysis = await self._analyze_image(message, conversation)
        except Exception:
            logger.exception("enrichment_phase_failed: image message=%s", message.id)

        history: list[HistoryTurn] = []
        try:
            history = await self._history(conversation.id)
        except Exception:
            logger.exception("enrichment_phase_failed: history message=%s", message.id)

        health_analysis: HealthAnalysis | None = None
        in_progress = False
        try:
            health_analysis, in_progress = await self._consult(message, conversation, history)
        except Exception:
            logger.exception("enrichment_phase_failed: health message=%s", message.id)

        suggestions: list[SuggestedReply] = []
        if not in_progress:
            try:
                suggestions = await self._suggest(message, conversation, history, image_analysis)
            except Exception:
                logger.exception("enrichment_phase_failed: suggestions message=%s", message.id)

        extra: dict[str, Any] = {"health_consultation_in_progress": in_progress}
        if translation is not None:
            extra.update(provider=translation.provider, model=translation.model)
        if health_analysis is not None:
            extra["health_analysis"] = health_analysis.model_dump(mode="json")
        if image_analysis is not None:
            extra["image_analysis"] = image_analysis.model_dump(mode="json")

        try:
            artifact = await self._store.upsert_artifact(message.id, suggestions=suggestions, extra=extra)
        except Exception:
            logger.exception("enrichment_phase_failed: final write message=%s", message.id)
            return None
        self._publish_update(message, artifact)
        logger.info(
            "enrichment_done: message=%s latency_ms=%d suggestions=%d in_progress=%s",
            message.id,
            elapsed_ms(started),
            len(suggestions),
            in_progress,
        )
        return artifact

    # ------------------------------------------------------------------ on demand

    async def draft_replies(self, conversation_id: str) -> list[SuggestedReply]:
        """Regenerate suggestions for the latest non-system message of a conversation."""
        conversation = await self._store.get_conversation(conversation_id)
        if conversation is None:
            raise KeyError(f"unknown conversation: {conversation_id}")
        history = await self._history(conversation_id)
        suggestions = await self._suggestions.generate(self._contextual_request(conversation, history))

        latest = await self._store.recent_messages(conversation_id, 1, include_system=False)
        if latest:
            artifact = await self._store.upsert_artifact(latest[0].id, suggestions=suggestions)
            self._publish_update(latest[0], artifact)
        return suggestions

    async def regenerate_segments(self, conversation_id: str) -> list[ConversationSegment]:
        try:
            messages = await self._store.recent_messages(conversation_id)
            segments = await self._gateway.segment(messages)
            await self._store.replace_segments(conversation_id, segments)
        except Exception:
            logger.exception("segment_regeneration_failed: conversation=%s", conversation_id)
            return []
        logger.info("segments_regenerated: conversation=%s count=%d", conversation_id, len(segments))
        return segments
