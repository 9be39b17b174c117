"""Multi-turn health consultation flow.

The flow is a single register per conversation (`ConversationHealthState`)
advanced by one handler per state. Every handler that speaks sends exactly
one system message per step, and every state change is published as
`conversation-state-updated`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from chatbridge.config import Settings
from chatbridge.facilities import FacilitySearchClient, FacilitySearchError
from chatbridge.gateway import LanguageModelGateway
from chatbridge.publisher import CONVERSATION_STATE_UPDATED, NEW_MESSAGE, Publisher
from chatbridge.schemas import (
    Conversation,
    ConversationHealthState,
    HealthAnalysis,
    HealthState,
    HistoryTurn,
    MedicalFacility,
    Message,
    MessageType,
    SenderRole,
    TranslationRequest,
)
from chatbridge.storage import ConversationStore
from chatbridge.utils import normalize_locale

logger = logging.getLogger(__name__)

TRANSLATION_SEPARATOR = "\n\n---TRANSLATION---\n\n"
SYSTEM_SENDER_ID = "system"
FACILITIES_IN_MESSAGE = 3

CANCEL_KEYWORDS = (
    "医療相談を中止",
    "中止します",
    "キャンセル",
    "やめます",
    "tôi muốn dừng tư vấn y tế",
    "hủy bỏ tư vấn",
    "dừng tư vấn",
    "cancel consultation",
    "stop consultation",
    "cancel the consultation",
)
_CANCEL_TRAILERS = ("。", "、", ".", ",", "!")

DATE_LABELS = {"today": "本日", "tomorrow": "明日", "this_week": "今週中"}
TIME_LABELS = {"morning": "午前", "afternoon": "午後", "evening": "夕方"}

MSG_CONFIRMATION = "病院に行く必要がありそうですか？"
MSG_SYMPTOM_INQUIRY = (
    "承知しました。\n\nもう少し詳しく教えてください。\n"
    "・いつから症状がありますか？\n・他に気になる症状はありますか？\n・痛みや辛さの程度はどのくらいですか？"
)
MSG_DECLINED = (
    "承知しました。\n\n無理せず、もし症状が悪化したらいつでもお知らせくださいね。お大事にしてください。"
    "\n\n【医療機関の紹介は終了しました】"
)
MSG_SCHEDULE_REQUEST = "ありがとうございます。\n\nいつ受診したいですか？\n\n例：\n・今日の午後\n・明日の午前中\n・今週中"
MSG_SCHEDULE_CONFIRMED = "承知しました。{when}での受診をご希望とのことですね。\n\n近隣の医療機関を検索してお伝えします。少々お待ちください。"
MSG_SCHEDULE_UNCLEAR = (
    "申し訳ございませんが、ご希望の日時がわかりませんでした。\n\n例：\n・今日の午後\n・明日の午前中\n・今週中\n\n"
    "のようにお知らせください。"
)
MSG_NO_ADDRESS = "申し訳ございませんが、住所が登録されていないため、医療機関を検索できません。\n\n設定ページから住所を登録してください。"
MSG_FACILITIES = (
    "近隣の医療機関を{count}件見つけました（{range_km}圏内）。以下をご検討ください：\n\n{listing}\n\n"
    "次のメッセージで、病院への予約電話や受診時の日本語例文をお伝えします。"
)
MSG_NO_FACILITIES = (
    "申し訳ございませんが、近隣の医療機関が見つかりませんでした。\n\n"
    "別の地域や症状で再度検索することもできます。何かお手伝いできることがあれば教えてください。"
)
MSG_SEARCH_ERROR = "申し訳ございませんが、医療機関の検索中にエラーが発生しました。\n\n{error}\n\nご不明な点があればマネージャーにご相談ください。"
MSG_CANCELLED = "承知しました。医療相談を中止します。\n\nまた何かございましたら、いつでもお知らせください。"


def is_cancellation(text: str) -> bool:
    normalized = (text or "").strip().lower()
    if not normalized:
        return False
    for keyword in CANCEL_KEYWORDS:
        if normalized == keyword or normalized.startswith(keyword) or normalized.endswith(keyword):
            return True
        if any(keyword + trailer in normalized for trailer in _CANCEL_TRAILERS):
            return True
    return False


def schedule_label(preferred_date: str | None, specific_date: str | None, time_preference: str | None) -> str:
    date_part = DATE_LABELS.get(preferred_date or "", "") or (specific_date or "")
    return f"{date_part}{TIME_LABELS.get(time_preference or '', '')}"


def search_range_label(facilities: list[MedicalFacility]) -> str:
    max_distance = max((f.distance_meters or 0 for f in facilities), default=0)
    if max_distance > 5000:
        return "10km"
    if max_distance > 3000:
        return "5km"
    return "3km"


def format_facility_listing(facilities: list[MedicalFacility]) -> str:
    blocks: list[str] = []
    for idx, facility in enumerate(facilities, start=1):
        lines = [f"{idx}. **{facility.name}**"]
        if facility.recommendation_reasons:
            lines.append(f"   💡 {'、'.join(facility.recommendation_reasons)}")
        lines.append(f"   📍 {facility.address}")
        if facility.phone_number:
            lines.append(f"   📞 {facility.phone_number}")
        if facility.open_now is not None:
            lines.append("   ✅ 現在営業中" if facility.open_now else "   ⏰ 営業時間外")
        if facility.rating:
            lines.append(f"   ⭐ 評価: {facility.rating}/5.0")
        if facility.distance_meters is not None:
            lines.append(f"   🚶 距離: {facility.distance_meters / 1000:.1f}km")
        if facility.accepts_foreigners:
            lines.append("   🌐 外国人対応可能")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


@dataclass
class ConsultationTurn:
    conversation: Conversation
    analysis: HealthAnalysis
    latest: Message
    history: list[HistoryTurn]
    state: ConversationHealthState


Handler = Callable[[ConsultationTurn], Awaitable[bool]]


class HealthConsultationFlow:
    def __init__(
        self,
        *,
        settings: Settings,
        store: ConversationStore,
        gateway: LanguageModelGateway,
        facilities: FacilitySearchClient,
        publisher: Publisher,
    ):
        self._settings = settings
        self._store = store
        self._gateway = gateway
        self._facilities = facilities
        self._publisher = publisher
        self._handlers: dict[HealthState, Handler] = {
            HealthState.NONE: self._on_none,
            HealthState.WAITING_FOR_INTENT: self._on_waiting_for_intent,
            HealthState.WAITING_FOR_SYMPTOM_DETAILS: self._on_waiting_for_symptom_details,
            HealthState.WAITING_FOR_SCHEDULE: self._on_waiting_for_schedule,
            HealthState.PROVIDING_FACILITIES: self._on_providing_facilities,
        }

    async def handle_turn(
        self,
        conversation: Conversation,
        analysis: HealthAnalysis,
        latest: Message,
        history: list[HistoryTurn],
    ) -> bool:
        """Advance the flow for one worker message.

        Returns True when the flow produced this turn's reply, in which case
        regular reply suggestions are suppressed.
        """
        state = await self._store.get_health_state(conversation.id)
        logger.info("health_flow_turn: conversation=%s state=%s", conversation.id, state.state.value)

        if state.state == HealthState.COMPLETED and analysis.is_health_related:
            logger.info("health_flow_reset: conversation=%s new health issue after completion", conversation.id)
            state = await self._transition(state, HealthState.NONE, reset_data=True)

        turn = ConsultationTurn(conversation, analysis, latest, history, state)

        if state.state.is_active and is_cancellation(latest.body):
            logger.info("health_flow_cancelled: conversation=%s", conversation.id)
            await self._send_system_message(
                conversation,
                MSG_CANCELLED,
                {"type": "health_consultation_cancelled", "health_consultation_state": HealthState.COMPLETED.value},
            )
            await self._transition(state, HealthState.COMPLETED)
            return True

        handler = self._handlers.get(state.state)
        if handler is None:
            return False
        return await handler(turn)

    # ------------------------------------------------------------------ handlers

    async def _on_none(self, turn: ConsultationTurn) -> bool:
        if not turn.analysis.is_health_related:
            return False
        snapshot = turn.analysis.model_dump(mode="json")
        await self._send_system_message(
            turn.conversation,
            MSG_CONFIRMATION,
            {"type": "health_consultation_confirmation", "show_yes_no_buttons": True, "health_analysis": snapshot},
        )
        await self._transition(turn.state, HealthState.WAITING_FOR_INTENT, data={"analysis": snapshot})
        return True

    async def _on_waiting_for_intent(self, turn: ConsultationTurn) -> bool:
        intent = await self._gateway.analyze_health_intent(turn.latest.body, turn.history)
        intent_snapshot = intent.model_dump(mode="json")
        if intent.wants_consultation:
            await self._send_system_message(
                turn.conversation,
                MSG_SYMPTOM_INQUIRY,
                {"type": "health_consultation_symptom_inquiry", "intent_analysis": intent_snapshot},
            )
            await self._transition(
                turn.state, HealthState.WAITING_FOR_SYMPTOM_DETAILS, data={"intent": intent_snapshot}
            )
        else:
            await self._send_system_message(turn.conversation, MSG_DECLINED, {"type": "health_consultation_declined"})
            await self._transition(turn.state, HealthState.COMPLETED, data={"intent": intent_snapshot})
        return True

    async def _on_waiting_for_symptom_details(self, turn: ConsultationTurn) -> bool:
        await self._send_system_message(
            turn.conversation, MSG_SCHEDULE_REQUEST, {"type": "health_consultation_schedule_request"}
        )
        await self._transition(
            turn.state, HealthState.WAITING_FOR_SCHEDULE, data={"symptom_details": turn.latest.body}
        )
        return True

    async def _on_waiting_for_schedule(self, turn: ConsultationTurn) -> bool:
        intent = await self._gateway.analyze_health_intent(turn.latest.body, turn.history)
        if not intent.has_schedule:
            await self._send_system_message(
                turn.conversation, MSG_SCHEDULE_UNCLEAR, {"type": "health_consultation_schedule_unclear"}
            )
            return True

        intent_snapshot = intent.model_dump(mode="json")
        when = schedule_label(intent.preferred_date, intent.specific_date, intent.time_preference)
        await self._send_system_message(
            turn.conversation,
            MSG_SCHEDULE_CONFIRMED.format(when=when),
            {"type": "health_consultation_schedule_confirmed", "intent_analysis": intent_snapshot},
        )
        turn.state = await self._transition(
            turn.state, HealthState.PROVIDING_FACILITIES, data={"schedule": intent_snapshot}
        )
        return await self._provide_facilities(turn)

    async def _on_providing_facilities(self, turn: ConsultationTurn) -> bool:
        # Reached only when an earlier turn stopped between confirmation and search.
        return await self._provide_facilities(turn)

    async def _provide_facilities(self, turn: ConsultationTurn) -> bool:
        conversation = turn.conversation
        address = (conversation.worker.address or "").strip()
        if not address:
            await self._send_system_message(conversation, MSG_NO_ADDRESS, {"type": "health_consultation_no_address"})
            await self._transition(turn.state, HealthState.COMPLETED)
            return True

        snapshot = turn.state.data.get("analysis") or {}
        symptom_type = snapshot.get("symptom_type") or turn.analysis.symptom_type or "内科"
        urgency = snapshot.get("urgency") or turn.analysis.urgency or "flexible"

        try:
            facilities = await self._facilities.search(address, symptom_type, urgency)
        except FacilitySearchError as exc:
            logger.warning("health_flow_search_failed: conversation=%s status=%s", conversation.id, exc.status)
            await self._send_search_error(turn, exc.message)
            return True
        except Exception as exc:
            logger.exception("health_flow_search_failed: conversation=%s", conversation.id)
            await self._send_search_error(turn, str(exc))
            return True

        if not facilities:
            await self._send_system_message(
                conversation, MSG_NO_FACILITIES, {"type": "health_consultation_no_facilities"}
            )
            await self._transition(turn.state, HealthState.COMPLETED)
            return True

        top = facilities[:FACILITIES_IN_MESSAGE]
        body = MSG_FACILITIES.format(
            count=len(facilities),
            range_km=search_range_label(top),
            listing=format_facility_listing(top),
        )
        await self._send_system_message(
            conversation,
            body,
            {"type": "health_consultation_facilities", "facilities": [f.model_dump(mode="json") for f in top]},
        )
        await self._transition(turn.state, HealthState.COMPLETED, data={"facility_count": len(facilities)})
        return True

    async def _send_search_error(self, turn: ConsultationTurn, error: str) -> None:
        await self._send_system_message(
            turn.conversation,
            MSG_SEARCH_ERROR.format(error=error),
            {"type": "health_consultation_search_error", "error": error},
        )
        await self._transition(turn.state, HealthState.COMPLETED)

    # ------------------------------------------------------------------ effects

    async def _transition(
        self,
        state: ConversationHealthState,
        new_state: HealthState,
        *,
        data: dict[str, Any] | None = None,
        reset_data: bool = False,
    ) -> ConversationHealthState:
        merged = {} if reset_data else dict(state.data)
        merged.update(data or {})
        updated = state.model_copy(update={"state": new_state, "data": merged})
        await self._store.save_health_state(updated)
        await self._store.append_event(
            "health_state_transition",
            {"conversation_id": state.conversation_id, "from": state.state.value, "to": new_state.value},
        )
        self._publisher.publish(
            state.conversation_id,
            CONVERSATION_STATE_UPDATED,
            {"conversation_id": state.conversation_id, "health_consultation_state": new_state.value},
        )
        logger.info(
            "health_flow_transition: conversation=%s %s -> %s",
            state.conversation_id,
            state.state.value,
            new_state.value,
        )
        return updated

    async def _bilingual_body(self, conversation: Conversation, body: str) -> str:
        source = normalize_locale(self._settings.operating_language) or "ja"
        target = normalize_locale(conversation.worker.locale) or source
        if target == source:
            return body
        try:
            result = await self._gateway.translate(
                TranslationRequest(content=body, source_language=source, target_language=target)
            )
        except Exception:
            logger.exception("system_message_translation_failed: conversation=%s", conversation.id)
            return body
        if result.fallback_used or not result.translation.strip():
            return body
        return f"{body}{TRANSLATION_SEPARATOR}{result.translation}"

    async def _send_system_message(self, conversation: Conversation, body: str, metadata: dict[str, Any]) -> Message:
        message = Message(
            conversation_id=conversation.id,
            sender_id=conversation.manager_id or SYSTEM_SENDER_ID,
            sender_role=SenderRole.SYSTEM,
            body=await self._bilingual_body(conversation, body),
            language=normalize_locale(self._settings.operating_language) or "ja",
            type=MessageType.SYSTEM,
            metadata=metadata,
        )
        await self._store.add_message(message)
        self._publisher.publish(
            conversation.id,
            NEW_MESSAGE,
            {"conversation_id": conversation.id, "message": message.model_dump(mode="json")},
        )
        logger.info("system_message_sent: conversation=%s type=%s", conversation.id, metadata.get("type"))
        return message
