"""Reply-suggestion generation over conversation context."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Sequence

from chatbridge.config import Settings
from chatbridge.gateway import LanguageModelGateway
from chatbridge.schemas import (
    ContextualSuggestionRequest,
    GroupProfile,
    HistoryTurn,
    ImageAnalysis,
    ReplyDraftRequest,
    SenderRole,
    SuggestedReply,
    SuggestionRequest,
    TranscriptSuggestionRequest,
    TranslationRequest,
    WorkerProfile,
)
from chatbridge.utils import calculate_age, locale_label, normalize_locale, years_of_service

logger = logging.getLogger(__name__)

HEALTH_KEYWORDS = re.compile(r"体調|痛|怪我|ケガ|病気|熱|風邪|頭痛|腹痛|咳|吐き気|めまい|病院|医者|診察")

CHECK_IN_DAYS = 7
FOLLOW_UP_DAYS = 3
CONSECUTIVE_MANAGER_TURNS = 2
RECENT_WORKER_TURNS = 3

IMAGE_URGENCY_FRAMING = {
    "high": "緊急性が高い内容です。迅速な対応が必要です。",
    "medium": "対応が必要な内容です。",
    "low": "参考情報として確認してください。",
}


@dataclass(frozen=True)
class SuggestionContext:
    kind: str
    tones: tuple[str, str, str]
    description: str


def _trailing_manager_turns(history: Sequence[HistoryTurn]) -> int:
    count = 0
    for turn in reversed(history):
        if turn.sender_role == SenderRole.MEMBER:
            break
        if turn.sender_role == SenderRole.MANAGER:
            count += 1
    return count


def classify_context(
    history: Sequence[HistoryTurn],
    days_since_last_worker_message: float,
    *,
    worker_name: str = "相談者",
    worker_language: str = "不明",
) -> SuggestionContext:
    """Pick tones and prompt framing; the first matching rule wins."""
    who = f"{worker_name}さん（{worker_language}話者）"
    if not history:
        return SuggestionContext(
            "welcome",
            ("welcome", "welcome", "welcome"),
            f"{who}への初回メッセージを作成してください。「このチャットで、業務上の相談やシフト、何か困ったことがあれば"
            "なんでもメッセージを送ってください。」という趣旨の温かく親しみやすいメッセージを3パターン提案してください。",
        )

    worker_turns = [turn for turn in history if turn.sender_role == SenderRole.MEMBER][-RECENT_WORKER_TURNS:]
    if worker_turns and HEALTH_KEYWORDS.search(worker_turns[-1].body or ""):
        return SuggestionContext(
            "health",
            ("empathy", "question", "solution"),
            f"{who}から健康相談がありました。症状の詳細、いつ病院に行きたいか、怪我の場合は労災の可能性（仕事中か等）を確認し、"
            "必要に応じて病院探しをサポートしてください。",
        )

    if days_since_last_worker_message >= CHECK_IN_DAYS:
        return SuggestionContext(
            "check_in",
            ("check-in", "check-in", "check-in"),
            f"前回の会話から1週間以上経過しています。{who}の現在の状況や悩みを確認する、温かみのあるメッセージを提案してください。",
        )

    if days_since_last_worker_message >= FOLLOW_UP_DAYS:
        return SuggestionContext(
            "follow_up",
            ("gentle-follow-up", "gentle-follow-up", "continuation"),
            f"前回の会話から3日以上経過しています。{who}について、前回の話題について優しくフォローアップするメッセージを提案してください。",
        )

    if _trailing_manager_turns(history) >= CONSECUTIVE_MANAGER_TURNS:
        return SuggestionContext(
            "continuation",
            ("continuation", "encouragement", "empathy"),
            f"マネージャーが連続してメッセージを送信しています。{who}が安心して返信できるような、継続や励ましのメッセージを提案してください。",
        )

    return SuggestionContext(
        "default",
        ("question", "empathy", "solution"),
        f"{who}からのメッセージに対して、適切な返信を提案してください。",
    )


def _worker_details(worker: WorkerProfile) -> list[str]:
    details: list[str] = []
    if worker.country_of_origin:
        details.append(f"出身国: {worker.country_of_origin}")
    if worker.date_of_birth:
        details.append(f"年齢: {calculate_age(worker.date_of_birth)}歳")
    if worker.gender:
        details.append(f"性別: {worker.gender}")
    if worker.job_description:
        details.append(f"業務内容: {worker.job_description}")
    if worker.hire_date:
        details.append(f"勤続年数: {years_of_service(worker.hire_date)}")
    if worker.address:
        details.append(f"住所: {worker.address}")
    if worker.notes:
        details.append(f"備考: {worker.notes}")
    return details


def _group_details(group: GroupProfile) -> list[str]:
    details: list[str] = []
    if group.name:
        details.append(f"所属グループ: {group.name}")
    if group.address:
        details.append(f"グループ住所: {group.address}")
    if group.phone_number:
        details.append(f"グループ電話番号: {group.phone_number}")
    return details


def _format_transcript(history: Sequence[HistoryTurn]) -> str:
    roles = {SenderRole.MEMBER: "メンバー", SenderRole.MANAGER: "マネージャー", SenderRole.SYSTEM: "システム"}
    return "\n".join(
        f"[{turn.created_at.strftime('%Y/%m/%d %H:%M')}] {roles[turn.sender_role]}: {turn.body}" for turn in history
    )


def _format_lines(tones: Sequence[str]) -> str:
    return "\n".join(f"{tone}: [メッセージ内容{idx}]" for idx, tone in enumerate(tones, start=1))


class SuggestionGenerator:
    def __init__(self, gateway: LanguageModelGateway, settings: Settings):
        self._gateway = gateway
        self._settings = settings

    async def generate(self, request: SuggestionRequest) -> list[SuggestedReply]:
        if isinstance(request, ContextualSuggestionRequest):
            prompt, operation = self._contextual_prompt(request)
        elif isinstance(request, TranscriptSuggestionRequest):
            prompt, operation = self._transcript_prompt(request)
        else:
            raise TypeError(f"unsupported suggestion request: {type(request).__name__}")

        batch = await self._gateway.suggest_replies(
            ReplyDraftRequest(prompt=prompt, language=request.language, operation=operation)
        )
        return await self._translate_all(batch.suggestions, request.language, request.target_translation_language)

    def _transcript_prompt(self, request: TranscriptSuggestionRequest) -> tuple[str, str]:
        prompt = (
            f"You are an empathetic support {request.persona}. Based on the following transcript, "
            f"suggest exactly 3 concise replies in {locale_label(request.language)}.\n\n"
            "IMPORTANT: Return ONLY the replies in this exact format (one per line):\n"
            "question: [your question reply here]\n"
            "empathy: [your empathetic reply here]\n"
            "solution: [your solution-oriented reply here]\n\n"
            "Do NOT include any other text, numbering, or markdown formatting.\n\n"
            f"Transcript:\n{request.transcript}"
        )
        return prompt, f"suggestions-{request.language}"

    def _contextual_prompt(self, request: ContextualSuggestionRequest) -> tuple[str, str]:
        history = request.history[-self._settings.history_limit :]
        worker_name = request.worker.name or "相談者"
        worker_language = locale_label(request.worker.locale) if request.worker.locale else "不明"
        context = classify_context(
            history,
            request.days_since_last_worker_message,
            worker_name=worker_name,
            worker_language=worker_language,
        )
        logger.debug("suggestion_context: %s tones=%s", context.kind, ",".join(context.tones))

        worker_details = _worker_details(request.worker)
        group_details = _group_details(request.group)
        worker_section = "\n\n### メンバー情報:\n" + "\n".join(worker_details) if worker_details else ""
        group_section = "\n\n### グループ情報:\n" + "\n".join(group_details) if group_details else ""

        prompt = (
            "あなたは外国人労働者をサポートする経験豊富なマネージャーです。以下の情報に基づいて、"
            f"{worker_name}さん（{worker_language}話者）に送る次のメッセージを{locale_label(request.language)}で3つ提案してください。\n\n"
            f"{context.description}{worker_section}{group_section}\n\n"
            "IMPORTANT: 以下の形式で正確に3つのメッセージを返してください（1行に1つ）:\n"
            f"{_format_lines(context.tones)}\n\n"
            "番号付けやマークダウン形式は使用しないでください。\n"
            "上記のメンバー情報とグループ情報を考慮して、個別化された適切なメッセージを提案してください。\n\n"
            f"会話履歴:\n{_format_transcript(history)}\n\n"
            f"前回のメンバーからのメッセージからの経過日数: {round(request.days_since_last_worker_message)} 日"
        )
        return prompt, f"enhanced-suggestions-{request.language}"

    async def generate_for_image(
        self,
        analysis: ImageAnalysis,
        *,
        worker: WorkerProfile,
        language: str,
        user_message: str | None = None,
        target_translation_language: str | None = None,
    ) -> list[SuggestedReply]:
        worker_name = worker.name or "メンバー"
        actions = "\n".join(f"  {idx}. {action}" for idx, action in enumerate(analysis.suggested_actions, start=1))
        user_context = f'{worker_name}さんのメッセージ: "{user_message}"\n\n' if user_message else ""
        prompt = (
            "あなたは外国人労働者をサポートする経験豊富なマネージャーです。\n\n"
            f"{worker_name}さんから画像が送られてきました。\n\n"
            f"{user_context}"
            "【画像の分析結果】\n"
            f"- 内容: {analysis.description}\n"
            f"- 書類の種類: {analysis.document_type or '不明'}\n"
            f"- 緊急度: {analysis.urgency}\n"
            f"- {IMAGE_URGENCY_FRAMING[analysis.urgency]}\n"
            f"- 推奨される対応:\n{actions or '  なし'}\n\n"
            f"この画像に対する返信として、{worker_name}さんに送る適切なメッセージを{locale_label(language)}で3つ提案してください。\n\n"
            "IMPORTANT: 以下の形式で正確に3つのメッセージを返してください（1行に1つ）:\n"
            "confirmation: [内容を確認した旨のメッセージ]\n"
            "guidance: [具体的な対応手順を案内するメッセージ]\n"
            "support: [サポートを申し出るメッセージ]\n\n"
            "番号付けやマークダウン形式は使用しないでください。"
        )
        batch = await self._gateway.suggest_replies(
            ReplyDraftRequest(prompt=prompt, language=language, operation="image-suggestions")
        )
        return await self._translate_all(batch.suggestions, language, target_translation_language)

    async def _translate_all(
        self,
        suggestions: list[SuggestedReply],
        language: str,
        target_language: str | None,
    ) -> list[SuggestedReply]:
        source = normalize_locale(language)
        target = normalize_locale(target_language)
        if not target or target == source or not suggestions:
            return suggestions
        return list(await asyncio.gather(*(self._translate_one(s, language, target) for s in suggestions)))

    async def _translate_one(self, suggestion: SuggestedReply, language: str, target: str) -> SuggestedReply:
        try:
            result = await self._gateway.translate(
                TranslationRequest(content=suggestion.content, source_language=language, target_language=target)
            )
        except Exception:
            logger.exception("suggestion_translation_failed: tone=%s", suggestion.tone)
            return suggestion
        if result.fallback_used:
            return suggestion
        return suggestion.model_copy(update={"translation": result.translation, "translation_lang": target})
