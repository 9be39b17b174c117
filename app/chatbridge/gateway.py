"""Language model gateway with labeled fallbacks for every capability."""

from __future__ import annotations

import logging
from typing import Sequence

import httpx
from pydantic import ValidationError

from chatbridge.cache import TranslationCache
from chatbridge.config import Settings
from chatbridge.gemini import GeminiClient
from chatbridge.parsing import (
    clean_translation,
    extract_json_array,
    extract_json_object,
    looks_like_explanation,
    parse_suggestions,
    safe_default_suggestions,
)
from chatbridge.schemas import (
    Capability,
    ConsultationIntent,
    ConversationSegment,
    HealthAnalysis,
    HistoryTurn,
    ImageAnalysis,
    ImageAnalysisRequest,
    Message,
    ReplyDraftRequest,
    SenderRole,
    SuggestedReply,
    SuggestionBatch,
    TranslationRequest,
    TranslationResult,
)
from chatbridge.utils import elapsed_ms, normalize_locale, now_ms

logger = logging.getLogger(__name__)

PROVIDER = "google-ai-studio"
CACHE_HIT_WARNING = "Translation retrieved from cache"

MOCK_SUGGESTIONS = (
    ("ご質問ありがとうございます。詳しく教えていただけますか？", "question"),
    ("お困りの状況、理解いたしました。", "empathy"),
    ("こちらの方法で解決できるかと思います。", "solution"),
)

WHOLE_CONVERSATION_TITLE = "会話全体"

HEALTH_HISTORY_TURNS = 5
INTENT_HISTORY_TURNS = 3


def _timestamp(turn: HistoryTurn | Message) -> str:
    return turn.created_at.strftime("%Y/%m/%d %H:%M")


class LanguageModelGateway:
    """Structured entry points over the Gemini client.

    No method raises: unconfigured capabilities and provider failures both
    resolve to the documented fallback for that capability.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        cache: TranslationCache | None = None,
        client: GeminiClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._settings = settings
        self._cache = cache or TranslationCache(settings.translation_cache_size, settings.translation_cache_ttl_sec)
        self._client = client or GeminiClient(settings, transport=transport)
        self._transport = transport

    @property
    def cache(self) -> TranslationCache:
        return self._cache

    def is_configured(self, capability: Capability) -> bool:
        return self._client.is_configured(capability)

    def model_name(self, capability: Capability) -> str:
        return self._client.model_name(capability)

    async def _generate(self, capability: Capability, prompt: str, *, operation: str, **kwargs) -> str | None:
        started = now_ms()
        try:
            return await self._client.generate(capability, prompt, operation=operation, **kwargs)
        except Exception as exc:
            logger.error(
                "%s: Failed after %dms - %s: %s", operation, elapsed_ms(started), type(exc).__name__, exc
            )
            return None

    # ------------------------------------------------------------------ translate

    @staticmethod
    def _translation_prompt(request: TranslationRequest) -> str:
        return (
            "You are a professional translator for workplace chats between foreign workers and their managers.\n\n"
            f"Translate the following message from {request.source_language} to {request.target_language}.\n\n"
            "IMPORTANT Guidelines:\n"
            "- Keep a polite, professional tone suitable for the workplace\n"
            "- Preserve the original meaning and intent\n"
            "- Use natural, conversational language that native speakers would use\n"
            "- Return ONLY the translated text, without any explanation or formatting\n"
            "- Never ask for clarification; if the message is short or unclear, translate it as-is\n\n"
            f"Message:\n{request.content}"
        )

    async def translate(self, request: TranslationRequest) -> TranslationResult:
        content = request.content
        source = normalize_locale(request.source_language) or request.source_language
        target = normalize_locale(request.target_language) or request.target_language
        model = self.model_name(Capability.TRANSLATE)

        if not content.strip() or source == target:
            return TranslationResult(translation=content, provider="passthrough", model="none")

        cached = self._cache.get(content, source, target)
        if cached is not None:
            return TranslationResult(translation=cached, provider=PROVIDER, model=model, warnings=[CACHE_HIT_WARNING])

        if not self.is_configured(Capability.TRANSLATE):
            reason = "GOOGLE_TRANSLATE_API_KEY not set"
            logger.info("translate: %s; returning original content", reason)
            return TranslationResult(
                translation=content,
                provider="mock",
                model="offline",
                warnings=[f"{reason}; returning original content."],
                fallback_used=True,
            )

        operation = f"translate-{source}-to-{target}"
        output = await self._generate(Capability.TRANSLATE, self._translation_prompt(request), operation=operation)
        translation = clean_translation(output or "")
        if not translation:
            return TranslationResult(
                translation=content,
                provider=PROVIDER,
                model=model,
                warnings=["Translation request failed; returning original content."],
                fallback_used=True,
            )

        if looks_like_explanation(content, translation):
            logger.warning("%s: output looks like an explanation; discarded: %r", operation, translation[:200])
            return TranslationResult(
                translation=content,
                provider=PROVIDER,
                model=model,
                warnings=["Translation output was an explanation; returning original content."],
                fallback_used=True,
            )

        self._cache.put(content, source, target, translation)
        return TranslationResult(translation=translation, provider=PROVIDER, model=model)

    # ------------------------------------------------------------------ suggestions

    async def suggest_replies(self, request: ReplyDraftRequest) -> SuggestionBatch:
        model = self.model_name(Capability.SUGGEST)
        if not self.is_configured(Capability.SUGGEST):
            logger.info("%s: GOOGLE_SUGGEST_API_KEY not configured, returning mock suggestions", request.operation)
            mock = [SuggestedReply(content=text, tone=tone, language=request.language) for text, tone in MOCK_SUGGESTIONS]
            return SuggestionBatch(suggestions=mock, provider="mock", model="offline", fallback_used=True)

        output = await self._generate(Capability.SUGGEST, request.prompt, operation=request.operation, temperature=0.7)
        if not output:
            return SuggestionBatch(
                suggestions=safe_default_suggestions(request.language),
                provider=PROVIDER,
                model=model,
                fallback_used=True,
            )

        logger.debug("%s: raw output: %s", request.operation, output)
        suggestions = parse_suggestions(output, request.language)
        return SuggestionBatch(suggestions=suggestions, provider=PROVIDER, model=model)

    # ------------------------------------------------------------------ health

    async def analyze_health_intent(self, reply: str, history: Sequence[HistoryTurn]) -> ConsultationIntent:
        fallback = ConsultationIntent(wants_consultation=False)
        if not self.is_configured(Capability.HEALTH_INTENT):
            logger.info("health-intent: model not configured")
            return fallback

        transcript = "\n".join(
            f"{'メンバー' if turn.sender_role == SenderRole.MEMBER else 'システム'}: {turn.body}"
            for turn in list(history)[-INTENT_HISTORY_TURNS:]
        )
        prompt = (
            "以下の会話履歴と最新のメンバーの返信を見て、メンバーが医療機関への受診を希望しているかを判定してください。\n\n"
            f"会話履歴:\n{transcript}\n\n"
            f"最新のメンバーの返信: {reply}\n\n"
            "以下のJSON形式で回答してください:\n"
            "{\n"
            '  "wantsConsultation": boolean,\n'
            '  "preferredDate": "today" | "tomorrow" | "this_week" | "specific_date" | null,\n'
            '  "specificDate": "YYYY-MM-DD" | null,\n'
            '  "timePreference": "morning" | "afternoon" | "evening" | null\n'
            "}\n\n"
            "判定基準:\n"
            "- wantsConsultation: 「はい」「お願いします」「受診したい」「病院に行きたい」などの肯定ならtrue\n"
            "- wantsConsultation: 「いいえ」「要らない」「必要ない」「今はいい」などの否定ならfalse\n"
            "- preferredDate: 「今日」「明日」「今週中」などの希望があれば該当する値を、具体的な日付があれば\"specific_date\"を\n"
            "- specificDate: 具体的な日付があればYYYY-MM-DD形式で\n"
            "- timePreference: 「午前」「午後」「夕方」などの時間帯の希望があれば該当する値を"
        )
        output = await self._generate(Capability.HEALTH_INTENT, prompt, operation="health-intent", json_mode=True)
        parsed = extract_json_object(output or "")
        if parsed is None:
            if output:
                logger.warning("health-intent: unparseable output: %s", output[:500])
            return fallback
        try:
            return ConsultationIntent.model_validate(parsed)
        except ValidationError as exc:
            logger.warning("health-intent: invalid payload: %s", exc)
            return fallback

    async def analyze_health_consultation(
        self, history: Sequence[HistoryTurn], address: str | None
    ) -> HealthAnalysis:
        fallback = HealthAnalysis(is_health_related=False)
        if not self.is_configured(Capability.HEALTH_CONSULTATION):
            logger.info("health-consultation: model not configured")
            return fallback

        transcript = "\n".join(
            f"{'メンバー' if turn.sender_role == SenderRole.MEMBER else 'マネージャー'}: {turn.body}"
            for turn in list(history)[-HEALTH_HISTORY_TURNS:]
        )
        prompt = (
            "以下の会話を分析して、健康相談（体調不良、怪我、病気など）に関連しているかを判定してください。\n\n"
            f"会話履歴:\n{transcript}\n\n"
            f"メンバーの住所: {address or '未登録'}\n\n"
            "以下のJSON形式で回答してください:\n"
            "{\n"
            '  "isHealthRelated": boolean,\n'
            '  "symptomType": "内科" | "外科" | "整形外科" | "歯科" | "皮膚科" | "耳鼻咽喉科" | "眼科" | null,\n'
            '  "urgency": "immediate" | "today" | "this_week" | "flexible" | null,\n'
            '  "needsMedicalFacility": boolean,\n'
            '  "hasAddress": boolean,\n'
            '  "injuryContext": string | null,\n'
            '  "suggestedQuestions": string[]\n'
            "}\n\n"
            "判定基準:\n"
            "- isHealthRelated: 体調不良、怪我、病気の相談があればtrue\n"
            "- symptomType: 症状から適切な診療科を推測\n"
            '- urgency: "今すぐ"/"すぐに"なら"immediate", "今日"なら"today", "今週中"なら"this_week", その他は"flexible"\n'
            "- needsMedicalFacility: メンバーが病院を探している、または病院が必要な状況ならtrue\n"
            "- hasAddress: メンバーの住所が登録されているかどうか\n"
            "- injuryContext: 怪我の場合、仕事中か否か等の経緯(労災判定に必要)\n"
            "- suggestedQuestions: まだ聞いていない重要な情報を、自然な話し言葉で1〜3個質問してください"
        )
        output = await self._generate(
            Capability.HEALTH_CONSULTATION, prompt, operation="health-consultation", json_mode=True
        )
        parsed = extract_json_object(output or "")
        if parsed is None:
            if output:
                logger.warning("health-consultation: unparseable output: %s", output[:500])
            return fallback
        try:
            analysis = HealthAnalysis.model_validate(parsed)
        except ValidationError as exc:
            logger.warning("health-consultation: invalid payload: %s", exc)
            return fallback
        # The registered address is known locally; the model's guess is not trusted.
        return analysis.model_copy(update={"has_address": bool((address or "").strip())})

    # ------------------------------------------------------------------ segmentation

    @staticmethod
    def _whole_conversation(messages: Sequence[Message], summary: str) -> list[ConversationSegment]:
        return [
            ConversationSegment(
                conversation_id=messages[0].conversation_id,
                title=WHOLE_CONVERSATION_TITLE,
                summary=summary,
                message_ids=[m.id for m in messages],
                started_at=messages[0].created_at,
                ended_at=messages[-1].created_at,
            )
        ]

    async def segment(self, messages: Sequence[Message]) -> list[ConversationSegment]:
        messages = list(messages)
        if not messages:
            return []
        if not self.is_configured(Capability.SEGMENT):
            logger.info("segmentation: model not configured")
            return self._whole_conversation(messages, "API設定がありません")

        transcript = "\n\n".join(
            f"[メッセージ {idx}] [{_timestamp(m)}] {'相談者' if m.sender_role == SenderRole.MEMBER else '担当者'}: {m.body}"
            for idx, m in enumerate(messages)
        )
        prompt = (
            "以下は相談チャットの会話履歴です。この会話を話題ごとに分割してください。\n\n"
            "### 指示:\n"
            "1. 会話を意味のある話題（トピック）ごとに分割してください\n"
            "2. 各セグメントにタイトルと要約をつけてください\n"
            "3. 各セグメントに含まれるメッセージのインデックス番号（開始と終了）を指定してください\n"
            "4. セグメントは時系列順に並べてください\n\n"
            "### 出力形式（JSON配列）:\n"
            '[{"title": "セグメントのタイトル", "summary": "セグメントの要約", "startIndex": 0, "endIndex": 3}]\n\n'
            f"### 会話履歴:\n{transcript}"
        )
        output = await self._generate(Capability.SEGMENT, prompt, operation="conversation-segmentation")
        if not output:
            return self._whole_conversation(messages, "セグメント分析に失敗しました")

        items = extract_json_array(output)
        if items is None:
            logger.warning("conversation-segmentation: no JSON array in output: %s", output[:500])
            return self._whole_conversation(messages, "セグメントの解析に失敗しました")

        last = len(messages) - 1
        segments: list[ConversationSegment] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            try:
                start = max(0, int(item.get("startIndex", item.get("start_index", 0))))
                end = min(last, int(item.get("endIndex", item.get("end_index", last))))
            except (TypeError, ValueError):
                logger.warning("conversation-segmentation: non-numeric indices in %r", item)
                continue
            if start > end:
                logger.warning("conversation-segmentation: invalid segment indices: %d > %d", start, end)
                continue
            chunk = messages[start : end + 1]
            segments.append(
                ConversationSegment(
                    conversation_id=chunk[0].conversation_id,
                    title=str(item.get("title") or "無題"),
                    summary=str(item.get("summary") or ""),
                    message_ids=[m.id for m in chunk],
                    started_at=chunk[0].created_at,
                    ended_at=chunk[-1].created_at,
                )
            )
        if not segments:
            return self._whole_conversation(messages, "セグメントの解析に失敗しました")
        return segments

    # ------------------------------------------------------------------ images

    def _absolute_url(self, url: str) -> str:
        if url.startswith("/"):
            return f"{self._settings.public_base_url.rstrip('/')}{url}"
        return url

    async def _download(self, url: str) -> tuple[str, bytes] | None:
        async with httpx.AsyncClient(
            timeout=self._settings.request_timeout_sec,
            transport=self._transport,
            follow_redirects=True,
        ) as client:
            response = await client.get(url)
        if not response.is_success:
            logger.error("image-analysis: failed to fetch image: %s %s", response.status_code, url)
            return None
        mime_type = response.headers.get("content-type", "image/jpeg").split(";")[0].strip() or "image/jpeg"
        return mime_type, response.content

    async def analyze_image(self, request: ImageAnalysisRequest) -> ImageAnalysis | None:
        if not self.is_configured(Capability.IMAGE):
            logger.info("image-analysis: model not configured")
            return None

        started = now_ms()
        try:
            downloaded = await self._download(self._absolute_url(request.image_url))
        except Exception as exc:
            logger.error(
                "image-analysis: Failed after %dms - %s: %s", elapsed_ms(started), type(exc).__name__, exc
            )
            return None
        if downloaded is None:
            return None
        mime_type, content = downloaded
        logger.debug("image-analysis: image downloaded: %s, size: %d bytes", mime_type, len(content))

        user_context = f'ユーザーのメッセージ: "{request.user_message}"\n\n' if request.user_message else ""
        prompt = (
            "あなたは外国人労働者をサポートする経験豊富なマネージャーです。\n\n"
            f"{user_context}"
            "添付された画像を分析して、以下の情報を日本語で提供してください：\n\n"
            "1. 画像の内容: 何が写っているか、詳しく説明してください\n"
            "2. 書類の種類: 公的書類や重要な書類であれば、その種類を特定してください（例: 年金手帳、保険証、通知書、請求書など）\n"
            "3. 緊急度: 対応の緊急度を判断してください（high/medium/low）\n"
            "4. 推奨される対応: 受け取った本人がどのような対応をすべきか、具体的に説明してください\n"
            "5. 抽出されたテキスト: 日付、金額、宛名など重要なテキストがあれば抽出してください\n\n"
            "以下のJSON形式で回答してください：\n"
            '{"description": "画像の内容説明", "documentType": "書類の種類", "urgency": "high" | "medium" | "low", '
            '"suggestedActions": ["対応1", "対応2", "対応3"], "extractedText": "抽出されたテキスト"}'
        )
        output = await self._generate(
            Capability.IMAGE, prompt, operation="image-analysis", json_mode=True, images=[(mime_type, content)]
        )
        parsed = extract_json_object(output or "")
        if parsed is None:
            if output:
                logger.warning("image-analysis: unparseable output: %s", output[:500])
            return None
        try:
            return ImageAnalysis.model_validate(parsed)
        except ValidationError as exc:
            logger.warning("image-analysis: invalid payload: %s", exc)
            return None
