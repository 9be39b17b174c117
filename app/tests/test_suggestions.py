import asyncio
from pathlib import Path

from chatbridge.config import Settings
from chatbridge.schemas import (
    ContextualSuggestionRequest,
    HistoryTurn,
    ImageAnalysis,
    SenderRole,
    SuggestedReply,
    SuggestionBatch,
    TranscriptSuggestionRequest,
    TranslationResult,
    WorkerProfile,
)
from chatbridge.suggestions import SuggestionGenerator, classify_context


def _turn(role: SenderRole, body: str) -> HistoryTurn:
    return HistoryTurn(body=body, sender_role=role)


class StubGateway:
    def __init__(self, *, fail_on: str | None = None, fallback_on: str | None = None):
        self.fail_on = fail_on
        self.fallback_on = fallback_on
        self.prompts: list[str] = []
        self.operations: list[str] = []

    async def suggest_replies(self, request):
        self.prompts.append(request.prompt)
        self.operations.append(request.operation)
        replies = [
            SuggestedReply(content="大丈夫ですか？", tone="question", language=request.language),
            SuggestedReply(content="大変でしたね", tone="empathy", language=request.language),
            SuggestedReply(content="休んでください", tone="solution", language=request.language),
        ]
        return SuggestionBatch(suggestions=replies, provider="stub", model="stub")

    async def translate(self, request):
        if request.content == self.fail_on:
            raise RuntimeError("translation backend down")
        if request.content == self.fallback_on:
            return TranslationResult(translation=request.content, provider="stub", model="stub", fallback_used=True)
        return TranslationResult(translation=f"vi:{request.content}", provider="stub", model="stub")


def _generator(tmp_path: Path, gateway: StubGateway) -> SuggestionGenerator:
    return SuggestionGenerator(gateway, Settings(local_storage_dir=str(tmp_path), gemini_api_key=None))


def test_classify_context_empty_history_is_welcome():
    context = classify_context([], 0)
    assert context.kind == "welcome"
    assert context.tones == ("welcome", "welcome", "welcome")


def test_classify_context_health_keyword_wins_over_elapsed_days():
    history = [_turn(SenderRole.MEMBER, "頭が痛いです")]
    context = classify_context(history, 10)
    assert context.kind == "health"
    assert context.tones == ("empathy", "question", "solution")


def test_classify_context_elapsed_days():
    history = [_turn(SenderRole.MEMBER, "了解です")]
    assert classify_context(history, 8).tones == ("check-in", "check-in", "check-in")
    assert classify_context(history, 7).kind == "check_in"
    assert classify_context(history, 3).tones == ("gentle-follow-up", "gentle-follow-up", "continuation")
    assert classify_context(history, 2.5).kind == "default"


def test_classify_context_consecutive_manager_turns():
    history = [
        _turn(SenderRole.MEMBER, "了解です"),
        _turn(SenderRole.MANAGER, "明日の予定は？"),
        _turn(SenderRole.SYSTEM, "通知"),
        _turn(SenderRole.MANAGER, "返信お待ちしています"),
    ]
    context = classify_context(history, 0)
    assert context.kind == "continuation"
    assert context.tones == ("continuation", "encouragement", "empathy")

    assert classify_context(history[:2], 0).kind == "default"


def test_contextual_request_translates_each_suggestion(tmp_path: Path):
    gateway = StubGateway()
    request = ContextualSuggestionRequest(
        history=[_turn(SenderRole.MEMBER, "シフトを変えたいです")],
        worker=WorkerProfile(id="w1", name="Lan", locale="vi", country_of_origin="Vietnam"),
        language="ja",
        target_translation_language="vi",
    )

    suggestions = asyncio.run(_generator(tmp_path, gateway).generate(request))

    assert [s.translation for s in suggestions] == ["vi:大丈夫ですか？", "vi:大変でしたね", "vi:休んでください"]
    assert all(s.translation_lang == "vi" for s in suggestions)
    assert "Lanさん（Vietnamese話者）" in gateway.prompts[0]
    assert "出身国: Vietnam" in gateway.prompts[0]
    assert "question: [メッセージ内容1]" in gateway.prompts[0]
    assert gateway.operations == ["enhanced-suggestions-ja"]


def test_translation_failure_keeps_untranslated_item(tmp_path: Path):
    gateway = StubGateway(fail_on="大変でしたね", fallback_on="休んでください")
    request = ContextualSuggestionRequest(
        worker=WorkerProfile(id="w1"),
        language="ja",
        target_translation_language="vi",
    )

    suggestions = asyncio.run(_generator(tmp_path, gateway).generate(request))

    assert len(suggestions) == 3
    assert suggestions[0].translation == "vi:大丈夫ですか？"
    assert suggestions[1].translation is None
    assert suggestions[2].translation is None
    assert suggestions[1].content == "大変でしたね"


def test_same_language_target_skips_translation(tmp_path: Path):
    gateway = StubGateway(fail_on="大丈夫ですか？")
    request = TranscriptSuggestionRequest(transcript="A: hi", language="ja", target_translation_language="ja-JP")

    suggestions = asyncio.run(_generator(tmp_path, gateway).generate(request))

    assert all(s.translation is None for s in suggestions)
    assert gateway.operations == ["suggestions-ja"]


def test_image_suggestions_use_analysis(tmp_path: Path):
    gateway = StubGateway()
    analysis = ImageAnalysis(description="住民税の通知書", document_type="通知書", urgency="high", suggested_actions=["支払う"])

    suggestions = asyncio.run(
        _generator(tmp_path, gateway).generate_for_image(
            analysis, worker=WorkerProfile(id="w1", name="Lan"), language="ja", user_message="これは何ですか"
        )
    )

    assert len(suggestions) == 3
    prompt = gateway.prompts[0]
    assert "住民税の通知書" in prompt
    assert "緊急性が高い内容です" in prompt
    assert "これは何ですか" in prompt
    assert "confirmation:" in prompt
    assert gateway.operations == ["image-suggestions"]
