import asyncio
import json
from datetime import timedelta
from pathlib import Path

import httpx

from chatbridge.config import Settings
from chatbridge.gateway import CACHE_HIT_WARNING, WHOLE_CONVERSATION_TITLE, LanguageModelGateway
from chatbridge.schemas import (
    HistoryTurn,
    ImageAnalysisRequest,
    Message,
    ReplyDraftRequest,
    SenderRole,
    TranslationRequest,
)
from chatbridge.utils import utc_now


def _settings(tmp_path: Path, *, api_key: str | None = "test-key") -> Settings:
    return Settings(
        local_storage_dir=str(tmp_path),
        gemini_api_key=api_key,
        translate_api_key=None,
        suggest_api_key=None,
        segment_api_key=None,
        places_api_key=None,
        translate_model="gemini-primary",
        fallback_model="gemini-fallback",
        public_base_url="https://chat.example.com",
    )


def _gemini_reply(text: str) -> httpx.Response:
    return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": text}]}}]})


class GeminiStub:
    """Answers every generateContent call with the next queued text."""

    def __init__(self, *outputs: str):
        self.outputs = list(outputs)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return _gemini_reply(self.outputs.pop(0))


def _gateway(tmp_path: Path, handler, **kwargs) -> LanguageModelGateway:
    return LanguageModelGateway(_settings(tmp_path, **kwargs), transport=httpx.MockTransport(handler))


def _messages(count: int) -> list[Message]:
    start = utc_now() - timedelta(minutes=count)
    return [
        Message(
            id=f"m{idx}",
            conversation_id="c1",
            sender_id="w1" if idx % 2 == 0 else "mgr",
            sender_role=SenderRole.MEMBER if idx % 2 == 0 else SenderRole.MANAGER,
            body=f"message {idx}",
            language="ja",
            created_at=start + timedelta(minutes=idx),
        )
        for idx in range(count)
    ]


def test_translate_without_key_returns_original_with_fallback(tmp_path: Path):
    stub = GeminiStub()
    gateway = _gateway(tmp_path, stub, api_key=None)

    result = asyncio.run(
        gateway.translate(TranslationRequest(content="hello", source_language="en", target_language="ja"))
    )

    assert result.translation == "hello"
    assert result.fallback_used is True
    assert result.provider == "mock"
    assert result.warnings
    assert stub.requests == []


def test_translate_same_language_is_passthrough(tmp_path: Path):
    stub = GeminiStub()
    gateway = _gateway(tmp_path, stub)

    result = asyncio.run(
        gateway.translate(TranslationRequest(content="こんにちは", source_language="ja-JP", target_language="ja"))
    )

    assert result.translation == "こんにちは"
    assert result.provider == "passthrough"
    assert stub.requests == []


def test_translate_caches_success_and_serves_hits(tmp_path: Path):
    stub = GeminiStub("Xin chào")
    gateway = _gateway(tmp_path, stub)
    request = TranslationRequest(content="こんにちは", source_language="ja", target_language="vi")

    first = asyncio.run(gateway.translate(request))
    second = asyncio.run(gateway.translate(request))

    assert first.translation == "Xin chào"
    assert first.fallback_used is False
    assert second.translation == "Xin chào"
    assert CACHE_HIT_WARNING in second.warnings
    assert len(stub.requests) == 1

    body = json.loads(stub.requests[0].content)
    assert "こんにちは" in body["contents"][0]["parts"][0]["text"]
    assert stub.requests[0].url.params["key"] == "test-key"


def test_translate_rejects_explanations_and_does_not_cache(tmp_path: Path):
    stub = GeminiStub("Please provide the text you want translated.", "Vâng, tôi hiểu rồi")
    gateway = _gateway(tmp_path, stub)
    request = TranslationRequest(content="はい、わかりました", source_language="ja", target_language="vi")

    first = asyncio.run(gateway.translate(request))

    assert first.translation == "はい、わかりました"
    assert first.fallback_used is True
    assert len(gateway.cache) == 0

    second = asyncio.run(gateway.translate(request))
    assert second.translation == "Vâng, tôi hiểu rồi"
    assert len(stub.requests) == 2


def test_translate_http_error_returns_original(tmp_path: Path):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": "boom"})

    gateway = _gateway(tmp_path, handler)
    result = asyncio.run(
        gateway.translate(TranslationRequest(content="hello", source_language="en", target_language="ja"))
    )

    assert result.translation == "hello"
    assert result.fallback_used is True


def test_model_404_is_retried_once_with_fallback_model(tmp_path: Path):
    paths: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        if "gemini-primary" in request.url.path:
            return httpx.Response(404, json={"error": "model not found"})
        return _gemini_reply("こんにちは")

    gateway = _gateway(tmp_path, handler)
    result = asyncio.run(
        gateway.translate(TranslationRequest(content="hello", source_language="en", target_language="ja"))
    )

    assert result.translation == "こんにちは"
    assert len(paths) == 2
    assert paths[0].endswith("gemini-primary:generateContent")
    assert paths[1].endswith("gemini-fallback:generateContent")


def test_suggest_replies_without_key_returns_mock_triplet(tmp_path: Path):
    gateway = _gateway(tmp_path, GeminiStub(), api_key=None)

    batch = asyncio.run(gateway.suggest_replies(ReplyDraftRequest(prompt="p", language="ja")))

    assert batch.fallback_used is True
    assert [s.tone for s in batch.suggestions] == ["question", "empathy", "solution"]


def test_suggest_replies_parses_model_output(tmp_path: Path):
    gateway = _gateway(tmp_path, GeminiStub("question: どうしましたか？\nempathy: 大変でしたね\nsolution: 休みましょう"))

    batch = asyncio.run(gateway.suggest_replies(ReplyDraftRequest(prompt="p", language="ja")))

    assert batch.fallback_used is False
    assert [s.content for s in batch.suggestions] == ["どうしましたか？", "大変でしたね", "休みましょう"]


def test_health_consultation_parses_camel_case_and_trusts_local_address(tmp_path: Path):
    payload = {
        "isHealthRelated": True,
        "symptomType": "内科",
        "urgency": "TODAY",
        "needsMedicalFacility": "true",
        "hasAddress": True,
        "suggestedQuestions": ["いつからですか？", ""],
    }
    gateway = _gateway(tmp_path, GeminiStub(json.dumps(payload)))
    history = [HistoryTurn(body="頭が痛いです", sender_role=SenderRole.MEMBER)]

    analysis = asyncio.run(gateway.analyze_health_consultation(history, None))

    assert analysis.is_health_related is True
    assert analysis.symptom_type == "内科"
    assert analysis.urgency == "today"
    assert analysis.needs_medical_facility is True
    assert analysis.has_address is False
    assert analysis.suggested_questions == ["いつからですか？"]


def test_health_consultation_unparseable_output_is_not_health_related(tmp_path: Path):
    gateway = _gateway(tmp_path, GeminiStub("I think this is about a headache."))
    history = [HistoryTurn(body="頭が痛いです", sender_role=SenderRole.MEMBER)]

    analysis = asyncio.run(gateway.analyze_health_consultation(history, "東京都"))

    assert analysis.is_health_related is False


def test_health_intent_reads_schedule(tmp_path: Path):
    payload = {"wantsConsultation": True, "preferredDate": "tomorrow", "timePreference": "morning"}
    gateway = _gateway(tmp_path, GeminiStub(json.dumps(payload)))

    intent = asyncio.run(gateway.analyze_health_intent("明日の午前にお願いします", []))

    assert intent.wants_consultation is True
    assert intent.preferred_date == "tomorrow"
    assert intent.time_preference == "morning"
    assert intent.has_schedule


def test_segment_clamps_indices_and_skips_inverted_ranges(tmp_path: Path):
    items = [
        {"title": "挨拶", "summary": "s1", "startIndex": -2, "endIndex": 1},
        {"title": "逆順", "summary": "bad", "startIndex": 3, "endIndex": 2},
        {"title": "シフト", "summary": "s2", "startIndex": 2, "endIndex": 99},
    ]
    gateway = _gateway(tmp_path, GeminiStub(json.dumps(items)))
    messages = _messages(4)

    segments = asyncio.run(gateway.segment(messages))

    assert [s.title for s in segments] == ["挨拶", "シフト"]
    assert segments[0].message_ids == ["m0", "m1"]
    assert segments[1].message_ids == ["m2", "m3"]
    assert segments[1].ended_at == messages[-1].created_at


def test_segment_falls_back_to_whole_conversation(tmp_path: Path):
    messages = _messages(3)

    unconfigured = _gateway(tmp_path, GeminiStub(), api_key=None)
    garbage = _gateway(tmp_path, GeminiStub("not json at all"))

    for gateway in (unconfigured, garbage):
        segments = asyncio.run(gateway.segment(messages))
        assert len(segments) == 1
        assert segments[0].title == WHOLE_CONVERSATION_TITLE
        assert segments[0].message_ids == ["m0", "m1", "m2"]

    assert asyncio.run(unconfigured.segment([])) == []


def test_analyze_image_downloads_relative_url_and_sends_inline_data(tmp_path: Path):
    seen: list[httpx.Request] = []
    analysis_json = {
        "description": "年金の通知書",
        "documentType": "通知書",
        "urgency": "HIGH",
        "suggestedActions": ["期限までに提出する"],
    }

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.host == "chat.example.com":
            return httpx.Response(200, content=b"\x89PNG", headers={"content-type": "image/png"})
        return _gemini_reply(json.dumps(analysis_json, ensure_ascii=False))

    gateway = _gateway(tmp_path, handler)
    analysis = asyncio.run(gateway.analyze_image(ImageAnalysisRequest(image_url="/uploads/a.png")))

    assert analysis is not None
    assert analysis.urgency == "high"
    assert analysis.document_type == "通知書"
    assert str(seen[0].url) == "https://chat.example.com/uploads/a.png"
    inline = json.loads(seen[1].content)["contents"][0]["parts"][1]["inlineData"]
    assert inline["mimeType"] == "image/png"


def test_analyze_image_download_failure_returns_none(tmp_path: Path):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404)

    gateway = _gateway(tmp_path, handler)
    assert asyncio.run(gateway.analyze_image(ImageAnalysisRequest(image_url="https://x.test/a.png"))) is None
