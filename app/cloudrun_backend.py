"""Cloud Run entrypoint for the chatbridge enrichment API."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Body, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import TypeAdapter, ValidationError

from chatbridge.cache import TranslationCache
from chatbridge.config import get_settings
from chatbridge.consultation import HealthConsultationFlow
from chatbridge.facilities import FacilitySearchClient, FacilitySearchError
from chatbridge.gateway import LanguageModelGateway
from chatbridge.orchestration import EnrichmentOrchestrator
from chatbridge.publisher import BroadcastPublisher
from chatbridge.schemas import Capability, Conversation, FacilitySearchRequest, MessageCreate, SuggestionRequest
from chatbridge.sse import KEEP_ALIVE, format_sse
from chatbridge.storage import ConversationStore
from chatbridge.suggestions import SuggestionGenerator
from chatbridge.utils import utc_now

KEEP_ALIVE_SEC = 15.0


settings = get_settings()
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("chatbridge.api")

store = ConversationStore(settings)
publisher = BroadcastPublisher()
gateway = LanguageModelGateway(
    settings,
    cache=TranslationCache(settings.translation_cache_size, settings.translation_cache_ttl_sec),
)
facilities = FacilitySearchClient(settings)
suggestions = SuggestionGenerator(gateway, settings)
orchestrator = EnrichmentOrchestrator(
    settings=settings,
    store=store,
    gateway=gateway,
    flow=HealthConsultationFlow(
        settings=settings,
        store=store,
        gateway=gateway,
        facilities=facilities,
        publisher=publisher,
    ),
    suggestions=suggestions,
    publisher=publisher,
)
suggestion_request_adapter: TypeAdapter[SuggestionRequest] = TypeAdapter(SuggestionRequest)


@asynccontextmanager
async def lifespan(_: FastAPI):
    yield
    if orchestrator.pending:
        logger.info("shutdown_drain: waiting for %d enrichment tasks", orchestrator.pending)
    await orchestrator.drain()


app = FastAPI(title="chatbridge API (Cloud Run)", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)


def _validate(model: Any, payload: dict[str, Any]) -> Any:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors()) from exc


async def _conversation_or_404(conversation_id: str) -> Conversation:
    conversation = await store.get_conversation(conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="conversation not found")
    return conversation


@app.get("/health")
async def health() -> dict[str, Any]:
    return {
        "status": "ok",
        "service": settings.app_name,
        "timestamp": utc_now().isoformat(),
        "capabilities": {
            capability.value: {
                "configured": gateway.is_configured(capability),
                "model": gateway.model_name(capability),
            }
            for capability in Capability
        },
        "places_configured": facilities.configured,
        "translation_cache_entries": len(gateway.cache),
        "pending_enrichments": orchestrator.pending,
        "serialize_conversations": settings.serialize_conversations,
    }


@app.post("/v1/conversations")
async def create_conversation(payload: dict[str, Any] = Body(...)):
    conversation = _validate(Conversation, payload)
    await store.create_conversation(conversation)
    return conversation.model_dump(mode="json")


@app.post("/v1/conversations/{conversation_id}/messages")
async def post_message(conversation_id: str, payload: dict[str, Any] = Body(...)):
    await _conversation_or_404(conversation_id)
    draft = _validate(MessageCreate, payload)
    message = await store.add_message(draft.to_message(conversation_id))
    orchestrator.schedule(message)
    return {"message": message.model_dump(mode="json"), "enrichment": "scheduled"}


@app.get("/v1/conversations/{conversation_id}/events")
async def conversation_events(conversation_id: str):
    await _conversation_or_404(conversation_id)

    async def event_gen():
        async with publisher.subscribe(conversation_id) as queue:
            while True:
                try:
                    event_name, envelope = await asyncio.wait_for(queue.get(), timeout=KEEP_ALIVE_SEC)
                    yield format_sse(event_name, envelope)
                except asyncio.TimeoutError:
                    yield KEEP_ALIVE

    return StreamingResponse(event_gen(), media_type="text/event-stream")


@app.get("/v1/conversations/{conversation_id}/segments")
async def conversation_segments(conversation_id: str):
    await _conversation_or_404(conversation_id)
    segments = await store.get_segments(conversation_id)
    return {"conversation_id": conversation_id, "segments": [s.model_dump(mode="json") for s in segments]}


@app.get("/v1/conversations/{conversation_id}/health-state")
async def conversation_health_state(conversation_id: str):
    await _conversation_or_404(conversation_id)
    state = await store.get_health_state(conversation_id)
    return state.model_dump(mode="json")


@app.post("/v1/conversations/{conversation_id}/suggestions")
async def regenerate_suggestions(conversation_id: str):
    await _conversation_or_404(conversation_id)
    drafted = await orchestrator.draft_replies(conversation_id)
    return {"conversation_id": conversation_id, "suggestions": [s.model_dump(mode="json") for s in drafted]}


@app.post("/v1/suggestions")
async def draft_suggestions(payload: dict[str, Any] = Body(...)):
    try:
        request = suggestion_request_adapter.validate_python(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors()) from exc
    drafted = await suggestions.generate(request)
    return {"suggestions": [s.model_dump(mode="json") for s in drafted]}


@app.get("/v1/messages/{message_id}/artifact")
async def message_artifact(message_id: str):
    artifact = await store.get_artifact(message_id)
    if artifact is None:
        raise HTTPException(status_code=404, detail="artifact not found")
    return artifact.model_dump(mode="json")


@app.post("/v1/medical/search")
async def medical_search(payload: dict[str, Any] = Body(...)):
    request = _validate(FacilitySearchRequest, payload)
    try:
        found = await facilities.search(request.address, request.symptom_type, request.urgency)
    except FacilitySearchError as exc:
        raise HTTPException(
            status_code=exc.http_status,
            detail={"error": exc.status, "message": exc.message},
        ) from exc
    return {"facilities": [f.model_dump(mode="json") for f in found]}


if __name__ == "__main__":
    import os

    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8080")), log_level=settings.log_level.lower())
