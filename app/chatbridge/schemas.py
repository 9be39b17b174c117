"""Pydantic schemas for chatbridge records and internal contracts."""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from chatbridge.utils import utc_now


Urgency = Literal["immediate", "today", "this_week", "flexible"]
PreferredDate = Literal["today", "tomorrow", "this_week", "specific_date"]
TimePreference = Literal["morning", "afternoon", "evening"]
ImageUrgency = Literal["high", "medium", "low"]


def _one_of(value: Any, allowed: set[str]) -> str | None:
    if value is None:
        return None
    token = str(value).strip().lower()
    return token if token in allowed else None


def _as_flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes"}
    return bool(value)


class Capability(str, Enum):
    TRANSLATE = "translate"
    SUGGEST = "suggest"
    HEALTH_INTENT = "health_intent"
    HEALTH_CONSULTATION = "health_consultation"
    SEGMENT = "segment"
    IMAGE = "image"


class SenderRole(str, Enum):
    MEMBER = "MEMBER"
    MANAGER = "MANAGER"
    SYSTEM = "SYSTEM"


class MessageType(str, Enum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    FILE = "FILE"
    SYSTEM = "SYSTEM"


class HealthState(str, Enum):
    NONE = "NONE"
    WAITING_FOR_INTENT = "WAITING_FOR_INTENT"
    WAITING_FOR_SYMPTOM_DETAILS = "WAITING_FOR_SYMPTOM_DETAILS"
    WAITING_FOR_SCHEDULE = "WAITING_FOR_SCHEDULE"
    PROVIDING_FACILITIES = "PROVIDING_FACILITIES"
    COMPLETED = "COMPLETED"

    @property
    def is_active(self) -> bool:
        return self not in {HealthState.NONE, HealthState.COMPLETED}


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    conversation_id: str
    sender_id: str
    sender_role: SenderRole
    body: str = ""
    language: str
    type: MessageType = MessageType.TEXT
    content_url: str | None = None
    metadata: dict[str, Any] | None = None
    created_at: datetime = Field(default_factory=utc_now)


class WorkerProfile(BaseModel):
    id: str
    name: str | None = None
    locale: str | None = None
    country_of_origin: str | None = None
    date_of_birth: date | None = None
    gender: str | None = None
    address: str | None = None
    phone_number: str | None = None
    job_description: str | None = None
    hire_date: date | None = None
    notes: str | None = None


class GroupProfile(BaseModel):
    name: str | None = None
    phone_number: str | None = None
    address: str | None = None


class Conversation(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    worker: WorkerProfile
    group: GroupProfile = Field(default_factory=GroupProfile)
    manager_id: str | None = None
    manager_locale: str | None = None


class SuggestedReply(BaseModel):
    content: str
    tone: str = "solution"
    language: str
    translation: str | None = None
    translation_lang: str | None = None


class EnrichmentArtifact(BaseModel):
    message_id: str
    translation: str | None = None
    translation_lang: str | None = None
    suggestions: list[SuggestedReply] = Field(default_factory=list)
    extra: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class ConversationHealthState(BaseModel):
    conversation_id: str
    state: HealthState = HealthState.NONE
    data: dict[str, Any] = Field(default_factory=dict)


class ConversationSegment(BaseModel):
    conversation_id: str | None = None
    title: str
    summary: str = ""
    message_ids: list[str]
    started_at: datetime
    ended_at: datetime


class GeoPoint(BaseModel):
    lat: float
    lng: float


class MedicalFacility(BaseModel):
    name: str
    address: str = ""
    location: GeoPoint
    maps_url: str
    place_id: str | None = None
    phone_number: str | None = None
    rating: float | None = None
    user_ratings_total: int | None = None
    open_now: bool | None = None
    types: list[str] = Field(default_factory=list)
    distance_meters: int | None = None
    travel_time_minutes: int | None = None
    accepts_foreigners: bool = False
    recommendation_reasons: list[str] = Field(default_factory=list)


class HealthAnalysis(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_health_related: bool = Field(
        default=False, validation_alias=AliasChoices("is_health_related", "isHealthRelated")
    )
    symptom_type: str | None = Field(default=None, validation_alias=AliasChoices("symptom_type", "symptomType"))
    urgency: Urgency | None = None
    needs_medical_facility: bool = Field(
        default=False, validation_alias=AliasChoices("needs_medical_facility", "needsMedicalFacility")
    )
    has_address: bool = Field(default=False, validation_alias=AliasChoices("has_address", "hasAddress"))
    injury_context: str | None = Field(
        default=None, validation_alias=AliasChoices("injury_context", "injuryContext")
    )
    suggested_questions: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("suggested_questions", "suggestedQuestions")
    )

    @field_validator("urgency", mode="before")
    @classmethod
    def _coerce_urgency(cls, value: Any) -> str | None:
        return _one_of(value, {"immediate", "today", "this_week", "flexible"})

    @field_validator("is_health_related", "needs_medical_facility", "has_address", mode="before")
    @classmethod
    def _coerce_flag(cls, value: Any) -> bool:
        return _as_flag(value)

    @field_validator("suggested_questions", mode="before")
    @classmethod
    def _coerce_questions(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        return [str(item).strip() for item in value if str(item).strip()]


class ConsultationIntent(BaseModel):
    wants_consultation: bool = Field(
        default=False, validation_alias=AliasChoices("wants_consultation", "wantsConsultation")
    )
    preferred_date: PreferredDate | None = Field(
        default=None, validation_alias=AliasChoices("preferred_date", "preferredDate")
    )
    specific_date: str | None = Field(default=None, validation_alias=AliasChoices("specific_date", "specificDate"))
    time_preference: TimePreference | None = Field(
        default=None, validation_alias=AliasChoices("time_preference", "timePreference")
    )

    @field_validator("preferred_date", mode="before")
    @classmethod
    def _coerce_preferred_date(cls, value: Any) -> str | None:
        return _one_of(value, {"today", "tomorrow", "this_week", "specific_date"})

    @field_validator("time_preference", mode="before")
    @classmethod
    def _coerce_time_preference(cls, value: Any) -> str | None:
        return _one_of(value, {"morning", "afternoon", "evening"})

    @field_validator("wants_consultation", mode="before")
    @classmethod
    def _coerce_wants(cls, value: Any) -> bool:
        return _as_flag(value)

    @property
    def has_schedule(self) -> bool:
        return bool(self.preferred_date or self.specific_date or self.time_preference)


class ImageAnalysisRequest(BaseModel):
    image_url: str
    user_message: str | None = None
    worker_locale: str | None = None


class ImageAnalysis(BaseModel):
    description: str = ""
    document_type: str | None = Field(default=None, validation_alias=AliasChoices("document_type", "documentType"))
    urgency: ImageUrgency = "low"
    suggested_actions: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("suggested_actions", "suggestedActions")
    )
    extracted_text: str | None = Field(
        default=None, validation_alias=AliasChoices("extracted_text", "extractedText")
    )

    @field_validator("urgency", mode="before")
    @classmethod
    def _coerce_urgency(cls, value: Any) -> str:
        return _one_of(value, {"high", "medium", "low"}) or "low"

    @field_validator("suggested_actions", mode="before")
    @classmethod
    def _coerce_actions(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        return [str(item).strip() for item in value if str(item).strip()]


class TranslationRequest(BaseModel):
    content: str
    source_language: str
    target_language: str


class TranslationResult(BaseModel):
    translation: str
    provider: str
    model: str
    warnings: list[str] = Field(default_factory=list)
    fallback_used: bool = False


class ReplyDraftRequest(BaseModel):
    prompt: str
    language: str
    operation: str = "suggestions"


class SuggestionBatch(BaseModel):
    suggestions: list[SuggestedReply]
    provider: str
    model: str
    fallback_used: bool = False


class HistoryTurn(BaseModel):
    id: str | None = None
    body: str
    sender_role: SenderRole
    language: str | None = None
    created_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def from_message(cls, message: Message) -> "HistoryTurn":
        return cls(
            id=message.id,
            body=message.body,
            sender_role=message.sender_role,
            language=message.language,
            created_at=message.created_at,
        )


class TranscriptSuggestionRequest(BaseModel):
    kind: Literal["transcript"] = "transcript"
    transcript: str
    language: str
    persona: Literal["agent", "manager"] = "manager"
    target_translation_language: str | None = None


class ContextualSuggestionRequest(BaseModel):
    kind: Literal["contextual"] = "contextual"
    history: list[HistoryTurn] = Field(default_factory=list)
    worker: WorkerProfile
    group: GroupProfile = Field(default_factory=GroupProfile)
    language: str
    persona: Literal["agent", "manager"] = "manager"
    target_translation_language: str | None = None
    days_since_last_worker_message: float = 0.0


SuggestionRequest = Annotated[
    Union[TranscriptSuggestionRequest, ContextualSuggestionRequest],
    Field(discriminator="kind"),
]


class FacilitySearchRequest(BaseModel):
    address: str
    symptom_type: str | None = None
    urgency: Urgency = "flexible"


class MessageCreate(BaseModel):
    sender_id: str
    sender_role: SenderRole
    body: str = ""
    language: str
    type: MessageType = MessageType.TEXT
    content_url: str | None = None

    def to_message(self, conversation_id: str) -> Message:
        return Message(conversation_id=conversation_id, **self.model_dump())
