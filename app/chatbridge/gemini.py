"""Gemini `generateContent` REST client shared by every language capability."""

from __future__ import annotations

import base64
import logging
from typing import Any

import httpx

from chatbridge.config import Settings
from chatbridge.schemas import Capability
from chatbridge.utils import elapsed_ms, now_ms

logger = logging.getLogger(__name__)

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"


class GeminiClient:
    def __init__(self, settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None):
        self._settings = settings
        self._transport = transport

    def is_configured(self, capability: Capability) -> bool:
        return bool(self._settings.api_key_for(capability))

    def model_name(self, capability: Capability) -> str:
        return self._settings.model_for(capability)

    async def _call_model(self, model_name: str, api_key: str, body: dict[str, Any]) -> dict[str, Any]:
        url = f"{GEMINI_BASE_URL}/{model_name}:generateContent"
        async with httpx.AsyncClient(timeout=self._settings.request_timeout_sec, transport=self._transport) as client:
            response = await client.post(url, params={"key": api_key}, json=body)
            response.raise_for_status()
            return response.json()

    @staticmethod
    def _response_text(data: dict[str, Any]) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            return ""
        parts = (((candidates[0] or {}).get("content") or {}).get("parts")) or []
        return "".join(str(p.get("text", "")) for p in parts if isinstance(p, dict)).strip()

    async def generate(
        self,
        capability: Capability,
        prompt: str,
        *,
        operation: str,
        json_mode: bool = False,
        temperature: float = 0.2,
        images: list[tuple[str, bytes]] | None = None,
    ) -> str | None:
        """Run one generation and return the response text.

        Returns `None` when the capability has no credentials. HTTP and network
        errors propagate to the caller. A 404 for the configured model is
        retried once with `fallback_model`.
        """
        api_key = self._settings.api_key_for(capability)
        if not api_key:
            logger.info("gemini_not_configured: %s; capability=%s", operation, capability.value)
            return None

        parts: list[dict[str, Any]] = [{"text": prompt}]
        for mime_type, content in images or []:
            parts.append({"inlineData": {"mimeType": mime_type, "data": base64.b64encode(content).decode("ascii")}})

        generation_config: dict[str, Any] = {"temperature": temperature}
        if json_mode:
            generation_config["responseMimeType"] = "application/json"
        body = {"contents": [{"parts": parts}], "generationConfig": generation_config}

        model_name = self.model_name(capability)
        started = now_ms()
        logger.debug("gemini_call_start: %s model=%s prompt_chars=%d", operation, model_name, len(prompt))
        try:
            data = await self._call_model(model_name, api_key, body)
        except httpx.HTTPStatusError as exc:
            fallback = self._settings.fallback_model
            if exc.response.status_code == 404 and fallback and fallback != model_name:
                logger.warning(
                    "gemini_model_retry: %s returned 404 for %s; retrying %s", operation, model_name, fallback
                )
                model_name = fallback
                data = await self._call_model(model_name, api_key, body)
            else:
                raise

        text = self._response_text(data)
        logger.info(
            "gemini_call_ok: %s model=%s latency_ms=%d output_chars=%d",
            operation,
            model_name,
            elapsed_ms(started),
            len(text),
        )
        return text
