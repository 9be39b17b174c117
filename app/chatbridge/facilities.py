"""Medical facility search over Google Geocoding and Places Nearby Search."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx

from chatbridge.config import Settings
from chatbridge.schemas import GeoPoint, MedicalFacility
from chatbridge.utils import elapsed_ms, haversine_km, now_ms, normalize_locale

logger = logging.getLogger(__name__)

GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"
NEARBY_SEARCH_URL = "https://maps.googleapis.com/maps/api/place/nearbysearch/json"

WALKING_SPEED_KMH = 4.0
HIGH_RATING = 4.5
GOOD_RATING = 4.0
MANY_REVIEWS = 100
MAX_REASONS = 3


class FacilitySearchError(Exception):
    """Base error; `message` is safe to show to end users."""

    http_status = 502

    def __init__(self, message: str, *, status: str | None = None):
        super().__init__(message)
        self.message = message
        self.status = status


class FacilitySearchNotConfigured(FacilitySearchError):
    http_status = 503


class GeocodingError(FacilitySearchError):
    http_status = 422


class PlacesSearchError(FacilitySearchError):
    http_status = 502


_GEOCODE_MESSAGES = {
    "ZERO_RESULTS": "住所から位置情報を取得できませんでした",
    "OVER_QUERY_LIMIT": "位置情報サービスの利用上限に達しました。しばらくしてから再度お試しください",
    "REQUEST_DENIED": "位置情報サービスへのアクセスが拒否されました",
}


@dataclass(frozen=True)
class SearchPlan:
    place_type: str
    keyword: str
    department_terms: tuple[str, ...] = ()


# First match wins; terms are matched against the lower-cased symptom type.
_DEPARTMENT_PLANS: tuple[tuple[tuple[str, ...], SearchPlan], ...] = (
    (("歯", "dental", "dentist", "tooth", "teeth"), SearchPlan("dentist", "歯科", ("歯科", "デンタル"))),
    (("内科", "風邪", "発熱", "internal", "fever", "cold"), SearchPlan("hospital", "内科 クリニック", ("内科",))),
    (
        ("外科", "怪我", "ケガ", "surgery", "injury", "orthop"),
        SearchPlan("hospital", "外科 整形外科", ("外科", "整形")),
    ),
    (("皮膚", "derm", "skin"), SearchPlan("hospital", "皮膚科", ("皮膚科",))),
    (("耳", "鼻", "喉", "ear", "nose", "throat"), SearchPlan("hospital", "耳鼻咽喉科", ("耳鼻",))),
    (("眼", "目", "eye", "ophthalm"), SearchPlan("hospital", "眼科", ("眼科",))),
)
GENERIC_PLAN = SearchPlan("hospital", "病院 クリニック")

_FOREIGN_SUPPORT_TERMS = (
    "international",
    "インターナショナル",
    "english",
    "英語",
    "外国人",
    "外国語",
    "多言語",
    "foreign",
    "multilingual",
)

_REASON_LABELS: dict[str, dict[str, str]] = {
    "ja": {
        "closest": "最寄りの医療機関",
        "open_now": "現在営業中",
        "high_rating": "高評価（★{rating}）",
        "good_rating": "評価が良い（★{rating}）",
        "type_match": "症状に合った診療科",
        "foreign": "外国語対応あり",
        "reviews": "口コミ多数（{count}件）",
        "candidate": "候補{index}",
    },
    "en": {
        "closest": "Closest facility",
        "open_now": "Open now",
        "high_rating": "Highly rated ({rating} stars)",
        "good_rating": "Well rated ({rating} stars)",
        "type_match": "Matches the needed department",
        "foreign": "Foreign-language support",
        "reviews": "Many reviews ({count})",
        "candidate": "Candidate {index}",
    },
}


# Stems that match any word starting with them ("orthopedic", "dermatology").
_PREFIX_TERMS = frozenset({"orthop", "ophthalm", "derm"})


def _mentions(text: str, term: str) -> bool:
    if not term.isascii():
        return term in text
    ending = "" if term in _PREFIX_TERMS else r"s?\b"
    return re.search(rf"\b{re.escape(term)}{ending}", text) is not None


def plan_search(symptom_type: str | None) -> SearchPlan:
    if not symptom_type:
        return GENERIC_PLAN
    normalized = symptom_type.strip().lower()
    for terms, plan in _DEPARTMENT_PLANS:
        if any(_mentions(normalized, term) for term in terms):
            return plan
    return GENERIC_PLAN


def detect_foreign_support(name: str, types: list[str]) -> bool:
    haystack = " ".join([name, *types]).lower()
    return any(term in haystack for term in _FOREIGN_SUPPORT_TERMS)


def maps_url(name: str, place_id: str | None) -> str:
    url = f"https://www.google.com/maps/search/?api=1&query={quote(name)}"
    if place_id:
        url += f"&query_place_id={place_id}"
    return url


def recommendation_reasons(
    facility: MedicalFacility, index: int, plan: SearchPlan, *, language: str = "ja"
) -> list[str]:
    labels = _REASON_LABELS.get(normalize_locale(language) or "ja", _REASON_LABELS["ja"])
    reasons: list[str] = []
    if index == 0:
        reasons.append(labels["closest"])
    if facility.open_now:
        reasons.append(labels["open_now"])
    if facility.rating is not None and facility.rating >= HIGH_RATING:
        reasons.append(labels["high_rating"].format(rating=facility.rating))
    elif facility.rating is not None and facility.rating >= GOOD_RATING:
        reasons.append(labels["good_rating"].format(rating=facility.rating))
    if plan.department_terms and (
        any(term in facility.name for term in plan.department_terms)
        or (plan.place_type != "hospital" and plan.place_type in facility.types)
    ):
        reasons.append(labels["type_match"])
    if facility.accepts_foreigners:
        reasons.append(labels["foreign"])
    if facility.user_ratings_total is not None and facility.user_ratings_total >= MANY_REVIEWS:
        reasons.append(labels["reviews"].format(count=facility.user_ratings_total))
    return reasons[:MAX_REASONS] or [labels["candidate"].format(index=index + 1)]


class FacilitySearchClient:
    def __init__(self, settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None):
        self._settings = settings
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self._settings.places_api_key)

    async def _get_json(self, client: httpx.AsyncClient, url: str, params: dict[str, Any]) -> dict[str, Any]:
        response = await client.get(url, params=params)
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise ValueError(f"expected a JSON object, got {type(data).__name__}")
        return data

    async def _geocode(self, client: httpx.AsyncClient, address: str, api_key: str) -> GeoPoint:
        try:
            data = await self._get_json(client, GEOCODE_URL, {"address": address, "key": api_key, "language": "ja"})
        except httpx.HTTPError as exc:
            logger.error("facility_geocode_failed: %s: %s", type(exc).__name__, exc)
            raise GeocodingError("位置情報サービスに接続できませんでした", status="NETWORK_ERROR") from exc
        except ValueError as exc:
            logger.error("facility_geocode_failed: invalid response: %s", exc)
            raise GeocodingError("住所から位置情報を取得できませんでした", status="INVALID_RESPONSE") from exc

        status = str(data.get("status") or "UNKNOWN")
        results = data.get("results") or []
        if status != "OK" or not isinstance(results, list) or not results:
            logger.warning("facility_geocode_failed: status=%s", status)
            message = _GEOCODE_MESSAGES.get(status, f"住所から位置情報を取得できませんでした（{status}）")
            raise GeocodingError(message, status=status)

        try:
            location = results[0]["geometry"]["location"]
            return GeoPoint(lat=float(location["lat"]), lng=float(location["lng"]))
        except (KeyError, TypeError, ValueError) as exc:
            raise GeocodingError("住所から位置情報を取得できませんでした", status="INVALID_RESPONSE") from exc

    async def _nearby(
        self,
        client: httpx.AsyncClient,
        origin: GeoPoint,
        radius_m: int,
        place_type: str,
        keyword: str | None,
        api_key: str,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {
            "location": f"{origin.lat},{origin.lng}",
            "radius": str(radius_m),
            "type": place_type,
            "key": api_key,
            "language": "ja",
        }
        if keyword:
            params["keyword"] = keyword
        try:
            data = await self._get_json(client, NEARBY_SEARCH_URL, params)
        except httpx.HTTPError as exc:
            logger.error("facility_places_failed: %s: %s", type(exc).__name__, exc)
            raise PlacesSearchError("医療機関の検索サービスに接続できませんでした", status="NETWORK_ERROR") from exc
        except ValueError as exc:
            logger.error("facility_places_failed: invalid response: %s", exc)
            raise PlacesSearchError("医療機関の検索結果を読み取れませんでした", status="INVALID_RESPONSE") from exc

        status = str(data.get("status") or "UNKNOWN")
        if status not in {"OK", "ZERO_RESULTS"}:
            logger.warning("facility_places_failed: status=%s radius=%d", status, radius_m)
            raise PlacesSearchError(f"医療機関の検索に失敗しました（{status}）", status=status)
        results = data.get("results") or []
        if not isinstance(results, list):
            raise PlacesSearchError("医療機関の検索結果を読み取れませんでした", status="INVALID_RESPONSE")
        return [place for place in results if isinstance(place, dict)]

    @staticmethod
    def _to_facility(place: dict[str, Any], origin: GeoPoint) -> MedicalFacility | None:
        name = str(place.get("name") or "").strip()
        try:
            location = place["geometry"]["location"]
            point = GeoPoint(lat=float(location["lat"]), lng=float(location["lng"]))
        except (KeyError, TypeError, ValueError):
            return None
        if not name:
            return None

        distance_km = haversine_km(origin.lat, origin.lng, point.lat, point.lng)
        types = [str(t) for t in place.get("types") or []]
        opening_hours = place.get("opening_hours")
        if not isinstance(opening_hours, dict):
            opening_hours = {}
        place_id = place.get("place_id")
        return MedicalFacility(
            name=name,
            address=str(place.get("vicinity") or place.get("formatted_address") or ""),
            location=point,
            maps_url=maps_url(name, place_id),
            place_id=place_id,
            phone_number=place.get("formatted_phone_number") or place.get("international_phone_number"),
            rating=place.get("rating"),
            user_ratings_total=place.get("user_ratings_total"),
            open_now=opening_hours.get("open_now"),
            types=types,
            distance_meters=round(distance_km * 1000),
            travel_time_minutes=round(distance_km / WALKING_SPEED_KMH * 60),
            accepts_foreigners=detect_foreign_support(name, types),
        )

    async def search(
        self,
        address: str,
        symptom_type: str | None = None,
        urgency: str | None = "flexible",
        *,
        language: str | None = None,
    ) -> list[MedicalFacility]:
        """Return nearby facilities, nearest first.

        Radii are tried in order and the first radius with any result wins;
        at each radius a keyword search is retried as a type-only search when
        it comes back empty. Raises `FacilitySearchError` subclasses.
        """
        api_key = self._settings.places_api_key
        if not api_key:
            logger.error("facility_search_not_configured: GOOGLE_PLACES_API_KEY missing")
            raise FacilitySearchNotConfigured("医療機関検索機能が設定されていません", status="NOT_CONFIGURED")
        if not (address or "").strip():
            raise GeocodingError("住所が登録されていません", status="MISSING_ADDRESS")

        plan = plan_search(symptom_type)
        started = now_ms()
        places: list[dict[str, Any]] = []
        async with httpx.AsyncClient(timeout=self._settings.request_timeout_sec, transport=self._transport) as client:
            origin = await self._geocode(client, address, api_key)
            for radius_m in self._settings.search_radii_m:
                places = await self._nearby(client, origin, radius_m, plan.place_type, plan.keyword, api_key)
                if not places:
                    places = await self._nearby(client, origin, radius_m, plan.place_type, None, api_key)
                if places:
                    logger.info("facility_search_radius_hit: radius=%d results=%d", radius_m, len(places))
                    break

        facilities = [f for f in (self._to_facility(p, origin) for p in places) if f is not None]
        if urgency == "immediate":
            facilities = [f for f in facilities if f.open_now]
        facilities.sort(key=lambda f: f.distance_meters if f.distance_meters is not None else float("inf"))
        facilities = facilities[: self._settings.max_facilities]

        reason_language = language or self._settings.operating_language
        facilities = [
            f.model_copy(update={"recommendation_reasons": recommendation_reasons(f, idx, plan, language=reason_language)})
            for idx, f in enumerate(facilities)
        ]
        logger.info(
            "facility_search_done: plan=%s/%s results=%d latency_ms=%d",
            plan.place_type,
            plan.keyword,
            len(facilities),
            elapsed_ms(started),
        )
        return facilities
