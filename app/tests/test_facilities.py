import asyncio
from pathlib import Path

import httpx
import pytest

from chatbridge.config import Settings
from chatbridge.facilities import (
    FacilitySearchClient,
    GENERIC_PLAN,
    FacilitySearchNotConfigured,
    GeocodingError,
    PlacesSearchError,
    SearchPlan,
    detect_foreign_support,
    plan_search,
    recommendation_reasons,
)
from chatbridge.schemas import GeoPoint, MedicalFacility

ORIGIN = {"lat": 35.0, "lng": 139.0}


def _settings(tmp_path: Path, *, places_api_key: str | None = "places-key") -> Settings:
    return Settings(
        local_storage_dir=str(tmp_path),
        gemini_api_key=None,
        places_api_key=places_api_key,
        search_radii_m=(3000, 5000, 10000),
        max_facilities=10,
        operating_language="ja",
    )


def _place(name: str, lat_offset: float, *, open_now: bool | None = None, **extra) -> dict:
    place = {
        "name": name,
        "place_id": f"pid-{name}",
        "vicinity": f"{name}の住所",
        "geometry": {"location": {"lat": ORIGIN["lat"] + lat_offset, "lng": ORIGIN["lng"]}},
        "types": ["hospital", "health"],
    }
    if open_now is not None:
        place["opening_hours"] = {"open_now": open_now}
    place.update(extra)
    return place


class PlacesStub:
    """Geocodes to ORIGIN and serves Nearby Search results per radius."""

    def __init__(self, results_by_radius: dict[int, list[dict]], *, geocode_status: str = "OK"):
        self.results_by_radius = results_by_radius
        self.geocode_status = geocode_status
        self.nearby_calls: list[dict[str, str]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/geocode/json"):
            if self.geocode_status != "OK":
                return httpx.Response(200, json={"status": self.geocode_status, "results": []})
            return httpx.Response(
                200, json={"status": "OK", "results": [{"geometry": {"location": ORIGIN}}]}
            )
        params = dict(request.url.params)
        self.nearby_calls.append(params)
        results = self.results_by_radius.get(int(params["radius"]), [])
        return httpx.Response(200, json={"status": "OK" if results else "ZERO_RESULTS", "results": results})


def _client(tmp_path: Path, handler, **kwargs) -> FacilitySearchClient:
    return FacilitySearchClient(_settings(tmp_path, **kwargs), transport=httpx.MockTransport(handler))


def test_plan_search_maps_departments():
    assert plan_search("歯科").place_type == "dentist"
    assert plan_search("内科").keyword == "内科 クリニック"
    assert plan_search("整形外科").keyword == "外科 整形外科"
    assert plan_search("Dermatology").keyword == "皮膚科"
    assert plan_search("ENT / ear pain").keyword == "耳鼻咽喉科"
    assert plan_search("general").keyword == "病院 クリニック"
    assert plan_search(None).keyword == "病院 クリニック"


def test_plan_search_matches_whole_words_and_stems():
    assert plan_search("early morning dizziness") is GENERIC_PLAN
    assert plan_search("sore ears").keyword == "耳鼻咽喉科"
    assert plan_search("Orthopedics").keyword == "外科 整形外科"
    assert plan_search("ophthalmology").keyword == "眼科"
    assert plan_search("eyebrow twitch") is GENERIC_PLAN


def test_detect_foreign_support():
    assert detect_foreign_support("Tokyo International Clinic", [])
    assert detect_foreign_support("さくら病院（英語対応）", [])
    assert not detect_foreign_support("さくら病院", ["hospital"])


def test_search_escalates_radius_until_results(tmp_path: Path):
    stub = PlacesStub({10000: [_place("遠くの内科", 0.08), _place("やや遠い内科", 0.07)]})
    client = _client(tmp_path, stub)

    facilities = asyncio.run(client.search("東京都千代田区", "内科", "flexible"))

    assert [f.name for f in facilities] == ["やや遠い内科", "遠くの内科"]
    # keyword + type-only retry at each radius
    assert [c["radius"] for c in stub.nearby_calls] == ["3000", "3000", "5000", "5000", "10000"]
    assert stub.nearby_calls[0]["keyword"] == "内科 クリニック"
    assert "keyword" not in stub.nearby_calls[1]
    assert facilities[0].distance_meters == pytest.approx(7784, abs=50)


def test_search_stops_at_first_radius_with_results(tmp_path: Path):
    stub = PlacesStub({3000: [_place("近い病院", 0.01)], 5000: [_place("別の病院", 0.02)]})
    client = _client(tmp_path, stub)

    facilities = asyncio.run(client.search("東京都", "内科"))

    assert [f.name for f in facilities] == ["近い病院"]
    assert len(stub.nearby_calls) == 1


def test_search_sorts_by_distance_and_adds_reasons(tmp_path: Path):
    places = [
        _place("中間クリニック", 0.02, rating=4.6, user_ratings_total=250),
        _place("最寄り内科", 0.005, open_now=True),
        _place("International Clinic", 0.01),
    ]
    client = _client(tmp_path, PlacesStub({3000: places}))

    facilities = asyncio.run(client.search("東京都", "内科"))

    assert [f.name for f in facilities] == ["最寄り内科", "International Clinic", "中間クリニック"]
    assert facilities[0].recommendation_reasons[:3] == ["最寄りの医療機関", "現在営業中", "症状に合った診療科"]
    assert facilities[1].accepts_foreigners is True
    assert "外国語対応あり" in facilities[1].recommendation_reasons
    assert "高評価（★4.6）" in facilities[2].recommendation_reasons
    assert all(0 < len(f.recommendation_reasons) <= 3 for f in facilities)
    assert facilities[0].maps_url.endswith("&query_place_id=pid-最寄り内科")


def test_immediate_urgency_keeps_only_open_facilities(tmp_path: Path):
    places = [_place("閉まっている病院", 0.005, open_now=False), _place("開いている病院", 0.01, open_now=True)]
    client = _client(tmp_path, PlacesStub({3000: places}))

    facilities = asyncio.run(client.search("東京都", "内科", "immediate"))

    assert [f.name for f in facilities] == ["開いている病院"]


def test_search_caps_results(tmp_path: Path):
    places = [_place(f"病院{idx}", 0.001 * (idx + 1)) for idx in range(15)]
    client = _client(tmp_path, PlacesStub({3000: places}))

    facilities = asyncio.run(client.search("東京都"))

    assert len(facilities) == 10
    assert facilities[0].name == "病院0"


def test_search_without_key_raises_not_configured(tmp_path: Path):
    client = _client(tmp_path, PlacesStub({}), places_api_key=None)

    with pytest.raises(FacilitySearchNotConfigured) as excinfo:
        asyncio.run(client.search("東京都"))
    assert excinfo.value.http_status == 503


def test_geocode_zero_results_raises(tmp_path: Path):
    client = _client(tmp_path, PlacesStub({}, geocode_status="ZERO_RESULTS"))

    with pytest.raises(GeocodingError) as excinfo:
        asyncio.run(client.search("存在しない住所"))
    assert excinfo.value.status == "ZERO_RESULTS"
    assert excinfo.value.message == "住所から位置情報を取得できませんでした"


def test_places_error_status_raises(tmp_path: Path):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/geocode/json"):
            return httpx.Response(200, json={"status": "OK", "results": [{"geometry": {"location": ORIGIN}}]})
        return httpx.Response(200, json={"status": "REQUEST_DENIED", "results": []})

    with pytest.raises(PlacesSearchError) as excinfo:
        asyncio.run(_client(tmp_path, handler).search("東京都"))
    assert excinfo.value.status == "REQUEST_DENIED"


def test_geocode_non_object_response_raises_typed_error(tmp_path: Path):
    client = _client(tmp_path, lambda request: httpx.Response(200, json=["unexpected"]))

    with pytest.raises(GeocodingError) as excinfo:
        asyncio.run(client.search("東京都"))
    assert excinfo.value.status == "INVALID_RESPONSE"
    assert excinfo.value.http_status == 422


def test_places_non_object_response_raises_typed_error(tmp_path: Path):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/geocode/json"):
            return httpx.Response(200, json={"status": "OK", "results": [{"geometry": {"location": ORIGIN}}]})
        return httpx.Response(200, json="unexpected")

    with pytest.raises(PlacesSearchError) as excinfo:
        asyncio.run(_client(tmp_path, handler).search("東京都"))
    assert excinfo.value.status == "INVALID_RESPONSE"


def test_malformed_place_entries_are_skipped(tmp_path: Path):
    places = ["not-a-place", 42, _place("正常な病院", 0.01), {"name": "座標なし", "geometry": "broken"}]
    client = _client(tmp_path, PlacesStub({3000: places}))

    facilities = asyncio.run(client.search("東京都", "内科"))

    assert [f.name for f in facilities] == ["正常な病院"]


def test_recommendation_reasons_fallback_and_english():
    facility = MedicalFacility(name="Plain", location=GeoPoint(lat=0, lng=0), maps_url="https://maps")
    plan = SearchPlan("hospital", "病院 クリニック")

    assert recommendation_reasons(facility, 4, plan) == ["候補5"]
    assert recommendation_reasons(facility, 0, plan, language="en-US") == ["Closest facility"]
