"""
Rolimons collaborators: envelope normalization and item detail records.
"""
import httpx
import pytest

import rolimons_api
from errors import ResolutionFailure

AD = [1, 1700000000, 42, "seller", {"items": [1]}, {"tags": [1]}]


@pytest.fixture(autouse=True)
def fresh_ads_cache(monkeypatch):
    monkeypatch.setattr(rolimons_api, "_RECENT_CACHE", {})


@pytest.mark.parametrize("payload", [
    {"trade_ads": [AD]},
    {"ads": [AD]},
    [AD],
    {"data": [AD]},
])
def test_known_envelopes(payload):
    assert rolimons_api.normalize_ads(payload) == [AD]


def test_trade_ads_wins_over_data():
    assert rolimons_api.normalize_ads({"data": [], "trade_ads": [AD]}) == [AD]


@pytest.mark.parametrize("payload", [{"success": False}, {"whatever": [AD]}, "nope", None])
def test_unknown_envelope_fails_loudly(payload):
    with pytest.raises(ResolutionFailure):
        rolimons_api.normalize_ads(payload)


async def test_recent_ads_are_memoised():
    calls = []

    def handler(request):
        calls.append(request)
        assert request.url.params["limit"] == "5"
        return httpx.Response(200, json={"success": True, "trade_ads": [AD]})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        assert await rolimons_api.get_recent_trade_ads(client, 5, ttl=60) == [AD]
        assert await rolimons_api.get_recent_trade_ads(client, 5, ttl=60) == [AD]
    assert len(calls) == 1


async def test_recent_ads_http_error_is_resolution_failure():
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(404))) as client:
        with pytest.raises(ResolutionFailure):
            await rolimons_api.get_recent_trade_ads(client, 5)


async def test_item_details_records():
    body = {
        "success": True,
        "item_count": 2,
        "items": {
            "1028606": ["Red Baseball Cap", "", 1200, -1, 1200, -1, -1, -1, -1, -1],
            "1365767": ["Valkyrie Helm", "RVH", 90000, 95000, 95000, 3, 2, -1, -1, -1],
        },
    }
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, json=body))) as client:
        items = await rolimons_api.fetch_item_details(client)

    cap = items["1028606"]
    assert cap["id"] == 1028606
    assert cap["name"] == "Red Baseball Cap"
    assert cap["rap"] == 1200
    assert cap["value"] is None
    assert items["1365767"]["value"] == 95000
    assert items["1365767"]["acronym"] == "RVH"


async def test_item_details_bad_envelope():
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"success": False}))) as client:
        with pytest.raises(ResolutionFailure):
            await rolimons_api.fetch_item_details(client)
