import json

import httpx
import pytest
from httpx import ASGITransport

from main import app
from services.local_quota import USAGE_KEY, LocalQuotaCache, MemoryQuotaStore
from services.portrait_client import PortraitApiClient, PortraitApiError
from services.session_token import create_anonymous_session, create_session_token


PORTRAIT = {
    "image_data": "aGVsbG8=",
    "prompt": "Candid first dance",
    "styles": ["romantic"],
}


def _client(cache, **kwargs):
    return PortraitApiClient("http://test", cache, transport=ASGITransport(app=app), **kwargs)


@pytest.mark.asyncio
async def test_anonymous_client_mirrors_server_quota_and_stops_locally(api_client, image_generator):
    cache = LocalQuotaCache(MemoryQuotaStore(), daily_limit=3)
    async with _client(cache, session_id=create_anonymous_session()["session_id"]) as client:
        for _ in range(3):
            result = await client.start_generation(**PORTRAIT)
            assert result["request"]["status"] == "completed"

        assert cache.check().remaining == 0
        with pytest.raises(PortraitApiError) as exc_info:
            await client.start_generation(**PORTRAIT)

    assert exc_info.value.status_code == 429
    assert exc_info.value.detail["local"] is True
    assert len(image_generator.calls) == 3


@pytest.mark.asyncio
async def test_server_status_overwrites_stale_local_counter(api_client):
    store = MemoryQuotaStore()
    cache = LocalQuotaCache(store, daily_limit=3)
    cache.sync_from_server(used_today=3)
    assert cache.check().can_proceed is False

    async with _client(cache, session_id=create_anonymous_session()["session_id"]) as client:
        body = await client.rate_limit_status()

    assert body["rate_limit"]["tier"] == "anonymous"
    assert cache.check().remaining == 3
    assert json.loads(store.get(USAGE_KEY))["used"] == 0


@pytest.mark.asyncio
async def test_signed_in_client_syncs_ledger_balance(api_client):
    cache = LocalQuotaCache(MemoryQuotaStore(), daily_limit=3)
    token = create_session_token("client-user", "client@example.com")["token"]
    async with _client(cache, token=token) as client:
        await client.start_generation(**PORTRAIT)
        summary = await client.credits()

    assert summary["balance"]["used_today"] == 1
    assert cache.check().remaining == 2


@pytest.mark.asyncio
async def test_server_rejection_is_raised_with_detail(api_client, image_generator):
    image_generator.fail_with = "provider exploded"
    cache = LocalQuotaCache(MemoryQuotaStore(), daily_limit=3)
    token = create_session_token("client-user-2")["token"]
    async with _client(cache, token=token) as client:
        with pytest.raises(PortraitApiError) as exc_info:
            await client.start_generation(**PORTRAIT)

    assert exc_info.value.status_code == 502
    assert exc_info.value.code == "generation_failed"
    assert exc_info.value.detail["refunded"] is True


@pytest.mark.asyncio
async def test_offline_client_falls_back_to_cached_view():
    def unreachable(request):
        raise httpx.ConnectError("connection refused", request=request)

    cache = LocalQuotaCache(MemoryQuotaStore(), daily_limit=3)
    cache.record_use()
    client = PortraitApiClient("http://test", cache, transport=httpx.MockTransport(unreachable))
    try:
        status = await client.rate_limit_status()
        credits = await client.credits()
    finally:
        await client.aclose()

    assert status["offline"] is True
    assert status["local"]["remaining"] == 2
    assert credits["offline"] is True
