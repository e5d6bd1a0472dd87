"""Tests for the Google Calendar client against httpx.MockTransport."""

import json

import httpx
import pytest

from coparent.errors import ProviderError, ProviderTimeout, RateLimited
from coparent.services.google_calendar_client import (
    GOOGLE_TOKEN_URL,
    ExternalEventNotFound,
    GoogleCalendarClient,
    InvalidGrant,
    SyncTokenExpired,
)

RATE_LIMIT_BODY = {
    "error": {
        "code": 403,
        "message": "Rate Limit Exceeded",
        "errors": [{"domain": "usageLimits", "reason": "rateLimitExceeded"}],
    }
}


class Recorder:
    """Serves queued responses and remembers every request."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_client(sleeps):
    async def fake_sleep(delay):
        sleeps.append(delay)

    def _make(handler, max_attempts=4):
        return GoogleCalendarClient(
            transport=httpx.MockTransport(handler),
            max_attempts=max_attempts,
            backoff_seconds=0.5,
            sleep=fake_sleep,
        )

    return _make


class TestRetries:
    async def test_rate_limit_is_retried_with_exponential_backoff(self, make_client, sleeps):
        handler = Recorder(
            httpx.Response(429, json={"error": {"message": "Too many requests"}}),
            httpx.Response(403, json=RATE_LIMIT_BODY),
            httpx.Response(200, json={"id": "g-1", "etag": '"1"'}),
        )
        client = make_client(handler)

        created = await client.insert_event("token", "cal", {"summary": "Dentist"})

        assert created["id"] == "g-1"
        assert sleeps == [0.5, 1.0]
        assert len(handler.requests) == 3
        assert handler.requests[0].headers["Authorization"] == "Bearer token"

    async def test_persistent_rate_limit_raises(self, make_client, sleeps):
        handler = Recorder(*(httpx.Response(429, json={}) for _ in range(3)))
        client = make_client(handler, max_attempts=3)

        with pytest.raises(RateLimited):
            await client.delete_event("token", "cal", "g-1")

        assert sleeps == [0.5, 1.0]

    async def test_plain_forbidden_is_not_retried(self, make_client, sleeps):
        handler = Recorder(httpx.Response(403, json={"error": {"message": "Forbidden", "errors": []}}))
        client = make_client(handler)

        with pytest.raises(ProviderError) as exc_info:
            await client.insert_event("token", "cal", {})

        assert exc_info.value.http_status == 403
        assert sleeps == []

    async def test_timeout_maps_to_provider_timeout(self, make_client):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client = make_client(handler)

        with pytest.raises(ProviderTimeout):
            await client.list_calendars("token")


class TestEvents:
    async def test_list_events_pages_and_returns_sync_token(self, make_client):
        handler = Recorder(
            httpx.Response(200, json={"items": [{"id": "a"}], "nextPageToken": "p2"}),
            httpx.Response(200, json={"items": [{"id": "b"}], "nextSyncToken": "sync-2"}),
        )
        client = make_client(handler)

        page = await client.list_events("token", "family@group.calendar.google.com", sync_token="sync-1")

        assert [item["id"] for item in page.items] == ["a", "b"]
        assert page.next_sync_token == "sync-2"
        first, second = handler.requests
        assert first.url.params["syncToken"] == "sync-1"
        assert first.url.params["showDeleted"] == "true"
        assert "timeMin" not in first.url.params
        assert second.url.params["pageToken"] == "p2"
        assert "family%40group.calendar.google.com" in str(first.url)

    async def test_window_listing_without_sync_token(self, make_client):
        handler = Recorder(httpx.Response(200, json={"items": [], "nextSyncToken": "s"}))
        client = make_client(handler)

        await client.list_events("token", "cal", time_min="2024-01-01T00:00:00Z", time_max="2024-02-01T00:00:00Z")

        params = handler.requests[0].url.params
        assert params["timeMin"] == "2024-01-01T00:00:00Z"
        assert params["timeMax"] == "2024-02-01T00:00:00Z"
        assert "syncToken" not in params

    async def test_gone_sync_token(self, make_client):
        client = make_client(Recorder(httpx.Response(410, json={"error": {"message": "Sync token is no longer valid"}})))

        with pytest.raises(SyncTokenExpired):
            await client.list_events("token", "cal", sync_token="old")

    async def test_update_missing_event(self, make_client):
        client = make_client(Recorder(httpx.Response(404, json={"error": {"message": "Not Found"}})))

        with pytest.raises(ExternalEventNotFound):
            await client.update_event("token", "cal", "g-1", {"summary": "x"})

    async def test_delete_already_gone_counts_as_deleted(self, make_client):
        client = make_client(Recorder(httpx.Response(410), httpx.Response(204)))

        await client.delete_event("token", "cal", "g-1")
        await client.delete_event("token", "cal", "g-2")

    async def test_insert_sends_json_body(self, make_client):
        handler = Recorder(httpx.Response(200, json={"id": "g-9"}))
        client = make_client(handler)

        await client.insert_event("token", "cal", {"summary": "Recital"})

        request = handler.requests[0]
        assert request.method == "POST"
        assert json.loads(request.content) == {"summary": "Recital"}


class TestOAuth:
    async def test_refresh_invalid_grant(self, make_client):
        handler = Recorder(httpx.Response(400, json={"error": "invalid_grant", "error_description": "Token has been expired or revoked."}))
        client = make_client(handler)

        with pytest.raises(InvalidGrant):
            await client.refresh_access_token("refresh")

        assert str(handler.requests[0].url) == GOOGLE_TOKEN_URL

    async def test_refresh_server_error_is_not_invalid_grant(self, make_client):
        client = make_client(Recorder(httpx.Response(500, text="backend error")))

        with pytest.raises(ProviderError) as exc_info:
            await client.refresh_access_token("refresh")

        assert not isinstance(exc_info.value, InvalidGrant)

    async def test_exchange_requires_refresh_token(self, make_client):
        client = make_client(Recorder(httpx.Response(200, json={"access_token": "a", "expires_in": 3600})))

        with pytest.raises(ProviderError):
            await client.exchange_code("code")

    async def test_get_or_create_calendar_reuses_owned_calendar(self, make_client):
        handler = Recorder(
            httpx.Response(
                200,
                json={
                    "items": [
                        {"id": "someone-else", "summary": "Coparent", "accessRole": "reader"},
                        {"id": "mine", "summary": "Coparent", "accessRole": "owner"},
                    ]
                },
            )
        )
        client = make_client(handler)

        assert await client.get_or_create_calendar("token", "Coparent", "UTC") == "mine"
        assert len(handler.requests) == 1

    async def test_get_or_create_calendar_creates_missing(self, make_client):
        handler = Recorder(
            httpx.Response(200, json={"items": []}),
            httpx.Response(200, json={"id": "new-cal", "summary": "Coparent"}),
        )
        client = make_client(handler)

        assert await client.get_or_create_calendar("token", "Coparent", "America/Denver") == "new-cal"
        assert json.loads(handler.requests[1].content) == {"summary": "Coparent", "timeZone": "America/Denver"}

    def test_authorization_url_requests_offline_access(self, make_client):
        client = make_client(Recorder())

        url = httpx.URL(client.authorization_url("state-123"))

        assert url.params["access_type"] == "offline"
        assert url.params["prompt"] == "consent"
        assert url.params["state"] == "state-123"
        assert "calendar" in url.params["scope"]
