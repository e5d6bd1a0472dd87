"""
Google Calendar Client
Thin async wrapper over Google OAuth and Calendar v3 used by the token vault
and the sync engine. Every call has a finite timeout; rate-limit responses
are retried with exponential backoff before RateLimited is raised.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import quote

import httpx

from ..config import (
    GOOGLE_CLIENT_ID,
    GOOGLE_CLIENT_SECRET,
    GOOGLE_REDIRECT_URI,
    PROVIDER_TIMEOUT_SECONDS,
    RATE_LIMIT_BACKOFF_SECONDS,
    RATE_LIMIT_MAX_ATTEMPTS,
)
from ..errors import ProviderError, ProviderTimeout, RateLimited

logger = logging.getLogger(__name__)

# Google OAuth URLs
GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"  # noqa: S105 - OAuth endpoint URL
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"
GOOGLE_CALENDAR_SCOPES = [
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
    "https://www.googleapis.com/auth/userinfo.email",
]

RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}
PAGE_SIZE = 250


class InvalidGrant(ProviderError):
    """Refresh token was revoked or expired; the user has to reconnect"""


class SyncTokenExpired(ProviderError):
    """Incremental sync cursor is no longer valid (HTTP 410); a full window pull is needed"""


class ExternalEventNotFound(ProviderError):
    """The external event no longer exists"""


@dataclass
class EventPage:
    items: list[dict] = field(default_factory=list)
    next_sync_token: Optional[str] = None


def _is_rate_limited(response: httpx.Response) -> bool:
    if response.status_code == 429:
        return True
    if response.status_code != 403:
        return False
    try:
        errors = response.json().get("error", {}).get("errors", [])
    except ValueError:
        return False
    return any(error.get("reason") in RATE_LIMIT_REASONS for error in errors)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    error = body.get("error")
    if isinstance(error, dict):
        return error.get("message") or str(error)
    return body.get("error_description") or str(error or body)


class GoogleCalendarClient:
    """Google OAuth + Calendar v3 client"""

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = PROVIDER_TIMEOUT_SECONDS,
        max_attempts: int = RATE_LIMIT_MAX_ATTEMPTS,
        backoff_seconds: float = RATE_LIMIT_BACKOFF_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._http = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout), transport=transport
        )
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(
        self, method: str, url: str, access_token: Optional[str] = None, **kwargs
    ) -> httpx.Response:
        """Send one provider request, retrying rate-limit responses with backoff"""
        headers = kwargs.pop("headers", {})
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"

        for attempt in range(self.max_attempts):
            try:
                response = await self._http.request(method, url, headers=headers, **kwargs)
            except httpx.TimeoutException as e:
                logger.warning(f"⏱️ Google request timed out: {method} {url}")
                raise ProviderTimeout(f"Google request timed out: {method} {url}") from e
            except httpx.HTTPError as e:
                logger.error(f"❌ Google request failed: {method} {url}: {str(e)}")
                raise ProviderError(f"Google request failed: {str(e)}") from e

            if not _is_rate_limited(response):
                return response

            if attempt + 1 < self.max_attempts:
                delay = self.backoff_seconds * 2**attempt
                logger.warning(
                    f"⏳ Google rate limit on {method} {url}, retrying in {delay:.1f}s "
                    f"(attempt {attempt + 1}/{self.max_attempts})"
                )
                await self._sleep(delay)

        logger.error(f"❌ Google rate limit persisted after {self.max_attempts} attempts: {method} {url}")
        raise RateLimited()

    @staticmethod
    def _raise_for_status(response: httpx.Response, action: str, ok=(200,)) -> None:
        if response.status_code in ok:
            return
        message = _error_message(response)
        logger.error(f"❌ Failed to {action}: HTTP {response.status_code} {message}")
        raise ProviderError(f"Failed to {action}: {message}", http_status=response.status_code)

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def authorization_url(self, state: str) -> str:
        """Consent URL requesting offline access so a refresh token is issued"""
        params = {
            "client_id": GOOGLE_CLIENT_ID,
            "redirect_uri": GOOGLE_REDIRECT_URI,
            "response_type": "code",
            "scope": " ".join(GOOGLE_CALENDAR_SCOPES),
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        return str(httpx.URL(GOOGLE_AUTH_URL, params=params))

    async def exchange_code(self, code: str) -> dict:
        """Exchange an authorization code for access and refresh tokens"""
        response = await self._request(
            "POST",
            GOOGLE_TOKEN_URL,
            data={
                "code": code,
                "client_id": GOOGLE_CLIENT_ID,
                "client_secret": GOOGLE_CLIENT_SECRET,
                "redirect_uri": GOOGLE_REDIRECT_URI,
                "grant_type": "authorization_code",
            },
        )
        self._raise_for_status(response, "exchange authorization code")

        tokens = response.json()
        if not tokens.get("access_token") or not tokens.get("refresh_token"):
            raise ProviderError("Invalid token response", http_status=response.status_code)
        return tokens

    async def refresh_access_token(self, refresh_token: str) -> dict:
        """
        Get a new access token.

        Raises:
            InvalidGrant: If Google rejected the refresh token
        """
        response = await self._request(
            "POST",
            GOOGLE_TOKEN_URL,
            data={
                "client_id": GOOGLE_CLIENT_ID,
                "client_secret": GOOGLE_CLIENT_SECRET,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
        )
        if response.status_code in (400, 401):
            try:
                error = response.json().get("error")
            except ValueError:
                error = None
            if error in ("invalid_grant", "unauthorized_client", "invalid_client"):
                raise InvalidGrant(f"Refresh token rejected: {error}", http_status=response.status_code)
        self._raise_for_status(response, "refresh access token")

        tokens = response.json()
        if not tokens.get("access_token"):
            raise ProviderError("No access token in refresh response")
        return tokens

    async def revoke_token(self, token: str) -> bool:
        response = await self._request("POST", GOOGLE_REVOKE_URL, params={"token": token})
        if response.status_code != 200:
            logger.warning(f"⚠️ Failed to revoke Google token: HTTP {response.status_code}")
            return False
        return True

    async def get_user_email(self, access_token: str) -> Optional[str]:
        response = await self._request("GET", GOOGLE_USERINFO_URL, access_token=access_token)
        self._raise_for_status(response, "get user info")
        return response.json().get("email")

    # ------------------------------------------------------------------
    # Calendars
    # ------------------------------------------------------------------

    async def list_calendars(self, access_token: str) -> list[dict]:
        calendars = []
        params: dict[str, Any] = {"maxResults": PAGE_SIZE}
        while True:
            response = await self._request(
                "GET",
                f"{GOOGLE_CALENDAR_API}/users/me/calendarList",
                access_token=access_token,
                params=params,
            )
            self._raise_for_status(response, "list calendars")
            data = response.json()
            calendars.extend(data.get("items", []))
            page_token = data.get("nextPageToken")
            if not page_token:
                return calendars
            params["pageToken"] = page_token

    async def create_calendar(self, access_token: str, name: str, time_zone: str) -> dict:
        response = await self._request(
            "POST",
            f"{GOOGLE_CALENDAR_API}/calendars",
            access_token=access_token,
            json={"summary": name, "timeZone": time_zone},
        )
        self._raise_for_status(response, "create calendar")
        return response.json()

    async def get_or_create_calendar(self, access_token: str, name: str, time_zone: str) -> str:
        """Id of the owned calendar with this name, creating it when missing"""
        for calendar in await self.list_calendars(access_token):
            if calendar.get("summary") == name and calendar.get("accessRole") == "owner":
                return calendar["id"]

        calendar = await self.create_calendar(access_token, name, time_zone)
        logger.info(f"✅ Created Google calendar '{name}': {calendar.get('id')}")
        return calendar["id"]

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _events_url(self, calendar_id: str, event_id: Optional[str] = None) -> str:
        url = f"{GOOGLE_CALENDAR_API}/calendars/{quote(calendar_id, safe='')}/events"
        if event_id:
            url += f"/{quote(event_id, safe='')}"
        return url

    async def list_events(
        self,
        access_token: str,
        calendar_id: str,
        sync_token: Optional[str] = None,
        time_min: Optional[str] = None,
        time_max: Optional[str] = None,
    ) -> EventPage:
        """
        List events changed since sync_token, or every event in [time_min, time_max].
        Cancelled events are included so deletions can be pulled.

        Raises:
            SyncTokenExpired: If Google no longer accepts the sync token
        """
        params: dict[str, Any] = {"maxResults": PAGE_SIZE, "showDeleted": "true", "singleEvents": "true"}
        if sync_token:
            params["syncToken"] = sync_token
        else:
            if time_min:
                params["timeMin"] = time_min
            if time_max:
                params["timeMax"] = time_max

        page = EventPage()
        while True:
            response = await self._request(
                "GET", self._events_url(calendar_id), access_token=access_token, params=params
            )
            if response.status_code == 410:
                raise SyncTokenExpired("Sync token expired", http_status=410)
            self._raise_for_status(response, "list events")

            data = response.json()
            page.items.extend(data.get("items", []))
            page_token = data.get("nextPageToken")
            if not page_token:
                page.next_sync_token = data.get("nextSyncToken")
                return page
            params["pageToken"] = page_token

    async def insert_event(self, access_token: str, calendar_id: str, body: dict) -> dict:
        response = await self._request(
            "POST", self._events_url(calendar_id), access_token=access_token, json=body
        )
        self._raise_for_status(response, "create calendar event", ok=(200, 201))
        return response.json()

    async def update_event(
        self, access_token: str, calendar_id: str, event_id: str, body: dict
    ) -> dict:
        response = await self._request(
            "PUT", self._events_url(calendar_id, event_id), access_token=access_token, json=body
        )
        if response.status_code in (404, 410):
            raise ExternalEventNotFound(f"Event {event_id} not found", http_status=response.status_code)
        self._raise_for_status(response, "update calendar event")
        return response.json()

    async def delete_event(self, access_token: str, calendar_id: str, event_id: str) -> None:
        """Delete an event; one that is already gone counts as deleted"""
        response = await self._request(
            "DELETE", self._events_url(calendar_id, event_id), access_token=access_token
        )
        if response.status_code in (404, 410):
            logger.info(f"ℹ️ Google Calendar event already gone: {event_id}")
            return
        self._raise_for_status(response, "delete calendar event", ok=(200, 204))
