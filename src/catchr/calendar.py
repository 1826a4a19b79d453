"""
Google Calendar client for Catchr.

Creates events from natural-language text with the quickAdd endpoint,
using the owner's stored OAuth access token. An expired token is
refreshed through Google's token endpoint before the call, or after a
first 401; only a rejected refresh means the user must reconnect.
"""

import logging
import os
from datetime import timedelta
from typing import Any
from urllib.parse import quote

import httpx

from catchr.config import load_config
from catchr.db import utcnow
from catchr.errors import CalendarAuthorizationError, CalendarError
from catchr.models import CalendarCredentials, CreatedEvent

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600


class GoogleCalendarClient:
    """Quick-add calendar event creation."""

    def __init__(
        self,
        config: dict[str, Any] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.config = config or load_config()
        cal_config = self.config.get("calendar", {})
        self.base_url = cal_config.get("base_url", GOOGLE_CALENDAR_API)
        self.token_url = cal_config.get("token_url", GOOGLE_TOKEN_URL)
        self.timeout = float(cal_config.get("timeout_seconds", 20.0))

        # OAuth client from config or environment, needed only to refresh
        self.client_id = cal_config.get("client_id") or os.environ.get("GOOGLE_CLIENT_ID")
        self.client_secret = (
            cal_config.get("client_secret") or os.environ.get("GOOGLE_CLIENT_SECRET")
        )
        self._client = http_client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def create_from_natural_language(
        self,
        credentials: CalendarCredentials,
        calendar_id: str,
        timezone: str,
        text: str,
    ) -> CreatedEvent:
        """
        Create an event from free-form text.

        quickAdd parses dates in the calendar's own time zone; `timezone` is
        only logged so mismatches with the user's setting are visible. The
        returned event carries the new credentials when a refresh happened.
        """
        refreshed = None
        if credentials.refresh_token and (
            not credentials.access_token or credentials.is_expired(utcnow())
        ):
            credentials = refreshed = await self.refresh(credentials)

        if not credentials.access_token:
            raise CalendarAuthorizationError("No calendar access token. Please reconnect your calendar.")

        logger.info("Creating quick event in %s (%s): %s", calendar_id, timezone, text)

        response = await self._quick_add(credentials, calendar_id, text)
        if response.status_code == 401 and credentials.refresh_token and refreshed is None:
            logger.info("Calendar token rejected, refreshing")
            credentials = refreshed = await self.refresh(credentials)
            response = await self._quick_add(credentials, calendar_id, text)

        if response.status_code == 401:
            raise CalendarAuthorizationError(
                "Calendar authorization expired. Please reconnect your calendar."
            )
        # 403 is also Google's rate-limit status, so it stays retryable
        if response.is_error:
            raise CalendarError(f"Calendar provider returned HTTP {response.status_code}")

        body = response.json()
        if not body.get("id"):
            raise CalendarError("Calendar provider returned no event id")

        return CreatedEvent(
            event_id=body["id"],
            event_link=body.get("htmlLink"),
            refreshed_credentials=refreshed,
        )

    async def _quick_add(
        self, credentials: CalendarCredentials, calendar_id: str, text: str
    ) -> httpx.Response:
        try:
            return await self.client.post(
                f"{self.base_url}/calendars/{quote(calendar_id, safe='@')}/events/quickAdd",
                headers={"Authorization": f"Bearer {credentials.access_token}"},
                params={"text": text},
            )
        except httpx.HTTPError as e:
            raise CalendarError(f"Calendar request failed: {e}") from e

    async def refresh(self, credentials: CalendarCredentials) -> CalendarCredentials:
        """Exchange the refresh token for a new access token."""
        if not credentials.refresh_token:
            raise CalendarAuthorizationError("No refresh token. Please reconnect your calendar.")
        if not self.client_id or not self.client_secret:
            raise CalendarAuthorizationError(
                "Calendar token expired and no OAuth client is configured to refresh it."
            )

        try:
            response = await self.client.post(
                self.token_url,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": credentials.refresh_token,
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                },
            )
        except httpx.HTTPError as e:
            raise CalendarError(f"Token refresh failed: {e}") from e

        # invalid_grant (400) or invalid_client (401): the grant is gone
        if response.status_code in (400, 401):
            raise CalendarAuthorizationError(
                "Calendar authorization was revoked. Please reconnect your calendar."
            )
        if response.is_error:
            raise CalendarError(f"Token endpoint returned HTTP {response.status_code}")

        body = response.json()
        if not body.get("access_token"):
            raise CalendarError("Token endpoint returned no access token")

        lifetime = int(body.get("expires_in", DEFAULT_TOKEN_LIFETIME_SECONDS))
        logger.info("Calendar access token refreshed")
        return CalendarCredentials(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token") or credentials.refresh_token,
            expires_at=utcnow() + timedelta(seconds=lifetime),
        )
