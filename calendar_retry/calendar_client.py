"""Minimal Google Calendar API client for the retry queue's operations."""
import time
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any
from urllib.parse import quote

import requests

from calendar_retry import settings
from calendar_retry.logging_conf import logger
from calendar_retry.queue.models import format_timestamp, parse_timestamp

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
MAX_TRANSIENT_RETRIES = 3


class CalendarAuthError(RuntimeError):
    """Raised when no usable access token can be obtained."""


class CalendarApiError(RuntimeError):
    """Raised when the Calendar API rejects a request."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(f"Google Calendar API request failed ({status_code}): {message}")

    @property
    def is_not_found(self) -> bool:
        return self.status_code in (404, 410)


def _error_message(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200] or response.reason or "unknown error"
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        return str(error.get("message") or error.get("status") or error)
    if isinstance(payload, dict) and payload.get("error_description"):
        return str(payload["error_description"])
    return str(error or payload)


def _google_datetime(value: Any) -> str:
    """RFC 3339 UTC string from an ISO string, epoch milliseconds or datetime.

    Naive values are taken as UTC; Google rejects a bare local time with no zone.
    """
    try:
        return format_timestamp(parse_timestamp(value))
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid event time {value!r}: {e}") from e


def _event_body(params: Dict[str, Any]) -> Dict[str, Any]:
    """Translate queue params into a Calendar event resource."""
    body: Dict[str, Any] = {}
    if "title" in params:
        body["summary"] = params["title"]
    if "location" in params:
        body["location"] = params["location"]
    if "description" in params:
        body["description"] = params["description"]
    if params.get("startTime"):
        body["start"] = {"dateTime": _google_datetime(params["startTime"])}
    if params.get("endTime"):
        body["end"] = {"dateTime": _google_datetime(params["endTime"])}
    return body


class CalendarClient:
    """Creates, updates and deletes events through the Calendar REST API."""

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        refresh_token: Optional[str] = None,
        access_token: Optional[str] = None,
        timeout: Optional[int] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = GOOGLE_CALENDAR_API_BASE_URL
        self.client_id = client_id or settings.GOOGLE_CLIENT_ID
        self.client_secret = client_secret or settings.GOOGLE_CLIENT_SECRET
        self.refresh_token = refresh_token or settings.GOOGLE_REFRESH_TOKEN
        self.timeout = timeout or settings.CALENDAR_TIMEOUT
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})

        self._access_token = access_token or settings.GOOGLE_ACCESS_TOKEN
        # A static token never expires from our point of view
        self._access_token_expires_at: Optional[datetime] = None

    def create_event(self, calendar_id: str, params: Dict[str, Any]) -> str:
        """Create an event and return its id."""
        event = self._request("POST", f"/calendars/{quote(calendar_id, safe='')}/events",
                              json=_event_body(params))
        event_id = event.get("id") if event else None
        if not event_id:
            raise CalendarApiError(200, "Create response did not include an event id")
        logger.info(f"Created event {event_id} in calendar {calendar_id}")
        return event_id

    def update_event(self, calendar_id: str, event_id: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """Patch the given fields of an existing event."""
        event = self._request("PATCH", self._event_path(calendar_id, event_id),
                              json=_event_body(params))
        logger.info(f"Updated event {event_id} in calendar {calendar_id}")
        return event or {}

    def delete_event(self, calendar_id: str, event_id: str) -> bool:
        """
        Delete an event.

        Returns:
            False if the event was already gone, True if this call deleted it
        """
        try:
            self._request("DELETE", self._event_path(calendar_id, event_id))
        except CalendarApiError as e:
            if e.is_not_found:
                logger.debug(f"Event {event_id} already deleted; treating as success")
                return False
            raise
        logger.info(f"Deleted event {event_id} from calendar {calendar_id}")
        return True

    def _event_path(self, calendar_id: str, event_id: str) -> str:
        if not event_id or not str(event_id).strip():
            raise ValueError("event_id must be a non-empty string")
        return f"/calendars/{quote(calendar_id, safe='')}/events/{quote(str(event_id).strip(), safe='')}"

    def _token(self) -> str:
        now = datetime.now(timezone.utc)
        if self._access_token and (
            self._access_token_expires_at is None or now < self._access_token_expires_at
        ):
            return self._access_token
        if not (self.client_id and self.client_secret and self.refresh_token):
            raise CalendarAuthError("Google OAuth credentials are not configured")
        self._refresh_access_token()
        return self._access_token

    def _refresh_access_token(self) -> None:
        try:
            response = requests.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "refresh_token": self.refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise CalendarAuthError(f"Google OAuth token refresh request failed: {e}") from e

        if response.status_code >= 300:
            raise CalendarAuthError(
                f"Google OAuth token refresh failed ({response.status_code}): {_error_message(response)}"
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise CalendarAuthError("Google OAuth token endpoint returned invalid JSON") from e

        access_token = payload.get("access_token")
        if not access_token:
            raise CalendarAuthError("Google OAuth token response is missing access_token")

        expires_in = payload.get("expires_in")
        expires_in = int(expires_in) if isinstance(expires_in, (int, float)) and expires_in > 0 else 3600
        # Refresh a minute early to avoid edge-of-expiry failures
        self._access_token = access_token
        self._access_token_expires_at = datetime.now(timezone.utc) + timedelta(
            seconds=max(expires_in - 60, 30)
        )
        logger.debug("Refreshed Google access token")

    def _request(self, method: str, endpoint: str, retry_count: int = 0,
                 json: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        """Make API request, retrying rate limits and transient server errors."""
        url = f"{self.base_url}{endpoint}"
        headers = {"Authorization": f"Bearer {self._token()}"}

        try:
            response = self.session.request(method=method, url=url, json=json,
                                            headers=headers, timeout=self.timeout)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            if retry_count < MAX_TRANSIENT_RETRIES:
                wait_time = 2 ** retry_count
                logger.warning(f"Calendar request error: {e}. Retrying in {wait_time}s...")
                time.sleep(wait_time)
                return self._request(method, endpoint, retry_count + 1, json=json)
            raise

        if response.status_code == 401 and retry_count == 0 and self.refresh_token:
            # Token revoked or expired early; refresh once and retry
            self._access_token_expires_at = datetime.now(timezone.utc)
            return self._request(method, endpoint, retry_count + 1, json=json)

        if response.status_code == 429 and retry_count < MAX_TRANSIENT_RETRIES:
            retry_after = int(response.headers.get("Retry-After", 30))
            logger.warning(f"Rate limited. Waiting {retry_after}s...")
            time.sleep(retry_after)
            return self._request(method, endpoint, retry_count + 1, json=json)

        if response.status_code >= 500 and retry_count < MAX_TRANSIENT_RETRIES:
            wait_time = 2 ** retry_count
            logger.warning(f"Server error {response.status_code}. Retrying in {wait_time}s...")
            time.sleep(wait_time)
            return self._request(method, endpoint, retry_count + 1, json=json)

        if response.status_code >= 300:
            raise CalendarApiError(response.status_code, _error_message(response))

        if response.status_code == 204 or not response.content:
            return None
        return response.json()
