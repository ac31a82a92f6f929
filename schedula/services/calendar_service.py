# Overview: Calendar sync adapter; mirrors appointments to Google Calendar, no-op without credentials.

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Protocol

from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from schedula.time_utils import to_utc_z


logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/calendar"]


class CalendarSync(Protocol):
    def create_event(
        self,
        title: str,
        description: str,
        start: datetime,
        end: datetime,
        attendees: list[str] | None = None,
    ) -> str | None: ...

    def update_event(self, event_id: str, start: datetime, end: datetime) -> bool: ...

    def delete_event(self, event_id: str) -> bool: ...


class NullCalendarSync:
    """Used when no calendar credentials are configured."""

    def create_event(self, title, description, start, end, attendees=None):
        return None

    def update_event(self, event_id, start, end):
        return False

    def delete_event(self, event_id):
        return False


class GoogleCalendarSync:
    """
    Google Calendar through a service account.

    The API client is built lazily on first use so app start-up never
    touches the network.
    """

    def __init__(self, credentials_info: dict, calendar_id: str = "primary"):
        self.credentials_info = credentials_info
        self.calendar_id = calendar_id
        self._service = None

    @classmethod
    def from_json(cls, raw: str, calendar_id: str = "primary") -> "GoogleCalendarSync":
        return cls(json.loads(raw), calendar_id)

    def _get_service(self):
        if self._service is None:
            creds = service_account.Credentials.from_service_account_info(self.credentials_info, scopes=SCOPES)
            self._service = build("calendar", "v3", credentials=creds, cache_discovery=False)
        return self._service

    def create_event(self, title, description, start, end, attendees=None):
        body = {
            "summary": title,
            "description": description,
            "start": {"dateTime": to_utc_z(start), "timeZone": "UTC"},
            "end": {"dateTime": to_utc_z(end), "timeZone": "UTC"},
        }
        if attendees:
            body["attendees"] = [{"email": email} for email in attendees]
        event = (
            self._get_service()
            .events()
            .insert(calendarId=self.calendar_id, body=body, sendUpdates="none")
            .execute()
        )
        return event.get("id")

    def update_event(self, event_id, start, end):
        self._get_service().events().patch(
            calendarId=self.calendar_id,
            eventId=event_id,
            body={
                "start": {"dateTime": to_utc_z(start), "timeZone": "UTC"},
                "end": {"dateTime": to_utc_z(end), "timeZone": "UTC"},
            },
        ).execute()
        return True

    def delete_event(self, event_id):
        try:
            self._get_service().events().delete(calendarId=self.calendar_id, eventId=event_id).execute()
        except HttpError as exc:
            # Already gone on the calendar side
            if exc.resp.status in (404, 410):
                return False
            raise
        return True


def sync_calendar_safely(func, *args, **kwargs):
    """
    Run a best-effort calendar call.

    Returns the call's result, or None when it raised. Failures are logged
    and never propagate to the booking operation.
    """
    try:
        return func(*args, **kwargs)
    except Exception:
        logger.exception("Calendar sync %s failed", getattr(func, "__name__", func))
        return None
