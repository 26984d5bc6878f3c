import logging
from typing import Any

import requests
from fastapi.encoders import jsonable_encoder
from starlette.concurrency import run_in_threadpool

from .config import settings


logger = logging.getLogger(__name__)


class SheetSyncError(Exception):
    pass


class SheetNotConfigured(SheetSyncError):
    pass


class GradeSheetClient:
    """Talks to the Google Apps Script web app that owns the grade spreadsheets.

    The script accepts a JSON body with an ``action`` field and answers with
    ``{"success": bool, ...}``. Calls are blocking, so the async helpers hand
    them to the threadpool.
    """

    def __init__(self, url: str | None = None, timeout: float | None = None, session: requests.Session | None = None):
        self.url = settings.google_apps_script_url if url is None else url
        self.timeout = settings.google_apps_script_timeout_s if timeout is None else timeout
        self.session = session or requests.Session()

    @property
    def configured(self) -> bool:
        return bool(self.url)

    def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        if not self.configured:
            raise SheetNotConfigured("Google Apps Script URL is not configured, set GOOGLE_APPS_SCRIPT_URL")
        action = payload.get("action")
        try:
            response = self.session.post(self.url, json=jsonable_encoder(payload), timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as exc:
            logger.error(f"Apps Script call '{action}' failed: {exc}")
            raise SheetSyncError(f"Google Sheets request failed: {exc}") from exc
        except ValueError as exc:
            logger.error(f"Apps Script call '{action}' returned non-JSON body")
            raise SheetSyncError("Google Sheets returned an invalid response") from exc

        if not data.get("success"):
            raise SheetSyncError(data.get("error") or f"Google Sheets action '{action}' failed")
        return data

    async def create_or_update_sheet(
        self,
        *,
        sheet_id: str | None,
        room_name: str,
        subject_name: str,
        students: list[dict[str, Any]],
    ) -> dict[str, Any]:
        data = await run_in_threadpool(
            self._post,
            {
                "action": "create_or_update_sheet",
                "sheet_id": sheet_id,
                "room_name": room_name,
                "subject_name": subject_name,
                "students": students,
            },
        )
        logger.info(f"Grade sheet ready for {room_name} / {subject_name}: {data.get('sheet_id')}")
        return {"sheet_id": data.get("sheet_id"), "sheet_url": data.get("sheet_url")}

    async def fetch_grades(self, sheet_id: str) -> list[dict[str, Any]]:
        data = await run_in_threadpool(self._post, {"action": "get_grades", "sheet_id": sheet_id})
        return list(data.get("data") or [])


sheet_client = GradeSheetClient()


def get_sheet_client() -> GradeSheetClient:
    return sheet_client
