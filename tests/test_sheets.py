from decimal import Decimal

import pytest
import requests
from fastapi.testclient import TestClient

from conftest import ScriptedDatabase
from school_api.app import app
from school_api.database import get_database
from school_api.security import create_access_token
from school_api.sheets import GradeSheetClient, SheetNotConfigured, SheetSyncError, get_sheet_client


class FakeResponse:
    def __init__(self, body=None, status_code=200):
        self.body = body
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error")

    def json(self):
        if self.body is None:
            raise ValueError("No JSON object could be decoded")
        return self.body


class FakeSession:
    def __init__(self, response):
        self.response = response
        self.posts = []

    def post(self, url, json=None, timeout=None):
        self.posts.append({"url": url, "json": json, "timeout": timeout})
        return self.response


SCRIPT_URL = "https://script.google.com/macros/s/deployment/exec"


@pytest.mark.asyncio
async def test_create_sheet_posts_action_and_returns_link():
    session = FakeSession(FakeResponse({"success": True, "sheet_id": "abc", "sheet_url": "https://docs.google.com/abc"}))
    client = GradeSheetClient(url=SCRIPT_URL, timeout=5, session=session)

    sheet = await client.create_or_update_sheet(
        sheet_id=None,
        room_name="1/1",
        subject_name="Mathematics",
        students=[{"student_id": "65001", "full_name": "Anan", "score_1": Decimal("7.5")}],
    )

    assert sheet == {"sheet_id": "abc", "sheet_url": "https://docs.google.com/abc"}
    sent = session.posts[0]
    assert sent["json"]["action"] == "create_or_update_sheet"
    assert sent["json"]["students"][0]["score_1"] == 7.5
    assert sent["timeout"] == 5


@pytest.mark.asyncio
async def test_fetch_grades_returns_rows():
    rows = [{"student_id": "65001", "score_1": 9}]
    client = GradeSheetClient(url=SCRIPT_URL, session=FakeSession(FakeResponse({"success": True, "data": rows})))

    assert await client.fetch_grades("abc") == rows


@pytest.mark.asyncio
async def test_unconfigured_client_refuses():
    client = GradeSheetClient(url="", session=FakeSession(FakeResponse({"success": True})))

    assert not client.configured
    with pytest.raises(SheetNotConfigured):
        await client.fetch_grades("abc")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [FakeResponse({"success": False, "error": "Sheet not found"}), FakeResponse(status_code=500), FakeResponse(None)],
)
async def test_script_failures_raise_sync_error(response):
    client = GradeSheetClient(url=SCRIPT_URL, session=FakeSession(response))

    with pytest.raises(SheetSyncError):
        await client.fetch_grades("abc")


class StubSheets:
    def __init__(self, rows=None, error=None):
        self.rows = rows or []
        self.error = error

    async def fetch_grades(self, sheet_id):
        if self.error:
            raise self.error
        return self.rows


@pytest.fixture
def scripted():
    db = ScriptedDatabase()
    db.on("FROM users WHERE id = $1", [{"id": 7, "phone": "0800000000", "role": "teacher", "is_active": True}])
    db.on("FROM teachers WHERE user_id", [{"id": 2}])
    app.dependency_overrides[get_database] = lambda: db
    yield db
    app.dependency_overrides.clear()


def _import(sheets):
    app.dependency_overrides[get_sheet_client] = lambda: sheets
    return TestClient(app).post(
        "/api/teacher/import-from-sheet",
        json={"room_id": 4, "subject_id": 5},
        headers={"Authorization": f"Bearer {create_access_token(7, 'teacher')}"},
    )


def test_import_skips_unknown_students(scripted):
    scripted.on("FROM grade_sheets", [{"sheet_id": "abc"}])
    scripted.on("FROM students WHERE student_id", [{"id": 11}])
    sheets = StubSheets(rows=[{"student_id": "65001", "score_1": "9", "midterm_score": "25", "final_score": "40"}])

    response = _import(sheets)

    assert response.status_code == 200
    assert response.json()["count"] == 1
    params = scripted.queries("INSERT INTO grades")[0][1]
    assert params[0] == 11
    assert params[-2] == Decimal("74")
    assert params[-1] == "B"


def test_import_without_sheet_is_not_found(scripted):
    response = _import(StubSheets())

    assert response.status_code == 404


def test_import_reports_unconfigured_sheets(scripted):
    scripted.on("FROM grade_sheets", [{"sheet_id": "abc"}])

    response = _import(StubSheets(error=SheetNotConfigured("Google Apps Script URL is not configured")))

    assert response.status_code == 503


def test_import_reports_script_failure(scripted):
    scripted.on("FROM grade_sheets", [{"sheet_id": "abc"}])

    response = _import(StubSheets(error=SheetSyncError("Sheet not found")))

    assert response.status_code == 502
    assert response.json()["message"] == "Sheet not found"
