from typing import Any


def ok(data: Any = None, message: str | None = None, *, count: int | None = None, **extra: Any) -> dict[str, Any]:
    """Success envelope shared by every route."""
    body: dict[str, Any] = {"success": True}
    if message is not None:
        body["message"] = message
    if count is not None:
        body["count"] = count
    if data is not None:
        body["data"] = data
    body.update(extra)
    return body


def listing(rows: list[dict[str, Any]], **extra: Any) -> dict[str, Any]:
    return ok(rows, count=len(rows), **extra)


def failure(message: str, **extra: Any) -> dict[str, Any]:
    return {"success": False, "message": message, **extra}
