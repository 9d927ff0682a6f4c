"""Response envelope shared by all JSON routes."""

from typing import Any, Optional


def success_response(data: Any = None, message: str = "OK") -> dict:
    return {"success": True, "message": message, "data": data}


def error_body(code: str, message: str) -> dict:
    return {"success": False, "code": code, "message": message}


def client_ip(request) -> Optional[str]:
    """Client address, preferring the first hop of X-Forwarded-For."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None
