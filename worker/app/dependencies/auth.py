# worker/app/dependencies/auth.py
import hmac
import logging
from typing import Optional

from fastapi import HTTPException, Request

from ..config import settings

log = logging.getLogger(__name__)


def _bearer(header: Optional[str]) -> Optional[str]:
    scheme, _, credentials = (header or "").partition(" ")
    if scheme != "Bearer" or not credentials:
        return None
    return credentials


def require_auth(request: Request) -> bool:
    """
    Gate for the sync trigger routes. An empty WORKER_AUTH_TOKEN turns the
    gate off (local development).
    """
    expected = (settings.WORKER_AUTH_TOKEN or "").strip()
    if not expected:
        return True

    given = _bearer(request.headers.get("Authorization"))
    if given is None or not hmac.compare_digest(given.encode(), expected.encode()):
        log.warning("rejected %s %s: bad or missing bearer token", request.method, request.url.path)
        raise HTTPException(
            status_code=401,
            detail={"ok": False, "error": "unauthorized"},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return True
