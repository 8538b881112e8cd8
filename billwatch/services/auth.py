"""
API-key authentication for contractor-facing Billwatch routes.

``API_KEY`` may hold several comma-separated keys so a key can be rotated
without downtime. The client approval endpoint does not use this guard; the
approval token in its URL is the credential.
"""
import logging
import os
import secrets
from typing import List, Optional

from fastapi import HTTPException, Security, status
from fastapi.security import APIKeyHeader

logger = logging.getLogger(__name__)

API_KEY_HEADER = APIKeyHeader(name="X-API-Key", auto_error=False)


def configured_api_keys() -> List[str]:
    """Keys accepted right now; read on every call so rotation needs no restart."""
    raw = os.getenv("API_KEY") or ""
    return [key.strip() for key in raw.split(",") if key.strip()]


def _matches(candidate: str, keys: List[str]) -> bool:
    matched = False
    for key in keys:
        # No early exit.
        matched |= secrets.compare_digest(candidate.encode("utf-8"), key.encode("utf-8"))
    return matched


def verify_api_key(api_key: Optional[str] = Security(API_KEY_HEADER)) -> str:
    """
    FastAPI dependency guarding contractor routes.

    With no key configured every request passes (development mode). Otherwise a
    missing header is 401 and a wrong key is 403.
    """
    keys = configured_api_keys()
    if not keys:
        return api_key or "dev-mode"

    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key required. Provide X-API-Key header.",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    if not _matches(api_key, keys):
        logger.warning("Rejected request with an unknown API key")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key",
        )

    return api_key
