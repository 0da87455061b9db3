"""
Optional API key check for mutating FramePatch endpoints.

Reads stay open. When FRAMEPATCH_API_KEY is unset every request passes,
which is the local development setup.
"""

import hmac
import logging
from typing import Optional

from fastapi import Header, HTTPException, status

from framepatch.config import get_settings

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-FramePatch-API-Key"


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": API_KEY_HEADER},
    )


async def verify_api_key(
    api_key: Optional[str] = Header(None, alias=API_KEY_HEADER),
) -> None:
    """
    Dependency that rejects requests without the configured API key.

    Raises:
        HTTPException: 401 if the header is missing or does not match
    """
    expected_key = get_settings().framepatch_api_key
    if not expected_key:
        return

    if not api_key:
        logger.warning(f"Rejected request without {API_KEY_HEADER} header")
        raise _unauthorized("Missing API key")

    if not hmac.compare_digest(api_key.encode(), expected_key.encode()):
        logger.warning("Rejected request with a non-matching API key")
        raise _unauthorized("Invalid API key")
