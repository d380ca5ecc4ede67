"""
FundLedger - FastAPI Dependencies

Shared dependencies for database sessions and the acting user.

Authentication is handled upstream; the gateway forwards the authenticated
user's id in the X-User-ID header. The id is recorded on created,
completed and approved records.
"""

import uuid
from typing import Optional

from fastapi import Header, HTTPException, status

from app.database import get_async_session, get_db  # noqa: F401


async def get_current_user_id(
    x_user_id: Optional[str] = Header(None, alias="X-User-ID"),
) -> Optional[uuid.UUID]:
    """
    Get the acting user's id from the X-User-ID header.

    Returns None when the header is absent.

    Raises:
        HTTPException: If the header is not a valid UUID
    """
    if not x_user_id:
        return None

    try:
        return uuid.UUID(x_user_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid X-User-ID header",
        )
