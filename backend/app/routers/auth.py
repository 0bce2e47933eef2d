"""Authentication endpoints for administrator access."""

from __future__ import annotations

import logging

from fastapi import APIRouter

from .. import schemas
from ..security import authenticate_admin, create_access_token

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/token", response_model=schemas.TokenResponse)
def obtain_access_token(payload: schemas.AdminLoginRequest) -> schemas.TokenResponse:
    """Exchange admin credentials for a bearer token."""

    identity = authenticate_admin(payload.username, payload.password)
    LOGGER.info("Issued access token for %s", identity.username)
    return schemas.TokenResponse(access_token=create_access_token(identity))
