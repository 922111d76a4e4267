"""
Auth Endpoints

Login from an identity-provider profile, session verification and logout.
"""

import logging
from typing import Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from backend.core.security.session import (
    SessionService,
    get_bearer_token,
    get_current_session,
    get_session_service,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


class LoginRequest(BaseModel):
    """Profile received from the identity provider."""
    external_id: str = Field(alias='externalId', min_length=1)
    email: str = Field(min_length=3)
    name: Optional[str] = None
    picture: Optional[str] = None
    verified: bool = False

    model_config = {'populate_by_name': True}


@router.post("/login")
async def login(
    request: LoginRequest,
    service: SessionService = Depends(get_session_service),
) -> Dict:
    """Create or update the user and issue a session token."""
    return await service.login(request.model_dump(by_alias=True))


@router.post("/verify")
async def verify(session: Dict = Depends(get_current_session)) -> Dict:
    """Check the bearer token; a refresh is flagged with X-Session-Refreshed."""
    return session


@router.post("/logout")
async def logout(
    token: str = Depends(get_bearer_token),
    service: SessionService = Depends(get_session_service),
) -> Dict:
    return await service.logout(token)
