"""Account & session API endpoints."""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlmodel import Session

from server.api.deps import get_current_user
from server.config import Settings
from server.database import get_session, get_settings
from server.models.user import User
from server.schemas.auth import LoginRequest, SessionResponse, SignupRequest, UserProfileResponse
from server.services.auth_service import login, signup
from server.services.errors import AccountError
from server.utils.security import as_utc

router = APIRouter(tags=["auth"])


@router.post("/auth/signup", response_model=SessionResponse, status_code=201)
def create_account(
    request: SignupRequest,
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
):
    """Create a web account and return a session token."""
    try:
        result = signup(request.email, request.password, request.name, session, settings)
    except AccountError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": e.code, "message": e.message},
        )
    return SessionResponse(**result)


@router.post("/auth/login", response_model=SessionResponse)
def open_session(
    request: LoginRequest,
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
):
    """Exchange email + password for a session token."""
    try:
        result = login(request.email, request.password, session, settings)
    except AccountError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": e.code, "message": e.message},
        )
    return SessionResponse(**result)


@router.get("/users/me", response_model=UserProfileResponse)
def get_my_profile(user: User = Depends(get_current_user)):
    """Get current user's profile."""
    return UserProfileResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        role=user.role,
        created_at=as_utc(user.created_at).isoformat(),
    )
