"""Account and session request/response schemas."""

from typing import Optional

from pydantic import Field

from server.schemas.base import CamelModel


class SignupRequest(CamelModel):
    email: str = Field(min_length=3, max_length=254)
    password: str = Field(min_length=8, max_length=72)  # bcrypt limit
    name: Optional[str] = None


class LoginRequest(CamelModel):
    email: str
    password: str = Field(max_length=72)


class SessionResponse(CamelModel):
    user_id: str
    session_token: str
    role: str


class UserProfileResponse(CamelModel):
    id: str
    email: str
    name: Optional[str]
    role: str
    created_at: str
