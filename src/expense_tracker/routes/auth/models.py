from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class LoginRequest(BaseModel):
    firebaseIdToken: str = Field(..., min_length=1, description="ID token returned by Firebase sign-in")


class RefreshRequest(BaseModel):
    refreshToken: str = Field(..., min_length=1)


class TokenResponse(BaseModel):
    accessToken: str
    refreshToken: str
    tokenType: str = "Bearer"
    expiresIn: int
    user: Dict[str, Any]


class ValidateResponse(BaseModel):
    valid: bool
    userId: Optional[str] = None
    expiresIn: int = 0


class MessageResponse(BaseModel):
    message: str
