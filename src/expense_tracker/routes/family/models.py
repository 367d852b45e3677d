from typing import Optional

from pydantic import BaseModel, Field


class CreateFamilyRequest(BaseModel):
    name: str = Field(..., description="2-100 characters: letters, digits, spaces, hyphens, underscores")


class AliasRequest(BaseModel):
    aliasName: str = Field(..., description="6 character family join code")


class RequestJoinRequest(BaseModel):
    aliasName: str
    message: Optional[str] = Field(None, max_length=500)


class EmailRequest(BaseModel):
    email: str


class RemoveMemberRequest(BaseModel):
    memberEmail: str


class JoinRequestDecision(BaseModel):
    """Identify a join request by requester id or by request id."""

    requesterId: Optional[str] = None
    requestId: Optional[str] = None


class UpdateFamilyNameRequest(BaseModel):
    name: str
