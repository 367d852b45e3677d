from typing import Optional

from pydantic import BaseModel, Field, model_validator


class SendJoinRequest(BaseModel):
    familyId: Optional[str] = None
    aliasName: Optional[str] = None
    message: Optional[str] = Field(None, max_length=500)

    @model_validator(mode="after")
    def require_target(self):
        if not self.familyId and not self.aliasName:
            raise ValueError("Either familyId or aliasName is required")
        return self


class JoinRequestReference(BaseModel):
    aliasName: Optional[str] = None
    requestId: Optional[str] = None
    message: Optional[str] = Field(None, max_length=500)

    @model_validator(mode="after")
    def require_reference(self):
        if not self.aliasName and not self.requestId:
            raise ValueError("Either aliasName or requestId is required")
        return self
