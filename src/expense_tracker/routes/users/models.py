from typing import Optional

from pydantic import BaseModel, Field


class UpdateProfileRequest(BaseModel):
    name: Optional[str] = Field(None, max_length=100)
    profilePic: Optional[str] = None
    profilePicLow: Optional[str] = None
    currencyPreference: Optional[str] = Field(None, description="Currency symbol or ISO code")


class RegisterDeviceRequest(BaseModel):
    fcmToken: str = Field(..., min_length=1)
    deviceName: Optional[str] = None
    deviceType: Optional[str] = None


class RemoveDeviceRequest(BaseModel):
    fcmToken: str = Field(..., min_length=1)


class OnboardingRequest(BaseModel):
    completed: bool = True
