from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class RegisterRequest(BaseModel):
    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    password: str = Field(min_length=8, max_length=128)
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(default="", max_length=100)


class LoginRequest(BaseModel):
    email: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class UserResponse(BaseModel):
    id: int
    email: str
    first_name: str
    last_name: str
    subscription_plan: str
    subscription_status: str
    email_verified: bool
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class AdminLoginRequest(BaseModel):
    email: str
    password: str
    twoFactorToken: str | None = None
    rememberMe: bool = False


class TwoFactorTokenRequest(BaseModel):
    token: str = Field(min_length=6, max_length=8)


class TwoFactorDisableRequest(BaseModel):
    password: str
    token: str = Field(min_length=6, max_length=8)


class ChangePasswordRequest(BaseModel):
    currentPassword: str
    newPassword: str = Field(min_length=8, max_length=128)


class CreateAdminUserRequest(BaseModel):
    email: str
    password: str = Field(min_length=8, max_length=128)
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(default="", max_length=100)
    role: Literal["super_admin", "admin", "manager", "support", "analyst"]
    department: str | None = None
    permissions: list[str] = Field(default_factory=list)
