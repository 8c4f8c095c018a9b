from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# --- Auth Schemas ---
class LoginRequest(BaseModel):
    username: str = ""
    password: str = ""
    csrf_token: Optional[str] = None
    recaptcha_token: Optional[str] = None


class SessionCheckRequest(BaseModel):
    refresh: bool = False


class RecaptchaInfo(BaseModel):
    enabled: bool
    site_key: Optional[str] = None
    required: bool = False


class LoginStatusResponse(BaseModel):
    success: bool = True
    authenticated: bool
    user: Optional[str] = None
    role: Optional[str] = None
    csrf_token: str
    recaptcha: RecaptchaInfo


class LoginResponse(BaseModel):
    success: bool = True
    message: str
    user: str
    role: str
    new_csrf_token: str
    attempts_window: int


class SessionCheckResponse(BaseModel):
    success: bool = True
    authenticated: bool = True
    user: str
    role: str
    idle_remaining: int
    absolute_remaining: int


# --- User Schemas ---
class UserCreate(BaseModel):
    username: str
    password: str
    role: str = "user"


class UserResponse(BaseModel):
    id: int
    username: str
    role: str
    is_active: bool
    created_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class PasswordChangeRequest(BaseModel):
    current_password: str
    new_password: str


class PasswordResetRequest(BaseModel):
    new_password: str


class RoleUpdateRequest(BaseModel):
    role: str


# --- Audit Schemas ---
class AuditEntry(BaseModel):
    id: int
    timestamp: Optional[str] = None
    actor: str
    action: str
    target: Optional[str] = None
    ip: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    severity: str
    success: bool


class AuditPage(BaseModel):
    items: List[AuditEntry]
    page: int
    per_page: int
    total: int
    total_pages: int


class AuditRotateRequest(BaseModel):
    retention_months: int = Field(6, ge=1, le=24)
    batch_size: int = Field(1000, ge=100, le=10000)
    dry_run: bool = False
