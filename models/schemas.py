"""
Transactional email data models.
Every template has a typed data model; EMAIL_TEMPLATE_DATA maps each EmailType
to the model its template renders.
"""
from __future__ import annotations

from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, Field


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class EmailType(str, Enum):
    WELCOME = "welcome"
    PASSWORD_RESET = "password_reset"
    PASSWORD_CHANGED = "password_changed"
    INVITATION = "invitation"
    INVITATION_ACCEPTED = "invitation_accepted"
    EMAIL_VERIFICATION = "email_verification"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_DEACTIVATED = "account_deactivated"
    LOGIN_FROM_NEW_DEVICE = "login_from_new_device"


# ──────────────────────────────────────────────────────────────
#  Template data
# ──────────────────────────────────────────────────────────────

class WelcomeData(BaseModel):
    first_name: str
    organization_name: str
    login_url: str


class PasswordResetData(BaseModel):
    first_name: str
    reset_url: str
    expires_in_hours: int = 1


class PasswordChangedData(BaseModel):
    first_name: str
    changed_at: str
    ip_address: Optional[str] = None


class InvitationData(BaseModel):
    inviter_name: str
    organization_name: str
    invite_url: str
    expires_in_days: int = 7
    role_name: str


class InvitationAcceptedData(BaseModel):
    inviter_first_name: str
    invitee_email: str
    invitee_name: str
    organization_name: str


class EmailVerificationData(BaseModel):
    first_name: str
    verify_url: str
    expires_in_hours: int = 24


class AccountLockedData(BaseModel):
    first_name: str
    lock_reason: str
    unlock_at: Optional[str] = None
    support_email: str


class AccountDeactivatedData(BaseModel):
    first_name: str
    organization_name: str
    support_email: str


class LoginFromNewDeviceData(BaseModel):
    first_name: str
    device_info: str
    ip_address: str
    login_time: str
    security_url: str


TemplateData = Union[
    WelcomeData,
    PasswordResetData,
    PasswordChangedData,
    InvitationData,
    InvitationAcceptedData,
    EmailVerificationData,
    AccountLockedData,
    AccountDeactivatedData,
    LoginFromNewDeviceData,
]

EMAIL_TEMPLATE_DATA: dict[EmailType, type[BaseModel]] = {
    EmailType.WELCOME: WelcomeData,
    EmailType.PASSWORD_RESET: PasswordResetData,
    EmailType.PASSWORD_CHANGED: PasswordChangedData,
    EmailType.INVITATION: InvitationData,
    EmailType.INVITATION_ACCEPTED: InvitationAcceptedData,
    EmailType.EMAIL_VERIFICATION: EmailVerificationData,
    EmailType.ACCOUNT_LOCKED: AccountLockedData,
    EmailType.ACCOUNT_DEACTIVATED: AccountDeactivatedData,
    EmailType.LOGIN_FROM_NEW_DEVICE: LoginFromNewDeviceData,
}


# ──────────────────────────────────────────────────────────────
#  Queue payloads
# ──────────────────────────────────────────────────────────────

class EmailJob(BaseModel):
    """Payload of a job on the "email" queue: render `type` with `data`, send to `to`."""
    type: EmailType
    to: str
    data: dict = Field(default_factory=dict)
    org_name: Optional[str] = None

    def template_data(self) -> BaseModel:
        return EMAIL_TEMPLATE_DATA[self.type].model_validate(self.data)
