"""
Transactional email templates.

Each EmailType has a subject and an HTML body built from its data model
(models.schemas). String values are HTML-escaped before they reach a template,
and every body is wrapped in the shared layout carrying the organization name.
"""
from __future__ import annotations

import html
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Union

from pydantic import BaseModel

from models.schemas import EMAIL_TEMPLATE_DATA, EmailType

DEFAULT_ORG_NAME = "CRM"


def escape_html(value: str) -> str:
    """Escape &, <, >, " and ' so user data can't inject markup."""
    return html.escape(value, quote=True)


def escape_template_data(data: dict[str, Any]) -> dict[str, Any]:
    return {k: escape_html(v) if isinstance(v, str) else v for k, v in data.items()}


def wrap_with_layout(content: str, org_name: Optional[str] = None) -> str:
    safe_org_name = escape_html(org_name or DEFAULT_ORG_NAME)
    year = datetime.now(timezone.utc).year
    return f"""
<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <style>
    body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto; padding: 20px; }}
    .header {{ border-bottom: 2px solid #2563eb; padding-bottom: 20px; margin-bottom: 30px; }}
    .header h1 {{ color: #2563eb; margin: 0; font-size: 24px; }}
    .content {{ margin-bottom: 30px; }}
    .button {{ display: inline-block; padding: 12px 24px; background: #2563eb; color: #fff !important; text-decoration: none; border-radius: 6px; font-weight: 500; }}
    .footer {{ border-top: 1px solid #e5e7eb; padding-top: 20px; font-size: 12px; color: #6b7280; }}
  </style>
</head>
<body>
  <div class="header"><h1>{safe_org_name}</h1></div>
  <div class="content">{content}</div>
  <div class="footer">
    <p>This is an automated message. Please do not reply directly.</p>
    <p>&copy; {year} {safe_org_name}. All rights reserved.</p>
  </div>
</body>
</html>"""


def _button(url: str, label: str) -> str:
    return f'<p style="margin:30px 0"><a href="{url}" class="button">{label}</a></p>'


@dataclass(frozen=True)
class EmailTemplate:
    subject: Callable[[dict[str, Any]], str]
    body: Callable[[dict[str, Any]], str]


# ──────────────────────────────────────────────────────────────
#  Template definitions
# ──────────────────────────────────────────────────────────────

def _password_changed(d: dict[str, Any]) -> str:
    origin = f" from {d['ip_address']}" if d.get("ip_address") else ""
    return (
        "<h2>Password Changed</h2>"
        f"<p>Hi {d['first_name']},</p>"
        f"<p>Your password was changed on {d['changed_at']}{origin}.</p>"
        "<p>If this wasn't you, contact your administrator immediately.</p>"
    )


def _account_locked(d: dict[str, Any]) -> str:
    unlock = f"<p>Auto-unlock: {d['unlock_at']}</p>" if d.get("unlock_at") else ""
    return (
        "<h2>Account Locked</h2>"
        f"<p>Hi {d['first_name']},</p>"
        f"<p>Your account was locked: <strong>{d['lock_reason']}</strong></p>"
        f"{unlock}"
        f"<p>Contact <a href=\"mailto:{d['support_email']}\">{d['support_email']}</a> for help.</p>"
    )


TEMPLATES: dict[EmailType, EmailTemplate] = {
    EmailType.WELCOME: EmailTemplate(
        subject=lambda d: f"Welcome to {d['organization_name']}!",
        body=lambda d: (
            f"<h2>Welcome, {d['first_name']}!</h2>"
            f"<p>Your account at <strong>{d['organization_name']}</strong> is ready.</p>"
            + _button(d["login_url"], "Log In")
        ),
    ),
    EmailType.PASSWORD_RESET: EmailTemplate(
        subject=lambda d: "Reset Your Password",
        body=lambda d: (
            "<h2>Password Reset</h2>"
            f"<p>Hi {d['first_name']},</p>"
            f"<p>Click below to reset your password. Link expires in {d['expires_in_hours']} hours.</p>"
            + _button(d["reset_url"], "Reset Password")
            + "<p>If you didn't request this, ignore this email.</p>"
        ),
    ),
    EmailType.PASSWORD_CHANGED: EmailTemplate(
        subject=lambda d: "Password Changed",
        body=_password_changed,
    ),
    EmailType.INVITATION: EmailTemplate(
        subject=lambda d: f"Join {d['organization_name']}",
        body=lambda d: (
            "<h2>You're Invited!</h2>"
            f"<p><strong>{d['inviter_name']}</strong> invited you to "
            f"<strong>{d['organization_name']}</strong> as <strong>{d['role_name']}</strong>.</p>"
            + _button(d["invite_url"], "Accept Invitation")
            + f"<p>Expires in {d['expires_in_days']} days.</p>"
        ),
    ),
    EmailType.INVITATION_ACCEPTED: EmailTemplate(
        subject=lambda d: f"{d['invitee_name']} joined {d['organization_name']}",
        body=lambda d: (
            "<h2>Invitation Accepted</h2>"
            f"<p>Hi {d['inviter_first_name']},</p>"
            f"<p><strong>{d['invitee_email']}</strong> ({d['invitee_name']}) has joined "
            f"<strong>{d['organization_name']}</strong>.</p>"
        ),
    ),
    EmailType.EMAIL_VERIFICATION: EmailTemplate(
        subject=lambda d: "Verify Your Email",
        body=lambda d: (
            "<h2>Verify Email</h2>"
            f"<p>Hi {d['first_name']},</p>"
            + _button(d["verify_url"], "Verify Email")
            + f"<p>Link expires in {d['expires_in_hours']} hours.</p>"
        ),
    ),
    EmailType.ACCOUNT_LOCKED: EmailTemplate(
        subject=lambda d: "Account Locked",
        body=_account_locked,
    ),
    EmailType.ACCOUNT_DEACTIVATED: EmailTemplate(
        subject=lambda d: f"{d['organization_name']} account deactivated",
        body=lambda d: (
            "<h2>Account Deactivated</h2>"
            f"<p>Hi {d['first_name']},</p>"
            f"<p>Your account at <strong>{d['organization_name']}</strong> has been deactivated.</p>"
            f"<p>Contact <a href=\"mailto:{d['support_email']}\">{d['support_email']}</a> for help.</p>"
        ),
    ),
    EmailType.LOGIN_FROM_NEW_DEVICE: EmailTemplate(
        subject=lambda d: "New Login Detected",
        body=lambda d: (
            "<h2>New Login</h2>"
            f"<p>Hi {d['first_name']},</p>"
            "<p>New login detected:</p>"
            f"<ul><li>Device: {d['device_info']}</li><li>IP: {d['ip_address']}</li>"
            f"<li>Time: {d['login_time']}</li></ul>"
            "<p>If this wasn't you:</p>"
            + _button(d["security_url"], "Secure Account")
        ),
    ),
}


def render_template(
    email_type: Union[EmailType, str],
    data: Union[BaseModel, dict[str, Any]],
    org_name: Optional[str] = None,
) -> tuple[str, str]:
    """Returns (subject, html) for a template, validating and escaping its data."""
    email_type = EmailType(email_type)
    model_type = EMAIL_TEMPLATE_DATA[email_type]
    model = data if isinstance(data, model_type) else model_type.model_validate(
        data.model_dump() if isinstance(data, BaseModel) else data
    )
    safe = escape_template_data(model.model_dump())
    template = TEMPLATES[email_type]
    return template.subject(safe), wrap_with_layout(template.body(safe), org_name)
