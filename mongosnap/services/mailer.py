from datetime import datetime, timezone
import logging

from fastapi_mail import ConnectionConfig, FastMail, MessageSchema, MessageType
from pydantic import EmailStr

from mongosnap.core.config import (
    FRONTEND_URL,
    MAIL_FROM,
    MAIL_FROM_NAME,
    MAIL_PASSWORD,
    MAIL_PORT,
    MAIL_SERVER,
    MAIL_USERNAME,
)

logger = logging.getLogger(__name__)

conf = ConnectionConfig(
    MAIL_USERNAME=MAIL_USERNAME,
    MAIL_PASSWORD=MAIL_PASSWORD,
    MAIL_FROM=MAIL_FROM,
    MAIL_PORT=MAIL_PORT,
    MAIL_SERVER=MAIL_SERVER,
    MAIL_FROM_NAME=MAIL_FROM_NAME,
    MAIL_STARTTLS=True,
    MAIL_SSL_TLS=False,
    USE_CREDENTIALS=True,
    VALIDATE_CERTS=True,
)


async def send_email_background(subject: str, email_to: EmailStr, body: str):
    message = MessageSchema(
        subject=subject,
        recipients=[email_to],
        body=body,
        subtype=MessageType.html,
    )
    fm = FastMail(conf)
    try:
        await fm.send_message(message)
    except Exception:
        logger.exception("Failed to send '%s' email", subject)
        raise


def _layout(title: str, content: str) -> str:
    year = datetime.now(timezone.utc).year
    return f"""
      <html>
        <body style="font-family: Arial, sans-serif; background-color: #101813; padding: 20px;">
          <div style="max-width: 500px; margin: auto; background: white; border-radius: 10px; padding: 25px; box-shadow: 0 2px 8px rgba(0,0,0,0.1);">
            <h2 style="color: #2c3e50; text-align: center;">{title}</h2>
            {content}
            <hr style="border: none; border-top: 1px solid #eee; margin: 20px 0;">
            <p style="font-size: 12px; color: #888; text-align: center;">
              &copy; {year} MongoSnap. All rights reserved.
            </p>
          </div>
        </body>
      </html>
      """


def _button(url: str, label: str) -> str:
    return f"""
            <div style="text-align: center; margin: 25px 0;">
              <a href="{url}" style="display: inline-block; background: #3CBC6B; color: white; font-weight: bold; padding: 12px 25px; border-radius: 8px; text-decoration: none;">
                {label}
              </a>
            </div>"""


def verification_email(name: str, token: str) -> str:
    url = f"{FRONTEND_URL}/verify-email?token={token}"
    return _layout("Verify your email", f"""
            <p style="font-size: 15px; color: #333;">Hello {name},<br><br>
              Thanks for signing up for MongoSnap. Confirm your email address to get started.
            </p>{_button(url, "Verify Email")}""")


def password_reset_email(name: str, token: str) -> str:
    url = f"{FRONTEND_URL}/reset-password?token={token}"
    return _layout("Password Reset Request", f"""
            <p style="font-size: 15px; color: #333;">Hello {name},<br><br>
              You recently requested to reset your password. Use the button below to choose a new one.
            </p>{_button(url, "Reset Password")}
            <p style="font-size: 14px; color: #555;">If you didn't request this, you can safely ignore this email.</p>""")


def two_factor_code_email(name: str, code: str) -> str:
    return _layout("Your verification code", f"""
            <p style="font-size: 15px; color: #333;">Hello {name},<br><br>
              Use the code below to finish signing in:
            </p>
            <div style="text-align: center; margin: 25px 0;">
              <span style="display: inline-block; background: #3CBC6B; color: white; font-size: 22px; font-weight: bold; letter-spacing: 3px; padding: 12px 25px; border-radius: 8px;">
                {code}
              </span>
            </div>
            <p style="font-size: 14px; color: #555;">This code will expire in <b>10 minutes</b>.</p>""")


def two_factor_status_email(name: str, enabled: bool, method: str = "email") -> str:
    state = "enabled" if enabled else "disabled"
    return _layout(f"Two-factor authentication {state}", f"""
            <p style="font-size: 15px; color: #333;">Hello {name},<br><br>
              Two-factor authentication ({method}) was {state} on your MongoSnap account.
              If this wasn't you, reset your password immediately.
            </p>""")


def login_notification_email(name: str, device: dict) -> str:
    when = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")
    return _layout("New sign-in to your account", f"""
            <p style="font-size: 15px; color: #333;">Hello {name},<br><br>
              We noticed a new sign-in to your MongoSnap account.
            </p>
            <ul style="font-size: 14px; color: #555;">
              <li>Time: {when}</li>
              <li>IP address: {device.get("ip_address", "Unknown")}</li>
              <li>Device: {device.get("user_agent", "Unknown")}</li>
            </ul>
            <p style="font-size: 14px; color: #555;">If this wasn't you, revoke your sessions and change your password.</p>""")
