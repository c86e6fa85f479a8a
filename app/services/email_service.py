"""
Email Service — approval / acceptance link delivery.

Sends the client the secure link after a lifecycle transition has been
committed. When SMTP is not configured, emails are logged but not sent
(dev/test mode).

Uses:
    - Flask-Mail compatible config (MAIL_SERVER, MAIL_PORT, etc.)
    - Falls back to logging-only mode when SMTP is not configured
    - All emails are recorded in EmailLog for audit

Configuration (env vars):
    MAIL_SERVER     SMTP host (default: None → log-only mode)
    MAIL_PORT       SMTP port (default: 587)
    MAIL_USE_TLS    Use TLS (default: true)
    MAIL_USERNAME   SMTP username
    MAIL_PASSWORD   SMTP password
    MAIL_DEFAULT_SENDER  Default from address

Delivery is fire-and-forget: ``dispatch_link_email`` never raises, so a
mail outage cannot undo or fail the transition that triggered it.
"""

from __future__ import annotations

import logging
import smtplib
from datetime import datetime, timedelta, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any

from flask import current_app

from app.models import db
from app.models.notification import EmailLog

logger = logging.getLogger(__name__)

TEMPLATE_APPROVAL_REQUEST = "approval_request"
TEMPLATE_ACCEPTANCE_REQUEST = "acceptance_request"


# ═══════════════════════════════════════════════════════════════════════════
#  Email Templates
# ═══════════════════════════════════════════════════════════════════════════

_TEMPLATES: dict[str, dict[str, str]] = {
    TEMPLATE_APPROVAL_REQUEST: {
        "subject": "Please review and approve: {title}",
        "html": """
        <div style="font-family: 'Inter', Arial, sans-serif; max-width: 600px; margin: 0 auto;">
            <div style="background: #1e293b; color: white; padding: 16px 24px; border-radius: 8px 8px 0 0;">
                <h2 style="margin: 0; font-size: 18px;">{org_name}</h2>
            </div>
            <div style="background: #f8fafc; padding: 24px; border: 1px solid #e2e8f0; border-top: none;">
                <p style="color: #1e293b;">Hi {client_name},</p>
                <p style="color: #64748b; line-height: 1.6;">
                    <strong>{title}</strong> (version {version}) is ready for your approval.
                </p>
                <p><a href="{link}" style="background: #2563eb; color: white; padding: 10px 18px;
                      border-radius: 6px; text-decoration: none;">Review commitment</a></p>
                <p style="color: #94a3b8; font-size: 12px;">This link works once and expires on {expires}.</p>
            </div>
        </div>
        """,
    },
    TEMPLATE_ACCEPTANCE_REQUEST: {
        "subject": "Delivered: {title}. Please confirm acceptance",
        "html": """
        <div style="font-family: 'Inter', Arial, sans-serif; max-width: 600px; margin: 0 auto;">
            <div style="background: #1e293b; color: white; padding: 16px 24px; border-radius: 8px 8px 0 0;">
                <h2 style="margin: 0; font-size: 18px;">{org_name}</h2>
            </div>
            <div style="background: #f8fafc; padding: 24px; border: 1px solid #e2e8f0; border-top: none;">
                <p style="color: #1e293b;">Hi {client_name},</p>
                <p style="color: #64748b; line-height: 1.6;">
                    The work for <strong>{title}</strong> has been delivered.
                </p>
                <p><a href="{link}" style="background: #16a34a; color: white; padding: 10px 18px;
                      border-radius: 6px; text-decoration: none;">Confirm acceptance</a></p>
                <p style="color: #94a3b8; font-size: 12px;">This link works once and expires on {expires}.</p>
            </div>
        </div>
        """,
    },
}


class EmailService:
    """
    Email sending service with template support.

    In development/test mode (no MAIL_SERVER configured), emails are
    logged to the database but not actually sent via SMTP.
    """

    @staticmethod
    def is_configured() -> bool:
        return bool(current_app.config.get("MAIL_SERVER"))

    @staticmethod
    def get_template(template_name: str) -> dict[str, str] | None:
        return _TEMPLATES.get(template_name)

    @classmethod
    def send(
        cls,
        *,
        to_email: str,
        to_name: str | None = None,
        subject: str,
        html_body: str,
        template_name: str | None = None,
        org_id: int | None = None,
        commitment_id: int | None = None,
    ) -> EmailLog:
        """
        Send an email and log it.

        If SMTP is not configured, the email is logged with status='sent'
        (in dev mode) to simulate sending without actual delivery.
        """
        log = EmailLog(
            org_id=org_id,
            commitment_id=commitment_id,
            recipient_email=to_email,
            recipient_name=to_name,
            subject=subject,
            template_name=template_name,
            status="queued",
        )
        db.session.add(log)
        db.session.flush()

        if not cls.is_configured():
            log.status = "sent"
            log.sent_at = datetime.now(timezone.utc)
            logger.info(
                "Email (dev mode): to=%s subject='%s' template=%s",
                to_email, subject, template_name,
                extra={"org_id": org_id, "commitment_id": commitment_id},
            )
            return log

        try:
            cls._send_smtp(to_email=to_email, to_name=to_name,
                           subject=subject, html_body=html_body)
            log.status = "sent"
            log.sent_at = datetime.now(timezone.utc)
            logger.info("Email sent: to=%s subject='%s'", to_email, subject,
                        extra={"org_id": org_id, "commitment_id": commitment_id})
        except (smtplib.SMTPException, OSError) as exc:
            log.status = "failed"
            log.error_message = str(exc)[:1000]
            logger.error("Email failed: to=%s error=%s", to_email, exc,
                         extra={"org_id": org_id, "commitment_id": commitment_id})

        return log

    @classmethod
    def send_from_template(
        cls,
        *,
        to_email: str,
        to_name: str | None = None,
        template_name: str,
        context: dict[str, Any],
        org_id: int | None = None,
        commitment_id: int | None = None,
    ) -> EmailLog | None:
        """Send an email using a named template, interpolating ``context``."""
        template = cls.get_template(template_name)
        if not template:
            logger.warning("Email template not found: %s", template_name)
            return None

        subject = template["subject"].format_map(_SafeDict(context))
        html_body = template["html"].format_map(_SafeDict(context))

        return cls.send(
            to_email=to_email,
            to_name=to_name,
            subject=subject,
            html_body=html_body,
            template_name=template_name,
            org_id=org_id,
            commitment_id=commitment_id,
        )

    @staticmethod
    def _send_smtp(*, to_email: str, to_name: str | None,
                   subject: str, html_body: str) -> None:
        cfg = current_app.config
        server = cfg.get("MAIL_SERVER")
        port = cfg.get("MAIL_PORT", 587)
        use_tls = cfg.get("MAIL_USE_TLS", True)
        username = cfg.get("MAIL_USERNAME")
        password = cfg.get("MAIL_PASSWORD")
        sender = cfg.get("MAIL_DEFAULT_SENDER", f"noreply@{server}")

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = sender
        msg["To"] = f"{to_name} <{to_email}>" if to_name else to_email
        msg.attach(MIMEText(html_body, "html"))

        with smtplib.SMTP(server, port, timeout=30) as smtp:
            if use_tls:
                smtp.starttls()
            if username and password:
                smtp.login(username, password)
            smtp.send_message(msg)


class _SafeDict(dict):
    """Dict that returns {key} for missing keys instead of raising."""

    def __missing__(self, key):
        return f"{{{key}}}"


def dispatch_link_email(
    *,
    commitment,
    recipient: dict,
    template_name: str,
    link: str,
    org_name: str | None = None,
) -> EmailLog | None:
    """Email a secure link to the client after the transition was committed.

    Never raises: a failure to write the EmailLog is logged and rolled back.
    """
    if not recipient.get("email"):
        logger.warning(
            "No recipient email for %s", template_name,
            extra={"org_id": commitment.org_id, "commitment_id": commitment.id},
        )
        return None

    ttl = current_app.config.get("SECURE_LINK_TTL_HOURS", 168)
    expires = datetime.now(timezone.utc) + timedelta(hours=ttl)
    context = {
        "org_name": org_name or "Commitment Ledger",
        "client_name": recipient.get("name") or "there",
        "title": commitment.title,
        "version": commitment.version,
        "link": link,
        "expires": expires.strftime("%d %b %Y %H:%M UTC"),
    }
    try:
        log = EmailService.send_from_template(
            to_email=recipient["email"],
            to_name=recipient.get("name"),
            template_name=template_name,
            context=context,
            org_id=commitment.org_id,
            commitment_id=commitment.id,
        )
        db.session.commit()
        return log
    except Exception:
        db.session.rollback()
        logger.warning(
            "Email dispatch failed: %s", template_name,
            extra={"org_id": commitment.org_id, "commitment_id": commitment.id},
            exc_info=True,
        )
        return None
