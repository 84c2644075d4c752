from __future__ import annotations

import logging
import smtplib
import ssl
from dataclasses import asdict, dataclass
from email.message import EmailMessage
from typing import Any, Dict, Mapping, Optional, Tuple

from export import EXPORT_MIMETYPE, export_delimited, export_filename
from reports import SavedReport

logger = logging.getLogger(__name__)

DEFAULT_SMTP_PORT = 587
SMTP_TIMEOUT_SECONDS = 30


class MailDeliveryError(Exception):
    """Raised when the SMTP server rejects or cannot take a report email."""


@dataclass(frozen=True)
class SmtpSettings:
    host: str
    port: int = DEFAULT_SMTP_PORT
    username: str = ""
    password: str = ""
    use_tls: bool = True
    from_email: str = ""
    recipient: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def prepare_smtp_settings(
    payload: Mapping[str, object],
    existing: Optional[SmtpSettings] = None,
    tls_default: Optional[bool] = None,
) -> Tuple[Optional[str], Optional[SmtpSettings]]:
    """Validate SMTP settings from a form or JSON body.

    A missing `use_tls` falls back to `tls_default`, or to the stored value
    (true for new settings) when that is None. Forms pass False because an
    unchecked checkbox is simply absent.
    """
    if not isinstance(payload, Mapping):
        return "Invalid payload.", None

    def _value(key: str, default: str = "") -> str:
        value = payload.get(key)
        if value is None or (isinstance(value, str) and value.strip() == ""):
            return default
        return value.strip() if isinstance(value, str) else str(value)

    host = _value("host")
    port_raw = _value("port", str(DEFAULT_SMTP_PORT))
    username = _value("username")
    # An empty password keeps the stored one so the form never echoes it.
    password = _value("password", existing.password if existing else "")
    from_email = _value("from_email")
    recipient = _value("recipient")
    if tls_default is None:
        tls_default = existing.use_tls if existing else True
    use_tls_raw = payload.get("use_tls", tls_default)
    if isinstance(use_tls_raw, str):
        use_tls = use_tls_raw.strip().lower() in {"1", "true", "on", "yes"}
    else:
        use_tls = bool(use_tls_raw)

    if not host or not username or not from_email or not recipient:
        return "Please fill in all required fields.", None
    try:
        port = int(port_raw)
    except ValueError:
        return "Port must be a number.", None
    if port <= 0:
        return "Port must be positive.", None

    return None, SmtpSettings(
        host=host,
        port=port,
        username=username,
        password=password,
        use_tls=use_tls,
        from_email=from_email,
        recipient=recipient,
    )


def build_report_message(report: SavedReport, settings: SmtpSettings) -> EmailMessage:
    msg = EmailMessage()
    msg["From"] = settings.from_email
    msg["To"] = settings.recipient
    msg["Subject"] = f"Arbeitsrapport: {report.name} - {report.period}"
    msg.set_content(
        "Sehr geehrte Damen und Herren,\n\n"
        f"Anbei finden Sie den Arbeitsrapport für {report.name} im Zeitraum {report.period}.\n\n"
        f"Mit freundlichen Grüßen,\n{report.name}"
    )
    maintype, _, subtype = EXPORT_MIMETYPE.partition("/")
    msg.add_attachment(
        export_delimited(report).encode("utf-8"),
        maintype=maintype,
        subtype=subtype,
        filename=export_filename(report),
    )
    return msg


def send_report(report: SavedReport, settings: SmtpSettings) -> None:
    """Email a report as a CSV attachment (SSL on 465, STARTTLS if requested)."""
    msg = build_report_message(report, settings)
    try:
        if settings.use_tls and settings.port == 465:
            context = ssl.create_default_context()
            with smtplib.SMTP_SSL(settings.host, settings.port, context=context, timeout=SMTP_TIMEOUT_SECONDS) as smtp:
                smtp.login(settings.username, settings.password)
                smtp.send_message(msg)
        else:
            with smtplib.SMTP(settings.host, settings.port, timeout=SMTP_TIMEOUT_SECONDS) as smtp:
                smtp.ehlo()
                if settings.use_tls:
                    smtp.starttls(context=ssl.create_default_context())
                    smtp.ehlo()
                smtp.login(settings.username, settings.password)
                smtp.send_message(msg)
    except (smtplib.SMTPException, OSError) as exc:
        raise MailDeliveryError(f"Could not send report {report.id} via {settings.host}:{settings.port}") from exc
    logger.info("Sent report %s to %s", report.id, settings.recipient)
