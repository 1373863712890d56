from dataclasses import dataclass, field
from email.message import EmailMessage
from pathlib import Path
import smtplib
from typing import Literal, Protocol

from isp_billing.core.config import settings

EmailDeliveryStatus = Literal["sent", "not_configured", "failed"]


@dataclass(frozen=True)
class EmailDeliveryResult:
    status: EmailDeliveryStatus
    detail: str | None = None

    @property
    def delivered(self) -> bool:
        return self.status == "sent"


@dataclass(frozen=True)
class OutgoingDocument:
    recipient_email: str
    subject: str
    body_html: str
    attachment_path: str | None = None


class DocumentSender(Protocol):
    name: str

    def send(self, document: OutgoingDocument) -> EmailDeliveryResult:
        ...


def _smtp_configured() -> bool:
    return bool(settings.smtp_host and settings.smtp_sender_email)


def _build_message(document: OutgoingDocument) -> EmailMessage:
    message = EmailMessage()
    message["Subject"] = document.subject
    message["From"] = settings.smtp_sender_email
    message["To"] = document.recipient_email
    if settings.smtp_reply_to_email:
        message["Reply-To"] = settings.smtp_reply_to_email
    message.set_content("This billing document is best viewed in an HTML capable mail client.")
    message.add_alternative(document.body_html, subtype="html")

    if document.attachment_path:
        attachment = Path(document.attachment_path)
        message.add_attachment(
            attachment.read_bytes(),
            maintype="application",
            subtype="pdf",
            filename=attachment.name,
        )
    return message


class SmtpDocumentSender:
    name = "smtp"

    def send(self, document: OutgoingDocument) -> EmailDeliveryResult:
        if not _smtp_configured():
            return EmailDeliveryResult(
                status="not_configured",
                detail="SMTP not configured",
            )

        try:
            message = _build_message(document)
            if settings.smtp_use_ssl:
                with smtplib.SMTP_SSL(
                    settings.smtp_host,
                    settings.smtp_port,
                    timeout=settings.smtp_timeout_seconds,
                ) as server:
                    if settings.smtp_username:
                        server.login(settings.smtp_username, settings.smtp_password or "")
                    server.send_message(message)
            else:
                with smtplib.SMTP(
                    settings.smtp_host,
                    settings.smtp_port,
                    timeout=settings.smtp_timeout_seconds,
                ) as server:
                    if settings.smtp_use_starttls:
                        server.starttls()
                    if settings.smtp_username:
                        server.login(settings.smtp_username, settings.smtp_password or "")
                    server.send_message(message)
        except Exception as exc:  # noqa: BLE001 - recorded on the queue entry
            return EmailDeliveryResult(status="failed", detail=str(exc))

        return EmailDeliveryResult(status="sent", detail=None)


@dataclass
class StubDocumentSender:
    """Accepts every document without sending anything. Used in dev and tests."""

    name: str = "stub"
    sent: list[OutgoingDocument] = field(default_factory=list)

    def send(self, document: OutgoingDocument) -> EmailDeliveryResult:
        self.sent.append(document)
        return EmailDeliveryResult(status="sent", detail=None)


_DOCUMENT_SENDERS: dict[str, type] = {
    "smtp": SmtpDocumentSender,
    "stub": StubDocumentSender,
}


def get_document_sender(name: str | None = None) -> DocumentSender:
    requested = settings.document_sender_provider if name is None else name
    normalized = (requested or "").strip().lower()
    sender_cls = _DOCUMENT_SENDERS.get(normalized)
    if not sender_cls:
        available = ", ".join(sorted(_DOCUMENT_SENDERS.keys()))
        raise ValueError(f"Unknown document sender '{requested}'. Available: {available}")
    return sender_cls()
