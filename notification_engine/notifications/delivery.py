"""Delivery pipeline: render, log, send, and record the outcome per recipient."""

import logging
import uuid
from dataclasses import dataclass, field

from ..clock import utcnow
from ..portal.sources import Recipient, RecipientDirectory
from .exceptions import TransportError, TransportFailure
from .log_store import NotificationLogStore
from .models import DeliveryStatus, NotificationKind, TargetType
from .templates import RenderedMessage, TemplateRenderer
from .transport import Transport

logger = logging.getLogger(__name__)


@dataclass
class DeliveryOutcome:
    recipient_email: str
    status: DeliveryStatus
    log_id: uuid.UUID
    error: str | None = None

    def as_dict(self) -> dict:
        return {
            "email": self.recipient_email,
            "status": self.status.value,
            "log_id": str(self.log_id),
            "error": self.error,
        }


@dataclass
class DeliveryReport:
    kind: NotificationKind
    target_id: str
    target_type: TargetType
    outcomes: list[DeliveryOutcome] = field(default_factory=list)

    @property
    def sent(self) -> int:
        return sum(1 for o in self.outcomes if o.status is DeliveryStatus.SENT)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if o.status is DeliveryStatus.FAILED)

    @property
    def failures(self) -> list[TransportFailure]:
        return [
            TransportFailure(o.recipient_email, o.error or "")
            for o in self.outcomes
            if o.status is DeliveryStatus.FAILED
        ]

    @property
    def ok(self) -> bool:
        """False only when recipients were attempted and every one of them failed."""
        return not (self.outcomes and self.sent == 0)

    def as_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "target_id": self.target_id,
            "target_type": self.target_type.value,
            "total": len(self.outcomes),
            "sent": self.sent,
            "failed": self.failed,
            "results": [o.as_dict() for o in self.outcomes],
        }


class DeliveryPipeline:
    def __init__(
        self,
        directory: RecipientDirectory,
        log_store: NotificationLogStore,
        transport: Transport,
        renderer: TemplateRenderer,
    ) -> None:
        self.directory = directory
        self.log_store = log_store
        self.transport = transport
        self.renderer = renderer

    def deliver(
        self,
        kind: NotificationKind,
        payload: dict,
        target_id: str,
        target_type: TargetType,
    ) -> DeliveryReport:
        """Broadcast to every directory recipient.

        Raises DirectoryUnavailable or TemplateRenderError before any log row is
        written; transport failures are isolated per recipient.
        """
        kind = NotificationKind(kind)
        target_type = TargetType(target_type)
        if not kind.is_broadcast:
            raise ValueError(f"{kind} is addressed to a single recipient; use deliver_to()")

        recipients = self.directory.list_recipients()
        report = DeliveryReport(kind=kind, target_id=str(target_id), target_type=target_type)
        if not recipients:
            logger.warning("No recipients in directory, %s for %s %s not sent", kind, target_type, target_id)
            return report

        # Render everything up front so a template error leaves no pending rows.
        rendered = [(r, self.renderer.render(kind, payload, recipient_name=r.display_name)) for r in recipients]
        logger.info("Delivering %s for %s %s to %d recipients", kind, target_type, target_id, len(recipients))

        for recipient, message in rendered:
            report.outcomes.append(self._attempt(kind, str(target_id), target_type, recipient, message))

        logger.info(
            "Delivery of %s for %s %s finished: %d sent, %d failed",
            kind, target_type, target_id, report.sent, report.failed,
        )
        return report

    def deliver_to(
        self,
        kind: NotificationKind,
        payload: dict,
        target_id: str,
        target_type: TargetType,
        recipient: Recipient,
    ) -> DeliveryOutcome:
        kind = NotificationKind(kind)
        target_type = TargetType(target_type)
        message = self.renderer.render(kind, payload, recipient_name=recipient.display_name)
        return self._attempt(kind, str(target_id), target_type, recipient, message)

    def _attempt(
        self,
        kind: NotificationKind,
        target_id: str,
        target_type: TargetType,
        recipient: Recipient,
        message: RenderedMessage,
    ) -> DeliveryOutcome:
        log_id = self.log_store.create_pending(kind, target_id, target_type, recipient.email, message.subject)
        try:
            self.transport.send(recipient.email, message.subject, message.html_body)
        except TransportError as exc:
            error = str(exc) or exc.__class__.__name__
            logger.warning("Failed to send %s to %s: %s", kind, recipient.email, error)
            self.log_store.mark_failed(log_id, error)
            return DeliveryOutcome(recipient.email, DeliveryStatus.FAILED, log_id, error)
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            logger.exception("Unexpected error sending %s to %s", kind, recipient.email)
            self.log_store.mark_failed(log_id, error)
            return DeliveryOutcome(recipient.email, DeliveryStatus.FAILED, log_id, error)

        self.log_store.mark_sent(log_id, utcnow())
        logger.debug("Sent %s to %s", kind, recipient.email)
        return DeliveryOutcome(recipient.email, DeliveryStatus.SENT, log_id)
