"""Email notifier: one message per alert batch to every configured address."""

from __future__ import annotations

import dataclasses
import functools
import logging

import config
from config import ConfigError, EmailConfig, EmailReceiver, Options
from dispatch import DeliveryError, DeliveryTask, fan_out
from models import Alert, AlertBatch
from notifiers import Notifier
from subject import synthesize_subject
from templates import TemplateSet, from_globs, parse_external_url
from transports import Transport, TransportAlert, create_transport

log = logging.getLogger(__name__)

KIND = "email"

DEFAULT_SEND_TIMEOUT = 3.0  # seconds


def clone_config(base: EmailConfig | None) -> EmailConfig | None:
    """Copy *base* without its destination and Subject header.

    The header map is always a new dict. TLS settings and credentials are
    immutable and stay shared.
    """
    if base is None:
        return None
    headers = None
    if base.headers is not None:
        headers = {k: v for k, v in base.headers.items() if k.lower() != "subject"}
    return dataclasses.replace(base, to="", headers=headers)


def to_transport_alert(alert: Alert) -> TransportAlert:
    return TransportAlert(
        labels=dict(alert.labels),
        annotations=dict(alert.annotations),
        starts_at=alert.starts_at,
        ends_at=alert.ends_at,
        generator_url=alert.generator_url,
        status=alert.status,
    )


class EmailNotifier(Notifier):
    """Send alert batches via email.

    Recipients are fixed at construction. Each delivery works on its own
    clone of the base config, so recipients may be sent in parallel.
    """

    def __init__(
        self,
        receiver: EmailReceiver,
        templates: TemplateSet,
        options: Options | None = None,
        transport: Transport | None = None,
        logger: logging.Logger | None = None,
    ):
        self.log = logger or log
        self.name = receiver.name
        self.to = tuple(receiver.to)

        self.config = clone_config(receiver.email_config)
        if self.config is None:
            raise ConfigError(f"Error: receiver '{receiver.name}' has an empty email config")
        if self.config.headers is None:
            self.config.headers = {}

        templates.require(self.config.html)
        if self.config.text:
            templates.require(self.config.text)
        self.templates = templates

        self.timeout = DEFAULT_SEND_TIMEOUT
        self.max_workers = 1
        if options is not None:
            override = options.timeout_for(KIND)
            if override is not None:
                self.timeout = float(override)
            self.max_workers = options.max_workers

        self.transport = transport or create_transport("smtp", templates=templates)

    def recipient_config(self, to: str, subject: str) -> EmailConfig:
        cfg = clone_config(self.config)
        cfg.to = to
        cfg.headers["Subject"] = subject
        return cfg

    def notify(self, batches: list[AlertBatch]) -> list[DeliveryError]:
        errors: list[DeliveryError] = []
        for batch in batches:
            errors.extend(self._notify_batch(batch))
        return errors

    def _notify_batch(self, batch: AlertBatch) -> list[DeliveryError]:
        subject = synthesize_subject(batch)
        alerts = [to_transport_alert(a) for a in batch.alerts]
        context = {
            "receiver": batch.receiver,
            "status": "firing" if batch.firing() else "resolved",
            "subject": subject,
            "alerts": alerts,
            "group_labels": dict(batch.group_labels),
            "common_labels": dict(batch.common_labels),
            "common_annotations": dict(batch.common_annotations),
            "external_url": parse_external_url(batch.external_url),
        }

        tasks = [DeliveryTask(recipient=to, subject=subject) for to in self.to]
        send = functools.partial(self._send, context, alerts)
        errors = fan_out(tasks, send, self.timeout, self.max_workers)

        for err in errors:
            self.log.error(
                "Notifier: email notify error subject=%r address=%s error=%s",
                err.subject, err.recipient, err.reason,
            )
        return errors

    def _send(
        self, context: dict, alerts: list[TransportAlert], task: DeliveryTask, deadline: float
    ) -> None:
        # The recipient config lives only for this one transport call.
        cfg = self.recipient_config(task.recipient, task.subject)
        self.transport.deliver(cfg, context, alerts, deadline)
        self.log.debug("Notifier: sent email to %s", task.recipient)


def create(
    logger: logging.Logger, receiver, options: Options | None = None
) -> EmailNotifier | None:
    """Build an EmailNotifier from an EmailReceiver or a resolved receiver config dict.

    Returns None (after logging the reason once) when the receiver is unusable.
    """
    try:
        if isinstance(receiver, dict):
            receiver = config.get_email_receiver(receiver.get("name", ""), receiver)
        if not isinstance(receiver, EmailReceiver):
            raise ConfigError(
                f"Error: email notifier expects an email receiver, got {type(receiver).__name__}"
            )
        templates = from_globs(*(options.templates if options else []))
        return EmailNotifier(receiver, templates, options, logger=logger)
    except ConfigError as exc:
        logger.error("Notifier: %s", exc)
        return None
