"""SMTP transport using stdlib smtplib."""

from __future__ import annotations

import logging
import smtplib
import ssl
import time
from email.message import EmailMessage
from email.utils import formatdate, make_msgid

from config import EmailConfig, TLSConfig
from templates import TemplateSet

from . import Transport, TransportAlert

log = logging.getLogger(__name__)

# Port on which the server expects TLS from the first byte (no STARTTLS).
IMPLICIT_TLS_PORT = 465


def split_smarthost(smarthost: str) -> tuple[str, int]:
    """Split 'host:port' (or '[v6]:port'). The port defaults to 25."""
    host, sep, port = smarthost.rpartition(":")
    if not sep or "]" in port:
        return smarthost.strip("[]"), 25
    try:
        return host.strip("[]"), int(port)
    except ValueError as exc:
        raise ValueError(f"invalid smarthost port in '{smarthost}'") from exc


def build_ssl_context(tls: TLSConfig) -> ssl.SSLContext:
    context = ssl.create_default_context(cafile=tls.ca_file or None)
    if tls.cert_file:
        context.load_cert_chain(tls.cert_file, tls.key_file or None)
    if tls.insecure_skip_verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


class SMTPTransport(Transport):
    """Render the message body from templates and send it over SMTP."""

    def __init__(self, templates: TemplateSet):
        self.templates = templates

    def build_message(self, config: EmailConfig, context: dict) -> EmailMessage:
        msg = EmailMessage()
        for name, value in (config.headers or {}).items():
            msg[name] = value
        if "From" not in msg:
            msg["From"] = config.from_addr
        if "To" not in msg:
            msg["To"] = config.to
        if "Date" not in msg:
            msg["Date"] = formatdate(localtime=True)
        if "Message-ID" not in msg:
            msg["Message-ID"] = make_msgid()

        html = self.templates.render(config.html, context) if config.html else ""
        text = self.templates.render(config.text, context) if config.text else ""
        if text:
            msg.set_content(text)
            if html:
                msg.add_alternative(html, subtype="html")
        elif html:
            msg.set_content(html, subtype="html")
        else:
            msg.set_content("")
        return msg

    def deliver(
        self,
        config: EmailConfig,
        context: dict,
        alerts: list[TransportAlert],
        deadline: float,
    ) -> None:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise TimeoutError("deadline exceeded before connecting")

        host, port = split_smarthost(config.smarthost)
        msg = self.build_message(config, context)
        tls_context = build_ssl_context(config.tls_config)

        if port == IMPLICIT_TLS_PORT:
            client = smtplib.SMTP_SSL(
                host, port, local_hostname=config.hello, timeout=remaining, context=tls_context
            )
        else:
            client = smtplib.SMTP(host, port, local_hostname=config.hello, timeout=remaining)

        with client as server:
            server.ehlo()
            if port != IMPLICIT_TLS_PORT and config.require_tls:
                if not server.has_extn("starttls"):
                    raise smtplib.SMTPNotSupportedError(
                        f"'require_tls' is set but {host} does not advertise STARTTLS"
                    )
                server.starttls(context=tls_context)
                server.ehlo()
            if config.auth_username:
                self._authenticate(server, config)
            server.send_message(msg, from_addr=config.from_addr, to_addrs=[config.to])

        log.debug("SMTP delivery of %d alert(s) to %s via %s:%d", len(alerts), config.to, host, port)

    @staticmethod
    def _authenticate(server: smtplib.SMTP, config: EmailConfig) -> None:
        password = config.auth_password or config.auth_secret
        if config.auth_identity:
            # PLAIN with an explicit authorization identity
            server.auth(
                "PLAIN",
                lambda challenge=None: f"{config.auth_identity}\0{config.auth_username}\0{password}",
            )
        else:
            server.login(config.auth_username, password)


def create(templates: TemplateSet) -> SMTPTransport:
    return SMTPTransport(templates)
