"""Shared fixtures for alertdispatch tests."""

from __future__ import annotations

import sys
import threading
from pathlib import Path

import pytest

# Add the repository root to sys.path so imports work like they do at runtime.
_pkg_root = str(Path(__file__).resolve().parent.parent)
if _pkg_root not in sys.path:
    sys.path.insert(0, _pkg_root)

from config import EmailConfig, EmailReceiver, TLSConfig  # noqa: E402
from transports import Transport  # noqa: E402


class RecordingTransport(Transport):
    """Records every delivery; raises for addresses listed in *fail*."""

    def __init__(self, fail=()):
        self.fail = set(fail)
        self.calls = []
        self._lock = threading.Lock()

    def deliver(self, config, context, alerts, deadline):
        with self._lock:
            self.calls.append((config, context, alerts, deadline))
        if config.to in self.fail:
            raise ConnectionRefusedError(f"refused: {config.to}")


@pytest.fixture
def base_email_config():
    return EmailConfig(
        from_addr="alerts@example.com",
        smarthost="smtp.example.com:587",
        auth_username="alerts",
        auth_password="s3cret",
        headers={"X-Team": "ops"},
        tls_config=TLSConfig(ca_file="/etc/ssl/ca.pem"),
    )


@pytest.fixture
def email_receiver(base_email_config):
    return EmailReceiver(
        name="ops",
        to=["a@example.com", "b@example.com", "c@example.com"],
        email_config=base_email_config,
    )


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def make_transport():
    return RecordingTransport
