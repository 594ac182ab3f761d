"""Tests for alertdispatch CLI (alertdispatch.py)."""

from __future__ import annotations

import argparse
import io
import json
import sys
from unittest.mock import MagicMock, patch

import pytest
import yaml

import config
from alertdispatch import (
    build_notifiers,
    cmd_check,
    cmd_receivers,
    cmd_send,
    main,
    read_batches,
    route_batches,
)
from dispatch import DeliveryError
from models import AlertBatch, PayloadError
from notifiers import NotifierRegistry

PAYLOAD = {
    "receiver": "ops",
    "commonLabels": {"alertname": "HighCPU"},
    "alerts": [{"status": "firing", "labels": {"alertname": "HighCPU"}}],
}


def _raw_config():
    return {
        "options": {"notification_timeout": {"email": 5}},
        "receivers": {
            "ops": {
                "type": "email",
                "to": ["a@example.com"],
                "email_config": {"from": "alerts@example.com", "smarthost": "smtp:25"},
            },
            "dev": {
                "type": "email",
                "to": ["dev@example.com"],
                "email_config": {"from": "alerts@example.com", "smarthost": "smtp:25"},
            },
        },
    }


def _write_config(tmp_path, cfg=None):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump(cfg or _raw_config()))
    return str(path)


def _write_payload(tmp_path, payload=PAYLOAD):
    path = tmp_path / "alerts.json"
    path.write_text(json.dumps(payload))
    return str(path)


def _registry(errors_by_name=None, unusable=()):
    """Registry whose 'email' factory returns mock notifiers keyed by receiver name."""
    errors_by_name = errors_by_name or {}
    notifiers = {}

    def factory(logger, receiver_cfg, options):
        if receiver_cfg["name"] in unusable:
            return None
        notifier = MagicMock()
        notifier.notify.return_value = errors_by_name.get(receiver_cfg["name"], [])
        notifiers[receiver_cfg["name"]] = notifier
        return notifier

    registry = NotifierRegistry()
    registry.register("email", factory)
    return registry, notifiers


def _send_args(tmp_path, receiver="ops", all=False, parallel=1):
    return argparse.Namespace(
        receiver=receiver, all=all, file=_write_payload(tmp_path), parallel=parallel
    )


class TestBuildNotifiers:
    def test_builds_each_receiver(self):
        registry, notifiers = _registry()
        built, failed = build_notifiers(_raw_config(), ["ops", "dev"], registry)
        assert set(built) == {"ops", "dev"}
        assert failed == []
        assert registry.sealed

    def test_factory_receives_options(self):
        registry = NotifierRegistry()
        factory = MagicMock()
        registry.register("email", factory)
        build_notifiers(_raw_config(), ["ops"], registry)
        logger, receiver_cfg, options = factory.call_args[0]
        assert logger.name == "alertdispatch.ops"
        assert receiver_cfg["name"] == "ops"
        assert options.timeout_for("email") == 5

    def test_unknown_kind_fails_receiver(self):
        raw = _raw_config()
        raw["receivers"]["ops"]["type"] = "pager"
        registry, _ = _registry()
        built, failed = build_notifiers(raw, ["ops", "dev"], registry)
        assert list(built) == ["dev"]
        assert failed == ["ops"]

    def test_unusable_receiver_skipped(self):
        registry, _ = _registry(unusable={"ops"})
        built, failed = build_notifiers(_raw_config(), ["ops", "dev"], registry)
        assert list(built) == ["dev"]
        assert failed == ["ops"]


class TestReadBatches:
    def test_from_file(self, tmp_path):
        batches = read_batches(_write_payload(tmp_path, [PAYLOAD, PAYLOAD]))
        assert len(batches) == 2
        assert batches[0].receiver == "ops"

    def test_from_stdin(self, monkeypatch):
        monkeypatch.setattr(sys, "stdin", io.StringIO(json.dumps(PAYLOAD)))
        assert len(read_batches(None)) == 1

    def test_invalid_json_raises(self, tmp_path):
        path = tmp_path / "alerts.json"
        path.write_text("{not json")
        with pytest.raises(PayloadError, match="not valid JSON"):
            read_batches(str(path))

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(PayloadError, match="cannot read"):
            read_batches(str(tmp_path / "missing.json"))


class TestRouteBatches:
    def test_routes_by_receiver(self):
        batches = [AlertBatch(receiver="ops"), AlertBatch(receiver="dev"), AlertBatch(receiver="ops")]
        routed = route_batches(batches, ["ops", "dev"])
        assert len(routed["ops"]) == 2
        assert len(routed["dev"]) == 1

    def test_unknown_receiver_dropped(self, caplog):
        routed = route_batches([AlertBatch(receiver="ghost")], ["ops"])
        assert routed == {"ops": []}
        assert "ghost" in caplog.text


class TestCmdSend:
    def test_single_receiver(self, tmp_path):
        registry, notifiers = _registry()
        cmd_send(_send_args(tmp_path), _raw_config(), registry)
        [batches] = notifiers["ops"].notify.call_args[0]
        assert [b.receiver for b in batches] == ["ops"]
        assert "dev" not in notifiers

    def test_delivery_errors_exit_1(self, tmp_path):
        registry, notifiers = _registry({"ops": [DeliveryError("a@example.com", "s", "refused")]})
        with pytest.raises(SystemExit) as exc_info:
            cmd_send(_send_args(tmp_path), _raw_config(), registry)
        assert exc_info.value.code == 1
        notifiers["ops"].notify.assert_called_once()

    def test_unconstructed_receiver_exit_1(self, tmp_path):
        registry, _ = _registry(unusable={"ops"})
        with pytest.raises(SystemExit) as exc_info:
            cmd_send(_send_args(tmp_path), _raw_config(), registry)
        assert exc_info.value.code == 1

    def test_all_routes_by_payload_receiver(self, tmp_path):
        registry, notifiers = _registry()
        cmd_send(_send_args(tmp_path, receiver=None, all=True), _raw_config(), registry)
        notifiers["ops"].notify.assert_called_once()
        notifiers["dev"].notify.assert_not_called()

    def test_all_parallel(self, tmp_path):
        path = tmp_path / "alerts.json"
        path.write_text(json.dumps([PAYLOAD, dict(PAYLOAD, receiver="dev")]))
        registry, notifiers = _registry({"dev": [DeliveryError("d", "s", "boom")]})
        args = argparse.Namespace(receiver=None, all=True, file=str(path), parallel=2)
        with pytest.raises(SystemExit):
            cmd_send(args, _raw_config(), registry)
        notifiers["ops"].notify.assert_called_once()
        notifiers["dev"].notify.assert_called_once()

    def test_all_without_receivers_exits(self, tmp_path):
        registry, _ = _registry()
        with pytest.raises(SystemExit):
            cmd_send(_send_args(tmp_path, receiver=None, all=True), {"receivers": {}}, registry)

    def test_unknown_receiver_raises_config_error(self, tmp_path):
        registry, _ = _registry()
        with pytest.raises(config.ConfigError, match="not found"):
            cmd_send(_send_args(tmp_path, receiver="ghost"), _raw_config(), registry)


class TestCmdCheck:
    def test_all_ok(self):
        registry, notifiers = _registry()
        cmd_check(argparse.Namespace(), _raw_config(), registry)
        assert set(notifiers) == {"ops", "dev"}

    def test_failure_exits(self):
        registry, _ = _registry(unusable={"dev"})
        with pytest.raises(SystemExit) as exc_info:
            cmd_check(argparse.Namespace(), _raw_config(), registry)
        assert exc_info.value.code == 1


class TestCmdReceivers:
    def test_lists_names_and_kinds(self, capsys):
        registry, _ = _registry()
        cmd_receivers(argparse.Namespace(), _raw_config(), registry)
        assert capsys.readouterr().out.splitlines() == ["ops\temail", "dev\temail"]


class TestMain:
    def test_missing_config_exits_1(self, capsys):
        with patch.object(sys, "argv", ["alertdispatch", "-c", "/nonexistent.yaml", "receivers"]):
            with pytest.raises(SystemExit) as exc_info:
                main()
        assert exc_info.value.code == 1
        assert "not found" in capsys.readouterr().err

    def test_send_requires_receiver_or_all(self, tmp_path):
        cfg_path = _write_config(tmp_path)
        with patch.object(sys, "argv", ["alertdispatch", "-c", cfg_path, "send"]):
            with pytest.raises(SystemExit) as exc_info:
                main()
        assert exc_info.value.code == 2

    def test_invalid_payload_exits_1(self, tmp_path, capsys):
        cfg_path = _write_config(tmp_path)
        bad = tmp_path / "bad.json"
        bad.write_text("[")
        argv = ["alertdispatch", "-c", cfg_path, "send", "ops", "-f", str(bad)]
        with patch.object(sys, "argv", argv):
            with pytest.raises(SystemExit) as exc_info:
                main()
        assert exc_info.value.code == 1
        assert "not valid JSON" in capsys.readouterr().err

    def test_send_end_to_end_with_mocked_smtp(self, tmp_path):
        cfg_path = _write_config(tmp_path)
        argv = ["alertdispatch", "-c", cfg_path, "send", "ops", "-f", _write_payload(tmp_path)]
        with patch.object(sys, "argv", argv), patch("transports.smtp.smtplib.SMTP") as mock_smtp_class:
            mock_server = MagicMock()
            mock_smtp_class.return_value.__enter__ = MagicMock(return_value=mock_server)
            mock_smtp_class.return_value.__exit__ = MagicMock(return_value=False)
            main()
        mock_server.send_message.assert_called_once()
        msg = mock_server.send_message.call_args[0][0]
        assert msg["Subject"] == "[FIRING:1] HighCPU"
        assert mock_server.send_message.call_args[1]["to_addrs"] == ["a@example.com"]

    def test_custom_registry(self, tmp_path):
        cfg_path = _write_config(tmp_path)
        registry, notifiers = _registry()
        argv = ["alertdispatch", "-c", cfg_path, "check"]
        with patch.object(sys, "argv", argv):
            main(registry)
        assert set(notifiers) == {"ops", "dev"}


class TestMalformedReceivers:
    def _raw(self):
        raw = _raw_config()
        raw["receivers"]["dev"]["email_config"] = "oops"
        raw["receivers"]["broken"] = "not a mapping"
        return raw

    def test_malformed_receiver_only_fails_itself(self):
        registry, notifiers = _registry()
        built, failed = build_notifiers(self._raw(), ["ops", "broken"], registry)
        assert list(built) == ["ops"]
        assert failed == ["broken"]

    def test_single_malformed_receiver_raises(self):
        registry, _ = _registry()
        with pytest.raises(config.ConfigError, match="must be a mapping"):
            build_notifiers(self._raw(), ["broken"], registry)

    def test_check_with_real_factory_reports_bad_email_config(self, tmp_path, caplog):
        cfg_path = _write_config(tmp_path, self._raw())
        with patch.object(sys, "argv", ["alertdispatch", "-c", cfg_path, "check"]):
            with pytest.raises(SystemExit) as exc_info:
                main()
        assert exc_info.value.code == 1
        assert "'email_config' must be a mapping" in caplog.text

    def test_receivers_command_rejects_malformed_receiver(self, capsys):
        registry, _ = _registry()
        with pytest.raises(config.ConfigError, match="receiver 'broken' must be a mapping"):
            cmd_receivers(argparse.Namespace(), self._raw(), registry)
