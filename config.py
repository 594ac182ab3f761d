"""Configuration loading, validation, and env-var resolution."""

from __future__ import annotations

import logging
import os
import stat
from dataclasses import dataclass, field
from pathlib import Path

import yaml

log = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "/config/config.yaml"


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or unusable."""


@dataclass(frozen=True)
class TLSConfig:
    ca_file: str = ""
    cert_file: str = ""
    key_file: str = ""
    insecure_skip_verify: bool = False


@dataclass
class EmailConfig:
    """Delivery settings for one email receiver.

    ``to`` and ``headers`` are filled in per recipient on a clone; the copy
    owned by a notifier keeps ``to`` empty.
    """

    from_addr: str
    smarthost: str
    to: str = ""
    hello: str = "localhost"
    auth_username: str = ""
    auth_password: str = ""
    auth_secret: str = ""
    auth_identity: str = ""
    headers: dict[str, str] | None = None
    html: str = "email.default.html"
    text: str = ""
    require_tls: bool = True
    tls_config: TLSConfig = field(default_factory=TLSConfig)


@dataclass
class EmailReceiver:
    name: str
    to: list[str]
    email_config: EmailConfig | None


@dataclass
class Options:
    notification_timeout: dict[str, int] = field(default_factory=dict)
    max_workers: int = 1
    templates: list[str] = field(default_factory=list)

    def timeout_for(self, kind: str) -> int | None:
        """Return the operator timeout override (seconds) for a notifier kind."""
        return self.notification_timeout.get(kind)


def load(config_path: str | None = None) -> dict:
    """Load and parse the YAML config file."""
    path = config_path or os.environ.get("ALERTDISPATCH_CONFIG", DEFAULT_CONFIG_PATH)

    if not Path(path).is_file():
        raise ConfigError(f"Error: config file not found: {path}")

    # Warn if config file is readable by group or others (may contain credentials)
    try:
        mode = os.stat(path).st_mode
        if mode & (stat.S_IRGRP | stat.S_IROTH):
            log.warning(
                "Config file '%s' is readable by group/others (mode %o). "
                "This file may contain SMTP credentials, consider: chmod 600 %s",
                path, stat.S_IMODE(mode), path,
            )
    except OSError:
        pass  # skip check if stat fails (e.g. on some platforms)

    with open(path) as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ConfigError(f"Error: config file is not valid YAML: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError("Error: config file must be a YAML mapping")

    return raw


def resolve_env(config: dict) -> dict:
    """Recursively resolve *_env keys from environment variables.

    For any key ending in '_env', look up the env var named by its value
    and replace with a key without the '_env' suffix.
    E.g. {'auth_password_env': 'SMTP_PASSWORD'} -> {'auth_password': '<value of $SMTP_PASSWORD>'}
    """
    resolved = {}
    for key, value in config.items():
        if isinstance(value, dict):
            resolved[key] = resolve_env(value)
        elif isinstance(value, str) and key.endswith("_env"):
            real_key = key.removesuffix("_env")
            env_val = os.environ.get(value)
            if env_val is None:
                raise ConfigError(
                    f"Error: environment variable '{value}' "
                    f"(referenced by '{key}') is not set"
                )
            resolved[real_key] = env_val
        else:
            resolved[key] = value
    return resolved


def get_options(raw_config: dict) -> Options:
    """Build global Options from the 'options' section (all keys optional)."""
    opts = raw_config.get("options") or {}
    if not isinstance(opts, dict):
        raise ConfigError("Error: 'options' must be a mapping")

    timeouts = opts.get("notification_timeout") or {}
    if not isinstance(timeouts, dict):
        raise ConfigError("Error: 'options.notification_timeout' must be a mapping of kind -> seconds")
    for kind, seconds in timeouts.items():
        if not isinstance(seconds, int) or isinstance(seconds, bool) or seconds <= 0:
            raise ConfigError(
                f"Error: notification timeout for '{kind}' must be a positive integer (seconds)"
            )

    max_workers = opts.get("max_workers", 1)
    if not isinstance(max_workers, int) or isinstance(max_workers, bool) or max_workers < 1:
        raise ConfigError("Error: 'options.max_workers' must be an integer >= 1")

    return Options(
        notification_timeout=dict(timeouts),
        max_workers=max_workers,
        templates=get_template_globs(raw_config),
    )


def get_template_globs(raw_config: dict) -> list[str]:
    """Return the user template glob patterns (may be empty)."""
    globs = raw_config.get("templates") or []
    if isinstance(globs, str):
        globs = [globs]
    if not isinstance(globs, list) or not all(isinstance(g, str) for g in globs):
        raise ConfigError("Error: 'templates' must be a list of glob patterns")
    return globs


def _receivers(raw_config: dict) -> dict:
    receivers = raw_config.get("receivers") or {}
    if not isinstance(receivers, dict):
        raise ConfigError("Error: 'receivers' must be a mapping of name -> receiver")
    return receivers


def get_receiver_section(raw_config: dict, name: str) -> dict:
    """Return the unresolved mapping for receiver *name* (empty when left blank)."""
    section = _receivers(raw_config)[name] or {}
    if not isinstance(section, dict):
        raise ConfigError(f"Error: receiver '{name}' must be a mapping")
    return section


def get_receiver_config(raw_config: dict, name: str) -> dict:
    """Get a resolved receiver config dict by name (with a "name" key added)."""
    receivers = _receivers(raw_config)
    if name not in receivers:
        raise ConfigError(
            f"Error: receiver '{name}' not found. Available: {', '.join(receivers)}"
        )

    cfg = resolve_env(get_receiver_section(raw_config, name))
    cfg["name"] = name
    if not cfg.get("type"):
        raise ConfigError(
            f"Error: receiver '{name}' is missing required 'type' field (e.g. type: email)"
        )
    return cfg


def get_all_receiver_names(raw_config: dict) -> list[str]:
    """Return all receiver names defined in the config."""
    return list(_receivers(raw_config).keys())


def parse_tls_config(raw: dict | None) -> TLSConfig:
    if not raw:
        return TLSConfig()
    if not isinstance(raw, dict):
        raise ConfigError("Error: email_config 'tls_config' must be a mapping")
    return TLSConfig(
        ca_file=raw.get("ca_file", ""),
        cert_file=raw.get("cert_file", ""),
        key_file=raw.get("key_file", ""),
        insecure_skip_verify=bool(raw.get("insecure_skip_verify", False)),
    )


def parse_email_config(raw: dict | None) -> EmailConfig | None:
    """Build an EmailConfig from its YAML mapping. Returns None when absent."""
    if not raw:
        return None
    if not isinstance(raw, dict):
        raise ConfigError("Error: 'email_config' must be a mapping")

    for required in ("from", "smarthost"):
        if not raw.get(required):
            raise ConfigError(f"Error: email_config is missing required '{required}' field")

    headers = raw.get("headers")
    if headers is not None and not isinstance(headers, dict):
        raise ConfigError("Error: email_config 'headers' must be a mapping")

    return EmailConfig(
        from_addr=raw["from"],
        smarthost=raw["smarthost"],
        hello=raw.get("hello", "localhost"),
        auth_username=raw.get("auth_username", ""),
        auth_password=raw.get("auth_password", ""),
        auth_secret=raw.get("auth_secret", ""),
        auth_identity=raw.get("auth_identity", ""),
        headers={str(k): str(v) for k, v in headers.items()} if headers is not None else None,
        html=raw.get("html", "email.default.html"),
        text=raw.get("text", ""),
        require_tls=bool(raw.get("require_tls", True)),
        tls_config=parse_tls_config(raw.get("tls_config")),
    )


def get_email_receiver(name: str, receiver_cfg: dict) -> EmailReceiver:
    """Build an EmailReceiver from a resolved receiver config dict."""
    to = receiver_cfg.get("to", [])
    if isinstance(to, str):
        to = [to]
    if not isinstance(to, list) or not all(isinstance(addr, str) for addr in to):
        raise ConfigError(f"Error: receiver '{name}' field 'to' must be a list of addresses")

    return EmailReceiver(
        name=name,
        to=list(to),
        email_config=parse_email_config(receiver_cfg.get("email_config")),
    )
