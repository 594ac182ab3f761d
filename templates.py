"""Message templates (Jinja2) and external URL handling."""

from __future__ import annotations

import glob
import logging
import os
from urllib.parse import SplitResult, urlsplit

from jinja2 import (
    ChoiceLoader,
    DictLoader,
    Environment,
    StrictUndefined,
    TemplateError,
    TemplateNotFound,
    select_autoescape,
)

from config import ConfigError

log = logging.getLogger(__name__)

DEFAULT_HTML = "email.default.html"
DEFAULT_TEXT = "email.default.txt"

_BUILTIN_TEMPLATES = {
    DEFAULT_HTML: """\
<!DOCTYPE html>
<html>
<head><meta charset="UTF-8"><title>{{ subject }}</title></head>
<body style="font-family: Helvetica, Arial, sans-serif; font-size: 14px;">
<h2 style="color: {{ '#d9534f' if status == 'firing' else '#5cb85c' }};">
  {{ alerts | selectattr('firing') | list | length }} alert(s) firing,
  {{ alerts | rejectattr('firing') | list | length }} resolved
  for {{ group_labels.values() | join(' ') }}
</h2>
{% if external_url %}<p><a href="{{ external_url.geturl() }}">View in Alertmanager</a></p>{% endif %}
{% for section, firing in [('Firing', true), ('Resolved', false)] %}
{% set group = alerts | selectattr('firing', 'equalto', firing) | list %}
{% if group %}
<h3>[{{ group | length }}] {{ section }}</h3>
{% for alert in group %}
<table style="margin-bottom: 12px; border-collapse: collapse;">
<tr><td colspan="2"><strong>Labels</strong></td></tr>
{% for key, value in alert.labels | dictsort %}<tr><td>{{ key }}</td><td>{{ value }}</td></tr>
{% endfor %}
{% if alert.annotations %}<tr><td colspan="2"><strong>Annotations</strong></td></tr>
{% for key, value in alert.annotations | dictsort %}<tr><td>{{ key }}</td><td>{{ value }}</td></tr>
{% endfor %}{% endif %}
<tr><td>Started</td><td>{{ alert.starts_at.isoformat() if alert.starts_at else '-' }}</td></tr>
{% if not alert.firing %}<tr><td>Ended</td><td>{{ alert.ends_at.isoformat() if alert.ends_at else '-' }}</td></tr>{% endif %}
{% if alert.generator_url %}<tr><td colspan="2"><a href="{{ alert.generator_url }}">Source</a></td></tr>{% endif %}
</table>
{% endfor %}
{% endif %}
{% endfor %}
<p style="color: #888;">Sent by receiver {{ receiver }}</p>
</body>
</html>
""",
    DEFAULT_TEXT: """\
{{ subject }}
{% for alert in alerts %}
[{{ 'FIRING' if alert.firing else 'RESOLVED' }}]
{% for key, value in alert.labels | dictsort %}  {{ key }} = {{ value }}
{% endfor %}{% for key, value in alert.annotations | dictsort %}  {{ key }}: {{ value }}
{% endfor %}{% if alert.generator_url %}  Source: {{ alert.generator_url }}
{% endif %}{% endfor %}
{% if external_url %}{{ external_url.geturl() }}
{% endif %}""",
}


class TemplateSet:
    """Named templates: built-ins plus user files, which take precedence."""

    def __init__(self, user_templates: dict[str, str] | None = None):
        self._env = Environment(
            loader=ChoiceLoader([
                DictLoader(user_templates or {}),
                DictLoader(_BUILTIN_TEMPLATES),
            ]),
            autoescape=select_autoescape(["html"], default_for_string=False),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
        )

    def require(self, name: str) -> None:
        """Raise ConfigError unless template *name* exists and compiles."""
        try:
            self._env.get_template(name)
        except TemplateNotFound as exc:
            raise ConfigError(f"Error: template '{name}' not found") from exc
        except TemplateError as exc:
            raise ConfigError(f"Error: template '{name}' is invalid: {exc}") from exc

    def render(self, name: str, data: dict) -> str:
        return self._env.get_template(name).render(**data)


def from_globs(*patterns: str) -> TemplateSet:
    """Build a TemplateSet from user template files matching *patterns*.

    Each file is registered under its base name, so a file named
    'email.default.html' replaces the built-in one.
    """
    user_templates: dict[str, str] = {}
    for pattern in patterns:
        paths = sorted(glob.glob(pattern))
        if not paths:
            log.warning("Template pattern '%s' matched no files", pattern)
        for path in paths:
            try:
                with open(path, encoding="utf-8") as f:
                    user_templates[os.path.basename(path)] = f.read()
            except OSError as exc:
                raise ConfigError(f"Error: cannot read template file '{path}': {exc}") from exc
            log.debug("Loaded template %s", path)
    return TemplateSet(user_templates)


def parse_external_url(value: str) -> SplitResult | None:
    """Parse an external URL. Unparseable or empty values return None."""
    if not value:
        return None
    try:
        url = urlsplit(value)
        url.port  # raises ValueError on a malformed port
    except ValueError as exc:
        log.debug("Ignoring invalid external URL %r: %s", value, exc)
        return None
    return url
