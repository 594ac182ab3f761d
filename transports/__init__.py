"""Delivery transport interface and factory."""

from __future__ import annotations

import importlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime

from config import EmailConfig


@dataclass(frozen=True)
class TransportAlert:
    """An alert as handed to a transport. Labels and annotations are copies."""

    labels: dict[str, str]
    annotations: dict[str, str] = field(default_factory=dict)
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    generator_url: str = ""
    status: str = "firing"

    @property
    def firing(self) -> bool:
        return self.status == "firing"


class Transport(ABC):
    """Abstract base for wire transports."""

    @abstractmethod
    def deliver(
        self,
        config: EmailConfig,
        context: dict,
        alerts: list[TransportAlert],
        deadline: float,
    ) -> None:
        """Deliver one message to config.to before *deadline* (time.monotonic() value).

        Raises on failure.
        """


# Map of transport type names to module names within this package.
_TRANSPORT_TYPES = {
    "smtp": "smtp",
}


def create_transport(transport_type: str, **kwargs) -> Transport:
    """Create a Transport instance by type name (e.g. 'smtp')."""
    if transport_type not in _TRANSPORT_TYPES:
        raise ValueError(
            f"Unknown transport type '{transport_type}'. "
            f"Available: {', '.join(_TRANSPORT_TYPES)}"
        )

    module = importlib.import_module(f".{_TRANSPORT_TYPES[transport_type]}", package=__name__)
    return module.create(**kwargs)
