"""Notifier interface and registry."""

from __future__ import annotations

import importlib
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from config import Options
from dispatch import DeliveryError, DeliveryTimeout
from models import AlertBatch

__all__ = [
    "DeliveryError",
    "DeliveryTimeout",
    "Notifier",
    "NotifierFactory",
    "NotifierRegistry",
    "RegistryError",
    "default_registry",
]


class Notifier(ABC):
    """Abstract base for notification backends."""

    @abstractmethod
    def notify(self, batches: list[AlertBatch]) -> list[DeliveryError]:
        """Deliver every batch to every recipient. An empty list means total success."""


# (logger, receiver, options) -> Notifier, or None when the receiver is unusable.
NotifierFactory = Callable[[logging.Logger, Any, Optional[Options]], Optional[Notifier]]


class RegistryError(Exception):
    """Raised on duplicate registration or registration after sealing."""


class NotifierRegistry:
    """Maps notifier kind names to factories.

    Populate at startup, then seal() before dispatching; lookups never mutate.
    """

    def __init__(self):
        self._factories: dict[str, NotifierFactory] = {}
        self._sealed = False

    def register(self, kind: str, factory: NotifierFactory) -> None:
        if self._sealed:
            raise RegistryError(f"Cannot register notifier kind '{kind}': registry is sealed")
        if kind in self._factories:
            raise RegistryError(f"Notifier kind '{kind}' is already registered")
        self._factories[kind] = factory

    def lookup(self, kind: str) -> NotifierFactory | None:
        return self._factories.get(kind)

    def seal(self) -> None:
        self._sealed = True

    @property
    def sealed(self) -> bool:
        return self._sealed

    def kinds(self) -> list[str]:
        return sorted(self._factories)


# Map of notifier kind names to module names within this package.
_NOTIFIER_TYPES = {
    "email": "email",
}


def default_registry() -> NotifierRegistry:
    """Return an unsealed registry holding every built-in notifier kind."""
    registry = NotifierRegistry()
    for kind, module_name in _NOTIFIER_TYPES.items():
        module = importlib.import_module(f".{module_name}", package=__name__)
        registry.register(kind, module.create)
    return registry
