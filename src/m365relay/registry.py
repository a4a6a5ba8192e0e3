"""Name-based registries for event sources and sinks.

Pairs in the configuration refer to sources and sinks by name. A registry maps
each name to a builder so new sources or sinks can be added without touching
the worker or bootstrap code.

Example:
    sources = create_source_registry()
    source = sources.create("MicrosoftThreatProtection", context)
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Generic, TypeVar

from m365relay.exceptions import ConfigurationError
from m365relay.logging import get_logger
from m365relay.sinks import EventSink, PlainWebhookSink
from m365relay.sources import EventSource, Office365ManagementSource, ThreatProtectionSource

logger = get_logger(__name__)

T = TypeVar("T")


class Registry(Generic[T]):
    """Builders keyed by name."""

    def __init__(self, kind: str) -> None:
        """Initialize an empty registry.

        Args:
            kind: What the registry builds, for error messages ("source", "sink").
        """
        self.kind = kind
        self._builders: dict[str, Callable[..., T]] = {}

    def register(self, name: str, builder: Callable[..., T]) -> None:
        """Register a builder under ``name``.

        Raises:
            ValueError: If the name is already taken.
        """
        if name in self._builders:
            raise ValueError(f"A {self.kind} named '{name}' is already registered")
        self._builders[name] = builder
        logger.debug("Registered %s: %s", self.kind, name)

    def create(self, name: str, *args: object, **kwargs: object) -> T:
        """Build the entry registered under ``name``.

        Raises:
            ConfigurationError: If nothing is registered under ``name``.
        """
        builder = self._builders.get(name)
        if builder is None:
            raise ConfigurationError(
                f"Unknown {self.kind} '{name}'. Available: {', '.join(self.names) or 'none'}"
            )
        return builder(*args, **kwargs)

    @property
    def names(self) -> list[str]:
        return sorted(self._builders)

    def __contains__(self, name: object) -> bool:
        return name in self._builders


def create_source_registry() -> Registry[EventSource]:
    """Registry holding every built-in event source."""
    registry: Registry[EventSource] = Registry("source")
    registry.register(ThreatProtectionSource.name, ThreatProtectionSource.build)
    registry.register(Office365ManagementSource.name, Office365ManagementSource.build)
    return registry


def create_sink_registry() -> Registry[EventSink]:
    """Registry holding every built-in event sink."""
    registry: Registry[EventSink] = Registry("sink")
    registry.register(PlainWebhookSink.name, PlainWebhookSink.build)
    return registry


__all__ = ["Registry", "create_sink_registry", "create_source_registry"]
