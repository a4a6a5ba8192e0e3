"""Tests for source and sink registries."""

from __future__ import annotations

import pytest

from m365relay.exceptions import ConfigurationError
from m365relay.registry import Registry, create_sink_registry, create_source_registry
from m365relay.sinks import PlainWebhookSink
from tests.helpers import make_pair
from tests.mocks import FakeCancellationToken


class TestRegistry:
    def test_create_passes_arguments(self) -> None:
        registry: Registry[tuple[object, ...]] = Registry("widget")
        registry.register("pair", lambda *args, **kwargs: (args, kwargs))

        assert registry.create("pair", 1, key="value") == ((1,), {"key": "value"})

    def test_unknown_name(self) -> None:
        registry: Registry[object] = Registry("widget")
        registry.register("alpha", object)

        with pytest.raises(ConfigurationError, match="Unknown widget 'beta'. Available: alpha"):
            registry.create("beta")

    def test_empty_registry_error(self) -> None:
        with pytest.raises(ConfigurationError, match="Available: none"):
            Registry("widget").create("alpha")

    def test_duplicate_registration(self) -> None:
        registry: Registry[object] = Registry("widget")
        registry.register("alpha", object)

        with pytest.raises(ValueError, match="already registered"):
            registry.register("alpha", object)

    def test_names_and_contains(self) -> None:
        registry: Registry[object] = Registry("widget")
        registry.register("beta", object)
        registry.register("alpha", object)

        assert registry.names == ["alpha", "beta"]
        assert "alpha" in registry
        assert "gamma" not in registry


class TestBuiltinRegistries:
    def test_sources(self) -> None:
        assert create_source_registry().names == [
            "MicrosoftThreatProtection",
            "Office365Management",
        ]

    def test_sinks(self) -> None:
        assert create_sink_registry().names == ["Plain"]

    def test_build_plain_sink(self) -> None:
        sink = create_sink_registry().create("Plain", make_pair(), FakeCancellationToken())

        assert isinstance(sink, PlainWebhookSink)

    def test_unknown_sink(self) -> None:
        with pytest.raises(ConfigurationError, match="Unknown sink 'Teams'"):
            create_sink_registry().create("Teams", make_pair(), FakeCancellationToken())
