"""Startup wiring for the relay.

This module is the composition root: it loads configuration, applies CLI
overrides, sets up logging, loads the pairs file and builds one source, one
sink and one worker per pair. Sources resolve their credentials while they are
built, so a misconfigured tenant shows up in the log before polling starts.
"""

from __future__ import annotations

import argparse
from dataclasses import replace
from typing import Any

from m365relay.cancellation import CancellationToken
from m365relay.config import Config, PairConfig, load_config, load_pairs
from m365relay.exceptions import ClockSkewError, ConfigurationError
from m365relay.logging import get_logger, setup_logging
from m365relay.registry import Registry, create_sink_registry, create_source_registry
from m365relay.resolver import CredentialResolver
from m365relay.sinks import EventSink
from m365relay.sources import EventSource, SourceContext
from m365relay.worker import PollWorker

logger = get_logger(__name__)


class BootstrapContext:
    """Everything built at startup, handed to the application runner."""

    def __init__(
        self,
        config: Config,
        pairs: list[PairConfig],
        cancel_token: CancellationToken,
        workers: list[PollWorker],
        sources: list[EventSource],
        sinks: list[EventSink],
    ) -> None:
        self.config = config
        self.pairs = pairs
        self.cancel_token = cancel_token
        self.workers = workers
        self.sources = sources
        self.sinks = sinks

    def close(self) -> None:
        """Close every source and sink."""
        for resource in [*self.sources, *self.sinks]:
            resource.close()


def apply_cli_overrides(config: Config, parsed: argparse.Namespace) -> Config:
    """Apply CLI argument overrides to the configuration.

    Args:
        config: Base configuration loaded from environment.
        parsed: Parsed command-line arguments.

    Returns:
        New Config instance with CLI overrides applied.
    """
    overrides: dict[str, Any] = {}

    if parsed.pairs_file:
        overrides["pairs_file"] = parsed.pairs_file
    if parsed.interval:
        overrides["poll_interval"] = parsed.interval
    if parsed.log_level:
        overrides["log_level"] = parsed.log_level

    if overrides:
        return replace(config, **overrides)
    return config


def build_workers(
    config: Config,
    pairs: list[PairConfig],
    cancel_token: CancellationToken,
    resolver: CredentialResolver | None = None,
    source_registry: Registry[EventSource] | None = None,
    sink_registry: Registry[EventSink] | None = None,
) -> tuple[list[PollWorker], list[EventSource], list[EventSink]]:
    """Build a source, a sink and a worker for every pair.

    Every pair gets its own source instance, so workers never share
    credentials or HTTP clients.

    Raises:
        ConfigurationError: If a pair names an unknown source, operation or sink.
        ClockSkewError: If credential resolution detects a wrong local clock.
    """
    resolver = resolver or CredentialResolver(
        config.credentials,
        expiry_margin_minutes=config.token_expiry_margin,
        clock_skew_minutes=config.clock_skew_tolerance,
        show_secrets=config.show_secrets,
    )
    source_registry = source_registry or create_source_registry()
    sink_registry = sink_registry or create_sink_registry()
    context = SourceContext(
        resolver=resolver,
        cancel_token=cancel_token,
        lookback_minutes=config.lookback_minutes,
        rate_limit_backoff=config.rate_limit_backoff,
        transport_retry_pause=config.transport_retry_pause,
        show_secrets=config.show_secrets,
    )

    workers: list[PollWorker] = []
    sources: list[EventSource] = []
    sinks: list[EventSink] = []
    try:
        for pair in pairs:
            logger.info(
                "Building pair %s: %s.%s -> %s", pair.name, pair.source, pair.operation, pair.sink
            )
            source = source_registry.create(pair.source, context)
            sources.append(source)
            list_operation = source.operation(pair.operation)
            sink = sink_registry.create(
                pair.sink, pair, cancel_token, show_secrets=config.show_secrets
            )
            sinks.append(sink)
            workers.append(
                PollWorker(
                    pair,
                    list_operation,
                    sink,
                    cancel_token,
                    poll_interval=config.poll_interval,
                    flood_step_ms=config.flood_step_ms,
                    flood_cap_ms=config.flood_cap_ms,
                )
            )
    except Exception:
        for resource in [*sources, *sinks]:
            resource.close()
        raise

    return workers, sources, sinks


def bootstrap(
    parsed: argparse.Namespace, cancel_token: CancellationToken | None = None
) -> BootstrapContext | None:
    """Bootstrap the application with all dependencies.

    Args:
        parsed: Parsed command-line arguments.
        cancel_token: Shared cancellation signal. Pass the token the signal
            handlers cancel so waits during credential resolution and
            subscription setup can be interrupted.

    Returns:
        BootstrapContext with all initialized dependencies, or None if
        startup failed (the reason is logged).
    """
    config = load_config(parsed.env_file)
    config = apply_cli_overrides(config, parsed)

    setup_logging(config.log_level, json_format=config.log_json, log_file=config.log_file)

    logger.info("Loading pairs from %s", config.pairs_file)
    try:
        pairs = load_pairs(config.pairs_file)
    except ConfigurationError as e:
        logger.error("Failed to load pairs: %s", e, extra={"pairs_file": str(config.pairs_file)})
        return None

    if not pairs:
        logger.error("No enabled pairs in %s, exiting", config.pairs_file)
        return None

    if not config.credentials.configured:
        logger.warning(
            "No credentials configured. Set RELAY_TENANT_IDS, RELAY_APP_IDS and "
            "RELAY_CERTIFICATE_PATHS or RELAY_APP_SECRETS; workers will find nothing to poll."
        )

    if cancel_token is None:
        cancel_token = CancellationToken()
    try:
        workers, sources, sinks = build_workers(config, pairs, cancel_token)
    except ClockSkewError as e:
        logger.error("Local clock is wrong, refusing to start: %s", e)
        return None
    except ConfigurationError as e:
        logger.error("Invalid pair configuration: %s", e)
        return None

    logger.info("Built %d worker(s)", len(workers))
    return BootstrapContext(
        config=config,
        pairs=pairs,
        cancel_token=cancel_token,
        workers=workers,
        sources=sources,
        sinks=sinks,
    )


__all__ = [
    "BootstrapContext",
    "apply_cli_overrides",
    "bootstrap",
    "build_workers",
]
