#!/usr/bin/env python3
"""droplet-dns - DNS records derived from live droplets

Periodically lists DigitalOcean droplets, turns them into DNS records using a
small rule file (see droplet_dns.rules) and reconciles every affected zone in
DigitalOcean DNS. Desired state is recomputed from scratch on every cycle, so a
restart loses nothing.

NS record deletions proposed by the provider are never applied.

Environment variables:

    Credentials:
        DO_TOKEN                  DigitalOcean API token (required)

    Settings file:
        DROPLET_DNS_CONFIG        Optional YAML file with the settings below
                                  (lower-case keys). Environment variables
                                  take precedence over the file.
                                  Example:
                                    rules_path: /config/names.cfg
                                    poll_interval_seconds: 60
                                    full_zone_sync: false

    Rules:
        RULES_PATH                Rule file path (default: names.cfg)
        STRICT_RULE_MODIFIERS     Reject unrecognized trailing modifiers
                                  instead of ignoring them (default: true)

    DigitalOcean:
        DO_API_URL                API base URL (default: https://api.digitalocean.com/v2)
        REQUEST_TIMEOUT_SECONDS   Per-request timeout (default: 10)
        FULL_ZONE_SYNC            Reconcile every record type in a zone, not only
                                  A/AAAA/SRV (default: false)
        PUBLIC_SUFFIX_FETCH       Download the live public suffix list instead of
                                  using the bundled snapshot (default: false)

    Runtime:
        SYNC_MODE                 "once" or "watch" (polling loop) (default: watch)
        POLL_INTERVAL_SECONDS     Sleep between cycles in watch mode (default: 30)
        LOG_LEVEL                 DEBUG, INFO, WARNING, ERROR (default: INFO)
"""

from __future__ import annotations

import logging
import os
import signal
import sys
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .models import (
    DEFAULT_POLL_INTERVAL_SECONDS,
    ConfigError,
    Correction,
    DropletDNSError,
)
from .providers import (
    DEFAULT_API_URL,
    DigitalOceanDNSProvider,
    DigitalOceanInstanceSource,
    DNSProvider,
    InstanceSource,
)
from .rules import PublicSuffixResolver, build_zone_states, load_rules

logger = logging.getLogger(__name__)

SYNC_MODES = {"once", "watch"}

# =============================================================================
# Configuration
# =============================================================================


@dataclass(frozen=True)
class Config:
    """Process configuration, passed explicitly to every component."""

    token: str = field(repr=False)
    api_url: str = DEFAULT_API_URL
    rules_path: str = "names.cfg"
    sync_mode: str = "watch"
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    log_level: str = "INFO"
    request_timeout_seconds: float = 10.0
    strict_rule_modifiers: bool = True
    full_zone_sync: bool = False
    public_suffix_fetch: bool = False


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_number(name: str, value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a number, got '{value}'") from None
    if number <= 0:
        raise ConfigError(f"{name} must be positive, got {value}")
    return number


def load_settings_file(path: str) -> Dict[str, Any]:
    """Load the optional YAML settings file. A missing file yields {}."""
    if not path or not os.path.exists(path):
        return {}
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to load settings from {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Settings file {path} must contain a mapping")
    return {str(k).lower(): v for k, v in data.items()}


def load_config(environ: Optional[Mapping[str, str]] = None) -> Config:
    """Build the configuration from a settings file and the environment."""
    env = os.environ if environ is None else environ

    token = env.get("DO_TOKEN", "").strip()
    if not token:
        raise ConfigError("DO_TOKEN env var is required")

    settings = load_settings_file(env.get("DROPLET_DNS_CONFIG", ""))
    if "do_token" in settings:
        logger.warning("Ignoring do_token in settings file; set DO_TOKEN in the environment")

    def setting(key: str, default: Any) -> Any:
        value = env.get(key.upper())
        if value is not None and value.strip() != "":
            return value.strip()
        return settings.get(key, default)

    sync_mode = str(setting("sync_mode", "watch")).lower().strip()
    if sync_mode not in SYNC_MODES:
        raise ConfigError(f"Invalid SYNC_MODE: {sync_mode}. Use 'once' or 'watch'")

    return Config(
        token=token,
        api_url=str(setting("do_api_url", DEFAULT_API_URL)),
        rules_path=str(setting("rules_path", "names.cfg")),
        sync_mode=sync_mode,
        poll_interval_seconds=_parse_number(
            "POLL_INTERVAL_SECONDS",
            setting("poll_interval_seconds", DEFAULT_POLL_INTERVAL_SECONDS),
        ),
        log_level=str(setting("log_level", "INFO")).upper(),
        request_timeout_seconds=_parse_number(
            "REQUEST_TIMEOUT_SECONDS", setting("request_timeout_seconds", 10)
        ),
        strict_rule_modifiers=_parse_bool(setting("strict_rule_modifiers", True)),
        full_zone_sync=_parse_bool(setting("full_zone_sync", False), default=False),
        public_suffix_fetch=_parse_bool(setting("public_suffix_fetch", False), default=False),
    )


# =============================================================================
# Logging Setup
# =============================================================================


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


# =============================================================================
# Core Syncer
# =============================================================================


@dataclass
class CycleReport:
    """Outcome of one reconciliation cycle."""

    zones: List[str] = field(default_factory=list)
    applied: List[Correction] = field(default_factory=list)
    skipped: List[Correction] = field(default_factory=list)
    interrupted: bool = False


class DropletDNSSyncer:
    def __init__(
        self,
        *,
        instance_source: InstanceSource,
        dns_provider: DNSProvider,
        rules_path: str,
        resolver: Optional[PublicSuffixResolver] = None,
        strict_rule_modifiers: bool = True,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ):
        self.instance_source = instance_source
        self.dns_provider = dns_provider
        self.rules_path = rules_path
        self.resolver = resolver or PublicSuffixResolver()
        self.strict_rule_modifiers = strict_rule_modifiers
        self.poll_interval_seconds = poll_interval_seconds
        self._rules_mtime: Optional[float] = None

    def _note_rule_changes(self) -> None:
        try:
            mtime = Path(self.rules_path).stat().st_mtime
        except OSError:
            mtime = 0.0
        if self._rules_mtime is not None and mtime != self._rules_mtime:
            logger.info(f"Rule file change detected in {Path(self.rules_path).name}")
        self._rules_mtime = mtime

    def sync_once(self, stop_event: Optional[threading.Event] = None) -> CycleReport:
        """Run one full cycle. Any DropletDNSError aborts the cycle."""
        report = CycleReport()

        instances = self.instance_source.list_instances()
        self._note_rule_changes()
        rules = load_rules(self.rules_path, strict_modifiers=self.strict_rule_modifiers)
        zones = build_zone_states(instances, rules, self.resolver)
        logger.info(
            f"{len(instances)} instance(s), {len(rules)} rule(s) -> "
            f"{sum(len(z.records) for z in zones.values())} record(s) in {len(zones)} zone(s)"
        )

        for zone, zone_state in zones.items():
            if stop_event is not None and stop_event.is_set():
                logger.info(f"Shutdown requested; stopping before zone {zone}")
                report.interrupted = True
                break

            logger.info(f"----- {zone}")
            corrections = self.dns_provider.get_corrections(zone_state)
            for correction in corrections:
                if correction.is_ns_deletion():
                    logger.info(f"Skipping NS deletion: {correction.msg}")
                    report.skipped.append(correction)
                    continue
                try:
                    correction.apply()
                except DropletDNSError as e:
                    logger.error(f"{correction.msg}: {e}")
                    raise
                logger.info(correction.msg)
                report.applied.append(correction)
            report.zones.append(zone)

        return report

    def run_forever(self, stop_event: threading.Event) -> None:
        """Cycle until ``stop_event`` is set; errors never stop the loop."""
        while not stop_event.is_set():
            start = time.monotonic()
            try:
                self.sync_once(stop_event)
            except DropletDNSError as e:
                logger.error(f"Error running dns sync: {e}")
            except Exception as e:
                logger.error(f"Unexpected error running dns sync: {e}", exc_info=True)
            logger.info(f"Synced records in {time.monotonic() - start:.2f}s")
            stop_event.wait(self.poll_interval_seconds)


# =============================================================================
# Main
# =============================================================================


def create_syncer(config: Config) -> DropletDNSSyncer:
    """Wire up collaborators from the configuration."""
    instance_source = DigitalOceanInstanceSource(
        config.token,
        api_url=config.api_url,
        timeout_seconds=config.request_timeout_seconds,
    )
    dns_provider = DigitalOceanDNSProvider(
        config.token,
        api_url=config.api_url,
        timeout_seconds=config.request_timeout_seconds,
        full_zone_sync=config.full_zone_sync,
    )
    return DropletDNSSyncer(
        instance_source=instance_source,
        dns_provider=dns_provider,
        rules_path=config.rules_path,
        resolver=PublicSuffixResolver(fetch=config.public_suffix_fetch),
        strict_rule_modifiers=config.strict_rule_modifiers,
        poll_interval_seconds=config.poll_interval_seconds,
    )


def _install_signal_handlers(stop_event: threading.Event) -> None:
    def _handle(signum: int, frame: Any) -> None:
        logger.info("Shutting down gracefully...")
        stop_event.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


def main():
    """Main entry point."""
    try:
        config = load_config()
    except ConfigError as e:
        configure_logging("INFO")
        logger.error(str(e))
        sys.exit(1)

    configure_logging(config.log_level)
    syncer = create_syncer(config)

    logger.info(f"droplet-dns: {syncer.instance_source.name} -> {syncer.dns_provider.name}")
    logger.info(f"Rules: {config.rules_path}")
    logger.info(f"Sync mode: {config.sync_mode}")

    if config.sync_mode == "once":
        try:
            syncer.sync_once()
        except DropletDNSError as e:
            logger.error(f"Error running dns sync: {e}")
            sys.exit(1)
        return

    logger.info(f"Poll interval: {config.poll_interval_seconds:g}s")
    stop_event = threading.Event()
    _install_signal_handlers(stop_event)
    syncer.run_forever(stop_event)


if __name__ == "__main__":
    main()
