"""Runtime configuration and logging setup for the orchestrator."""
from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ide_types import InstanceKind

ENV_PREFIX = "IDE_ORCH_"

DEFAULT_PORT_RANGES: Dict[InstanceKind, Tuple[int, int]] = {
    InstanceKind.CURSOR: (9222, 9231),
    InstanceKind.VSCODE: (9232, 9241),
    InstanceKind.WINDSURF: (9242, 9251),
}

DEFAULT_LAUNCH_COMMANDS: Dict[InstanceKind, List[str]] = {
    InstanceKind.CURSOR: ["cursor", "--remote-debugging-port={port}", "--user-data-dir={user_data_dir}"],
    InstanceKind.VSCODE: ["code", "--remote-debugging-port={port}", "--user-data-dir={user_data_dir}"],
    InstanceKind.WINDSURF: ["windsurf", "--remote-debugging-port={port}", "--user-data-dir={user_data_dir}"],
}


def parse_duration(value: str | int | float | None, default_seconds: float) -> float:
    """Parse ``"500ms"``, ``"15s"``, ``"2m"``, ``"1h"`` or a bare number of seconds."""
    if value in (None, ""):
        return default_seconds
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip().lower()
    try:
        if text.endswith("ms"):
            return float(text[:-2]) / 1000.0
        if text.endswith("s"):
            return float(text[:-1])
        if text.endswith("m"):
            return float(text[:-1]) * 60
        if text.endswith("h"):
            return float(text[:-1]) * 3600
        return float(text)
    except ValueError:
        return default_seconds


@dataclass
class OrchestratorConfig:
    probe_host: str = "127.0.0.1"
    port_ranges: Dict[InstanceKind, Tuple[int, int]] = field(
        default_factory=lambda: dict(DEFAULT_PORT_RANGES)
    )
    per_port_timeout: float = 2.0
    probe_concurrency: int = 8
    discovery_interval: float = 30.0
    health_interval: float = 15.0
    staleness_threshold: float = 10.0
    slow_response_threshold: float = 1.5
    failure_threshold: int = 3
    subscriber_queue_size: int = 256
    heartbeat_interval: float = 15.0
    switch_timeout: float = 10.0
    start_timeout: float = 30.0
    state_dir: str = field(default_factory=lambda: os.path.join(os.getcwd(), ".orch"))
    preference_save_retries: int = 3
    cache_max_bytes: int = 50 * 1024 * 1024
    cache_max_entries: int = 1000
    cache_default_ttl_ms: int = 5 * 60 * 1000
    cache_durable: bool = False
    launch_commands: Dict[InstanceKind, List[str]] = field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_LAUNCH_COMMANDS.items()}
    )
    host: str = "127.0.0.1"
    port: int = 8766
    log_level: str = "INFO"
    log_json: bool = False

    @property
    def state_file(self) -> str:
        return os.path.join(self.state_dir, "state.json")

    @property
    def full_port_range(self) -> Tuple[int, int]:
        starts = [start for start, _ in self.port_ranges.values()]
        ends = [end for _, end in self.port_ranges.values()]
        return min(starts), max(ends)

    def kind_for_port(self, port: int) -> Optional[InstanceKind]:
        for kind, (start, end) in self.port_ranges.items():
            if start <= port <= end:
                return kind
        return None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any) -> "OrchestratorConfig":
        env = os.environ if environ is None else environ
        cfg = cls()

        def get(name: str) -> Optional[str]:
            return env.get(ENV_PREFIX + name)

        cfg.probe_host = get("PROBE_HOST") or cfg.probe_host
        cfg.per_port_timeout = parse_duration(get("PORT_TIMEOUT"), cfg.per_port_timeout)
        cfg.discovery_interval = parse_duration(get("DISCOVERY_INTERVAL"), cfg.discovery_interval)
        cfg.health_interval = parse_duration(get("HEALTH_INTERVAL"), cfg.health_interval)
        cfg.staleness_threshold = parse_duration(get("STALENESS"), cfg.staleness_threshold)
        cfg.heartbeat_interval = parse_duration(get("HEARTBEAT"), cfg.heartbeat_interval)
        cfg.switch_timeout = parse_duration(get("SWITCH_TIMEOUT"), cfg.switch_timeout)
        cfg.state_dir = get("STATE_DIR") or cfg.state_dir
        cfg.log_level = (get("LOG_LEVEL") or cfg.log_level).upper()
        cfg.log_json = (get("LOG_JSON") or "").lower() in {"1", "true", "yes"}
        cfg.cache_durable = (get("CACHE_DURABLE") or "").lower() in {"1", "true", "yes"}
        for name, attr in (
            ("PROBE_CONCURRENCY", "probe_concurrency"),
            ("FAILURE_THRESHOLD", "failure_threshold"),
            ("QUEUE_SIZE", "subscriber_queue_size"),
            ("CACHE_MAX_ENTRIES", "cache_max_entries"),
            ("CACHE_MAX_BYTES", "cache_max_bytes"),
        ):
            raw = get(name)
            if raw:
                try:
                    setattr(cfg, attr, int(raw))
                except ValueError:
                    logging.getLogger(__name__).warning("ignoring %s%s=%r", ENV_PREFIX, name, raw)
        for kind in InstanceKind:
            raw = get(f"{kind.name}_PORTS")
            if raw and "-" in raw:
                start, _, end = raw.partition("-")
                try:
                    cfg.port_ranges[kind] = (int(start), int(end))
                except ValueError:
                    logging.getLogger(__name__).warning("ignoring bad port range %r for %s", raw, kind.value)
            command = get(f"{kind.name}_COMMAND")
            if command:
                cfg.launch_commands[kind] = command.split()
        for key, value in overrides.items():
            if value is not None:
                setattr(cfg, key, value)
        return cfg


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def configure_logging(level: str = "INFO", json_format: bool = False) -> None:
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    if json_format:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)-7s %(name)s: %(message)s")
        )
    root.addHandler(handler)
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
