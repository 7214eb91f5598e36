"""Monitor registry — validates monitor config into immutable snapshots.

Every component reads monitor definitions from a ``Registry`` snapshot.
A reload builds a complete new snapshot and swaps the reference held by
``RegistryHolder``; snapshots are never edited in place.
"""

from __future__ import annotations

import logging
import re
import shlex
import threading
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Union

import yaml

from .cron import CronError, CronSchedule

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 10_000
DEFAULT_WARN_DAYS = 14


class ConfigError(Exception):
    """Raised when monitor config fails validation. Fatal at startup."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        summary = "; ".join(errors[:5])
        if len(errors) > 5:
            summary += f" (+{len(errors) - 5} more)"
        super().__init__(f"Invalid monitor configuration: {summary}")


# ── Data models ──────────────────────────────────────────────────────────────


class MonitorType(str, Enum):
    HTTP = "http"
    TCP = "tcp"
    COMMAND = "command"
    CERTIFICATE = "certificate"
    PROCESS = "process"


@dataclass(frozen=True)
class HttpTarget:
    url: str
    method: str = "GET"
    headers: tuple[tuple[str, str], ...] = ()
    body: str | None = None
    verify_tls: bool = True
    follow_redirects: bool = True
    accepted_status: tuple[tuple[int, int], ...] = ((200, 299),)
    body_pattern: str | None = None

    def accepts(self, status_code: int) -> bool:
        return any(low <= status_code <= high for low, high in self.accepted_status)


@dataclass(frozen=True)
class TcpTarget:
    host: str
    port: int


@dataclass(frozen=True)
class CommandTarget:
    argv: tuple[str, ...]
    accepted_exit_codes: tuple[int, ...] = (0,)
    cwd: str | None = None


@dataclass(frozen=True)
class CertificateTarget:
    host: str
    port: int = 443
    server_name: str | None = None
    warn_days: int = DEFAULT_WARN_DAYS


@dataclass(frozen=True)
class ProcessTarget:
    name_pattern: str | None = None
    pid: int | None = None
    pid_file: str | None = None


Target = Union[HttpTarget, TcpTarget, CommandTarget, CertificateTarget, ProcessTarget]


@dataclass(frozen=True)
class MonitorDefinition:
    """A single validated monitor. Immutable once loaded."""

    id: str
    type: MonitorType
    target: Target
    schedule: CronSchedule
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    retries: int = 0
    retry_backoff_ms: int = 0
    failure_threshold: int = 1
    recovery_threshold: int = 1
    enabled: bool = True
    description: str = ""


# ── Registry ─────────────────────────────────────────────────────────────────


class Registry:
    """Immutable snapshot of the monitor set for one run (or one reload)."""

    def __init__(self, monitors: Iterable[MonitorDefinition] = ()) -> None:
        ordered = tuple(monitors)
        by_id: dict[str, MonitorDefinition] = {}
        for m in ordered:
            if m.id in by_id:
                raise ConfigError([f"Duplicate monitor id: {m.id!r}"])
            by_id[m.id] = m
        self._monitors = ordered
        self._by_id = MappingProxyType(by_id)

    def __iter__(self) -> Iterator[MonitorDefinition]:
        return iter(self._monitors)

    def __len__(self) -> int:
        return len(self._monitors)

    def __contains__(self, monitor_id: object) -> bool:
        return monitor_id in self._by_id

    def get(self, monitor_id: str) -> MonitorDefinition | None:
        return self._by_id.get(monitor_id)

    @property
    def ids(self) -> list[str]:
        return [m.id for m in self._monitors]

    def enabled(self) -> list[MonitorDefinition]:
        return [m for m in self._monitors if m.enabled]


SwapListener = Callable[[Registry, Registry], None]


class RegistryHolder:
    """Holds the current snapshot; reload swaps the reference atomically."""

    def __init__(self, registry: Registry | None = None) -> None:
        self._current = registry or Registry()
        self._swap_lock = threading.Lock()
        self._listeners: list[SwapListener] = []

    @property
    def current(self) -> Registry:
        return self._current

    def subscribe(self, listener: SwapListener) -> None:
        """Call ``listener(previous, current)`` after every swap, in the swapping thread."""
        self._listeners.append(listener)

    def swap(self, registry: Registry) -> Registry:
        """Publish ``registry`` and return the snapshot it replaced."""
        with self._swap_lock:
            previous, self._current = self._current, registry
        logger.info("Monitor registry swapped: %d -> %d monitors", len(previous), len(registry))
        for listener in list(self._listeners):
            listener(previous, registry)
        return previous

    def reload(self, config: Any) -> Registry:
        """Validate ``config`` and publish it. The old snapshot stays on ConfigError."""
        registry = load(config)
        self.swap(registry)
        return registry


# ── Loading ──────────────────────────────────────────────────────────────────


def load(config: Any) -> Registry:
    """Validate an in-memory monitor config and return a Registry snapshot.

    Accepts ``{"monitors": {...}}`` / ``{"monitors": [...]}`` or the bare
    mapping or list. Raises ConfigError listing every problem found.
    """
    if isinstance(config, Mapping) and "monitors" in config:
        config = config["monitors"]
    if config is None:
        config = []

    entries: list[tuple[str, Any]] = []
    errors: list[str] = []

    if isinstance(config, Mapping):
        for key, entry in config.items():
            entries.append((str(key), entry))
    elif isinstance(config, list):
        for index, entry in enumerate(config):
            if not isinstance(entry, Mapping) or not entry.get("id"):
                errors.append(f"monitors[{index}]: missing 'id'")
                continue
            entries.append((str(entry["id"]), entry))
    else:
        raise ConfigError([f"'monitors' must be a mapping or a list, got {type(config).__name__}"])

    seen: set[str] = set()
    monitors: list[MonitorDefinition] = []
    for monitor_id, entry in entries:
        if monitor_id in seen:
            errors.append(f"Duplicate monitor id: {monitor_id!r}")
            continue
        seen.add(monitor_id)
        try:
            monitors.append(_parse_monitor(monitor_id, entry))
        except ConfigError as e:
            errors.extend(e.errors)

    if errors:
        raise ConfigError(errors)

    logger.info("Loaded %d monitors (%d enabled)", len(monitors), sum(m.enabled for m in monitors))
    return Registry(monitors)


def load_file(path: Path | str) -> Registry:
    """Read a YAML (or JSON) monitor file and validate it."""
    path = Path(path)
    try:
        raw = yaml.load(path.read_text(encoding="utf-8"), Loader=_UniqueKeyLoader)
    except OSError as e:
        raise ConfigError([f"Cannot read {path}: {e}"]) from e
    except yaml.YAMLError as e:
        raise ConfigError([f"Cannot parse {path}: {e}"]) from e
    return load(raw)


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that rejects duplicate mapping keys instead of overwriting."""

    def construct_mapping(self, node: yaml.MappingNode, deep: bool = False) -> dict[Any, Any]:
        keys = set()
        for key_node, _ in node.value:
            key = self.construct_object(key_node, deep=deep)
            if key in keys:
                raise ConfigError([f"Duplicate key {key!r} at line {key_node.start_mark.line + 1}"])
            keys.add(key)
        return super().construct_mapping(node, deep=deep)


# ── Parsers ──────────────────────────────────────────────────────────────────


class _Entry:
    """Typed field access over one raw mapping, collecting errors."""

    def __init__(self, raw: Mapping[str, Any], where: str, errors: list[str]) -> None:
        self.raw = raw
        self.where = where
        self.errors = errors

    def fail(self, message: str) -> None:
        self.errors.append(f"{self.where}: {message}")

    def string(self, key: str, default: str | None = None, required: bool = False) -> str | None:
        value = self.raw.get(key)
        if value is None:
            if required:
                self.fail(f"missing required field '{key}'")
            return default
        if not isinstance(value, str) or not value.strip():
            self.fail(f"'{key}' must be a non-empty string")
            return default
        return value

    def integer(
        self, key: str, default: int | None = None, minimum: int | None = None,
        maximum: int | None = None, required: bool = False,
    ) -> int | None:
        value = self.raw.get(key)
        if value is None:
            if required:
                self.fail(f"missing required field '{key}'")
            return default
        # bool is an int subclass
        if isinstance(value, bool) or not isinstance(value, int):
            self.fail(f"'{key}' must be an integer")
            return default
        if minimum is not None and value < minimum:
            self.fail(f"'{key}' must be >= {minimum}, got {value}")
            return default
        if maximum is not None and value > maximum:
            self.fail(f"'{key}' must be <= {maximum}, got {value}")
            return default
        return value

    def boolean(self, key: str, default: bool) -> bool:
        value = self.raw.get(key)
        if value is None:
            return default
        if not isinstance(value, bool):
            self.fail(f"'{key}' must be true or false")
            return default
        return value

    def pattern(self, key: str) -> str | None:
        value = self.string(key)
        if value is None:
            return None
        try:
            re.compile(value)
        except re.error as e:
            self.fail(f"'{key}' is not a valid regular expression: {e}")
            return None
        return value


def _parse_monitor(monitor_id: str, raw: Any) -> MonitorDefinition:
    where = f"monitor {monitor_id!r}"
    if not isinstance(raw, Mapping):
        raise ConfigError([f"{where}: entry must be a mapping"])

    errors: list[str] = []
    entry = _Entry(raw, where, errors)

    type_name = entry.string("type", required=True)
    monitor_type: MonitorType | None = None
    if type_name is not None:
        try:
            monitor_type = MonitorType(type_name.lower())
        except ValueError:
            entry.fail(
                f"unknown type {type_name!r} (expected one of "
                f"{', '.join(t.value for t in MonitorType)})"
            )

    schedule: CronSchedule | None = None
    expression = entry.string("schedule", required=True)
    if expression is not None:
        try:
            schedule = CronSchedule.parse(expression)
        except CronError as e:
            entry.fail(f"invalid schedule: {e}")

    target: Target | None = None
    raw_target = raw.get("target")
    if not isinstance(raw_target, Mapping):
        entry.fail("'target' must be a mapping")
    elif monitor_type is not None:
        target = _TARGET_PARSERS[monitor_type](_Entry(raw_target, f"{where} target", errors))

    timeout_ms = entry.integer("timeoutMs", DEFAULT_TIMEOUT_MS, minimum=1)
    retries = entry.integer("retries", 0, minimum=1)  # omitted means no retries
    retry_backoff_ms = entry.integer("retryBackoffMs", 0, minimum=0)
    failure_threshold = entry.integer("failureThreshold", 1, minimum=1)
    recovery_threshold = entry.integer("recoveryThreshold", 1, minimum=1)
    enabled = entry.boolean("enabled", True)
    description = entry.string("description", "") or ""

    if errors:
        raise ConfigError(errors)

    return MonitorDefinition(
        id=monitor_id,
        type=monitor_type,
        target=target,
        schedule=schedule,
        timeout_ms=timeout_ms,
        retries=retries,
        retry_backoff_ms=retry_backoff_ms,
        failure_threshold=failure_threshold,
        recovery_threshold=recovery_threshold,
        enabled=enabled,
        description=description,
    )


def _parse_http(entry: _Entry) -> HttpTarget:
    url = entry.string("url", required=True)
    if url is not None and not url.lower().startswith(("http://", "https://")):
        entry.fail(f"'url' must start with http:// or https://, got {url!r}")

    headers: list[tuple[str, str]] = []
    raw_headers = entry.raw.get("headers") or {}
    if not isinstance(raw_headers, Mapping):
        entry.fail("'headers' must be a mapping")
    else:
        for name, value in raw_headers.items():
            headers.append((str(name), str(value)))

    return HttpTarget(
        url=url or "",
        method=(entry.string("method", "GET") or "GET").upper(),
        headers=tuple(headers),
        body=entry.string("body"),
        verify_tls=entry.boolean("verifyTls", True),
        follow_redirects=entry.boolean("followRedirects", True),
        accepted_status=_parse_status_ranges(entry),
        body_pattern=entry.pattern("bodyPattern"),
    )


def _parse_status_ranges(entry: _Entry) -> tuple[tuple[int, int], ...]:
    if "expectedStatus" in entry.raw and "acceptedStatus" in entry.raw:
        entry.fail("use either 'expectedStatus' or 'acceptedStatus', not both")
        return ((200, 299),)

    raw = entry.raw.get("acceptedStatus", entry.raw.get("expectedStatus"))
    if raw is None:
        return ((200, 299),)

    items = raw if isinstance(raw, list) else [raw]
    ranges: list[tuple[int, int]] = []
    for item in items:
        if isinstance(item, int) and not isinstance(item, bool):
            low = high = item
        elif isinstance(item, str) and re.fullmatch(r"\d{3}(-\d{3})?", item.strip()):
            first, _, last = item.strip().partition("-")
            low, high = int(first), int(last or first)
        else:
            entry.fail(f"invalid accepted status {item!r} (use 200 or '200-299')")
            continue
        if not 100 <= low <= high <= 599:
            entry.fail(f"accepted status {item!r} outside 100-599")
            continue
        ranges.append((low, high))
    if not ranges and items:
        return ((200, 299),)
    return tuple(ranges)


def _parse_tcp(entry: _Entry) -> TcpTarget:
    return TcpTarget(
        host=entry.string("host", required=True) or "",
        port=entry.integer("port", 0, minimum=1, maximum=65535, required=True) or 0,
    )


def _parse_command(entry: _Entry) -> CommandTarget:
    raw = entry.raw.get("command")
    argv: tuple[str, ...] = ()
    if isinstance(raw, str) and raw.strip():
        try:
            argv = tuple(shlex.split(raw))
        except ValueError as e:
            entry.fail(f"cannot split 'command': {e}")
    elif isinstance(raw, list) and raw and all(isinstance(a, str) for a in raw):
        argv = tuple(raw)
    else:
        entry.fail("'command' must be a non-empty string or list of strings")

    codes = entry.raw.get("acceptedExitCodes", [0])
    if not isinstance(codes, list) or not codes or not all(
        isinstance(c, int) and not isinstance(c, bool) for c in codes
    ):
        entry.fail("'acceptedExitCodes' must be a non-empty list of integers")
        codes = [0]

    return CommandTarget(argv=argv, accepted_exit_codes=tuple(codes), cwd=entry.string("cwd"))


def _parse_certificate(entry: _Entry) -> CertificateTarget:
    return CertificateTarget(
        host=entry.string("host", required=True) or "",
        port=entry.integer("port", 443, minimum=1, maximum=65535) or 443,
        server_name=entry.string("serverName"),
        warn_days=entry.integer("warnDays", DEFAULT_WARN_DAYS, minimum=0),
    )


def _parse_process(entry: _Entry) -> ProcessTarget:
    target = ProcessTarget(
        name_pattern=entry.pattern("namePattern"),
        pid=entry.integer("pid", minimum=1),
        pid_file=entry.string("pidFile"),
    )
    if not any(k in entry.raw for k in ("namePattern", "pid", "pidFile")):
        entry.fail("one of 'namePattern', 'pid' or 'pidFile' is required")
    return target


_TARGET_PARSERS = {
    MonitorType.HTTP: _parse_http,
    MonitorType.TCP: _parse_tcp,
    MonitorType.COMMAND: _parse_command,
    MonitorType.CERTIFICATE: _parse_certificate,
    MonitorType.PROCESS: _parse_process,
}
