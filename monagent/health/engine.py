"""Health check engine — runs one monitor check and produces a CheckResult.

Supports: HTTP(S), TCP connect, local command, TLS certificate expiry,
process presence. Every attempt is bounded by the monitor's timeout and
watches the shared cancellation event; failed attempts are retried inside
the same ``execute()`` call.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
import ssl
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any

import httpx
import psutil

from ..monitors.registry import (
    CertificateTarget,
    CommandTarget,
    HttpTarget,
    MonitorDefinition,
    MonitorType,
    ProcessTarget,
    TcpTarget,
)

logger = logging.getLogger(__name__)

MAX_MESSAGE_CHARS = 512
BODY_EXCERPT_CHARS = 200

# Time a timed-out or cancelled operation gets to clean up (kill child, close socket)
_CLEANUP_GRACE = 1.0

# OpenSSL X509_V_ERR_CERT_HAS_EXPIRED
_CERT_HAS_EXPIRED = 10


# ── Models ───────────────────────────────────────────────────────────────────


class Status(str, Enum):
    OK = "Ok"
    WARN = "Warn"
    FAIL = "Fail"
    CANCELLED = "Cancelled"  # result only
    UNKNOWN = "Unknown"  # published state only


class ErrorKind(str, Enum):
    TIMEOUT = "Timeout"
    CONNECTION_FAILURE = "ConnectionFailure"
    TLS_FAILURE = "TlsFailure"
    UNEXPECTED_STATUS = "UnexpectedStatus"
    UNEXPECTED_BODY = "UnexpectedBody"
    CERTIFICATE_EXPIRED = "CertificateExpired"
    PROCESS_NOT_FOUND = "ProcessNotFound"
    COMMAND_NON_ZERO_EXIT = "CommandNonZeroExit"
    SPAWN_FAILURE = "SpawnFailure"
    INTERNAL = "Internal"


@dataclass
class CheckResult:
    """Result of one execute() call for one monitor."""

    monitor_id: str
    status: Status
    started_at: datetime
    finished_at: datetime
    error_kind: ErrorKind | None = None
    message: str = ""
    attempts: int = 1

    @property
    def latency_ms(self) -> float:
        return round((self.finished_at - self.started_at).total_seconds() * 1000, 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "monitorId": self.monitor_id,
            "status": self.status.value,
            "errorKind": self.error_kind.value if self.error_kind else None,
            "message": self.message,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat(),
            "latencyMs": self.latency_ms,
            "attempts": self.attempts,
        }


@dataclass
class Probe:
    """Outcome of a single attempt that did not fail."""

    status: Status
    message: str


class CheckFailure(Exception):
    """A failed attempt. Carries the error kind recorded in the result."""

    def __init__(self, kind: ErrorKind, message: str) -> None:
        self.kind = kind
        self.message = message
        super().__init__(f"{kind.value}: {message}")


class CheckCancelled(Exception):
    """The cancellation event fired while an attempt was suspended."""


def truncate(text: str, limit: int = MAX_MESSAGE_CHARS) -> str:
    if len(text) <= limit:
        return text
    if limit <= 3:
        return text[:limit]
    return text[: limit - 3] + "..."


def _excerpt(text: str) -> str:
    return truncate(" ".join(text.split()), BODY_EXCERPT_CHARS)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Check runners ────────────────────────────────────────────────────────────


async def run_http_check(target: HttpTarget, timeout_s: float) -> Probe:
    """HTTP(S) check — accepted status range plus optional body pattern."""
    try:
        async with httpx.AsyncClient(
            timeout=timeout_s,
            verify=target.verify_tls,
            follow_redirects=target.follow_redirects,
        ) as client:
            resp = await client.request(
                target.method, target.url, headers=dict(target.headers), content=target.body,
            )
    except httpx.TimeoutException as e:
        raise CheckFailure(ErrorKind.TIMEOUT, f"Request timed out ({timeout_s * 1000:.0f}ms)") from e
    except httpx.HTTPError as e:
        if _is_tls_error(e):
            raise CheckFailure(ErrorKind.TLS_FAILURE, f"TLS error: {e}") from e
        raise CheckFailure(
            ErrorKind.CONNECTION_FAILURE, f"Connection error: {type(e).__name__}: {e}",
        ) from e

    if not target.accepts(resp.status_code):
        raise CheckFailure(
            ErrorKind.UNEXPECTED_STATUS,
            f"Unexpected status {resp.status_code}: {_excerpt(resp.text)}",
        )
    if target.body_pattern and not re.search(target.body_pattern, resp.text):
        raise CheckFailure(
            ErrorKind.UNEXPECTED_BODY,
            f"Body does not match {target.body_pattern!r}: {_excerpt(resp.text)}",
        )
    return Probe(Status.OK, f"{resp.status_code} {resp.reason_phrase}".strip())


def _is_tls_error(exc: BaseException) -> bool:
    seen: BaseException | None = exc
    for _ in range(10):
        if seen is None:
            break
        if isinstance(seen, ssl.SSLError):
            return True
        seen = seen.__cause__ or seen.__context__
    text = str(exc)
    return "SSL" in text or "CERTIFICATE_VERIFY_FAILED" in text


async def run_tcp_check(target: TcpTarget, timeout_s: float) -> Probe:
    """Raw TCP port connectivity check."""
    try:
        _, writer = await asyncio.open_connection(target.host, target.port)
    except ConnectionRefusedError as e:
        raise CheckFailure(
            ErrorKind.CONNECTION_FAILURE, f"Connection refused: {target.host}:{target.port}",
        ) from e
    except OSError as e:
        raise CheckFailure(ErrorKind.CONNECTION_FAILURE, f"TCP connect failed: {e}") from e

    writer.close()
    with contextlib.suppress(OSError):
        await writer.wait_closed()
    return Probe(Status.OK, f"Port {target.port} open on {target.host}")


async def run_command_check(target: CommandTarget, timeout_s: float) -> Probe:
    """Run a local command (no shell); success is an accepted exit code."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *target.argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            cwd=target.cwd,
        )
    except OSError as e:
        raise CheckFailure(ErrorKind.SPAWN_FAILURE, f"Cannot start {target.argv[0]!r}: {e}") from e

    try:
        output, _ = await proc.communicate()
    except asyncio.CancelledError:
        if proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
        raise

    text = output.decode("utf-8", errors="replace").strip() if output else ""
    if proc.returncode not in target.accepted_exit_codes:
        raise CheckFailure(
            ErrorKind.COMMAND_NON_ZERO_EXIT,
            f"Exit code {proc.returncode}" + (f": {_excerpt(text)}" if text else ""),
        )
    return Probe(Status.OK, f"Exit code {proc.returncode}" + (f": {_excerpt(text)}" if text else ""))


async def run_certificate_check(target: CertificateTarget, timeout_s: float) -> Probe:
    """Check TLS chain validity and leaf certificate expiry."""
    ctx = ssl.create_default_context()
    server_name = target.server_name or target.host
    try:
        _, writer = await asyncio.open_connection(
            target.host, target.port, ssl=ctx, server_hostname=server_name,
            ssl_handshake_timeout=timeout_s,
        )
    except ssl.SSLCertVerificationError as e:
        if e.verify_code == _CERT_HAS_EXPIRED:
            raise CheckFailure(ErrorKind.CERTIFICATE_EXPIRED, f"Certificate expired: {e.verify_message}") from e
        raise CheckFailure(
            ErrorKind.TLS_FAILURE, f"Certificate chain invalid: {e.verify_message or e}",
        ) from e
    except ssl.SSLError as e:
        raise CheckFailure(ErrorKind.TLS_FAILURE, f"TLS handshake failed: {e}") from e
    except OSError as e:
        raise CheckFailure(ErrorKind.CONNECTION_FAILURE, f"TLS connect failed: {e}") from e

    try:
        ssl_object = writer.get_extra_info("ssl_object")
        cert = ssl_object.getpeercert() if ssl_object is not None else None
    finally:
        writer.close()

    if not cert or "notAfter" not in cert:
        raise CheckFailure(ErrorKind.TLS_FAILURE, "No certificate returned")

    expiry = datetime.fromtimestamp(ssl.cert_time_to_seconds(cert["notAfter"]), tz=timezone.utc)
    return evaluate_certificate_expiry(expiry, target.warn_days)


def evaluate_certificate_expiry(
    expiry: datetime, warn_days: int, now: datetime | None = None,
) -> Probe:
    """Grade a leaf certificate expiry. Raises CheckFailure once expired."""
    now = now or _utcnow()
    remaining = expiry - now
    days_left = remaining.days

    if remaining <= timedelta(0):
        raise CheckFailure(
            ErrorKind.CERTIFICATE_EXPIRED,
            f"Certificate EXPIRED {-days_left} days ago ({expiry.isoformat()})",
        )
    if remaining < timedelta(days=warn_days):
        return Probe(Status.WARN, f"Certificate expires in {days_left} days (warn < {warn_days})")
    return Probe(Status.OK, f"Certificate valid, expires in {days_left} days")


async def run_process_check(target: ProcessTarget, timeout_s: float) -> Probe:
    """Process presence check; the scan runs in the default thread pool."""
    loop = asyncio.get_running_loop()
    message = await loop.run_in_executor(None, find_process, target)
    return Probe(Status.OK, message)


def find_process(target: ProcessTarget) -> str:
    pattern = re.compile(target.name_pattern) if target.name_pattern else None

    pid = target.pid
    if target.pid_file:
        try:
            pid = int(Path(target.pid_file).read_text(encoding="utf-8").strip())
        except (OSError, ValueError) as e:
            raise CheckFailure(
                ErrorKind.PROCESS_NOT_FOUND, f"Cannot read pid file {target.pid_file}: {e}",
            ) from e

    if pid is not None:
        try:
            info = psutil.Process(pid).as_dict(attrs=["pid", "name", "cmdline"])
        except psutil.Error as e:
            raise CheckFailure(ErrorKind.PROCESS_NOT_FOUND, f"No process with pid {pid}") from e
        if pattern is not None and not _process_matches(pattern, info):
            raise CheckFailure(
                ErrorKind.PROCESS_NOT_FOUND,
                f"Process {pid} ({info.get('name')}) does not match {pattern.pattern!r}",
            )
        return f"Process {pid} ({info.get('name')}) running"

    for proc in psutil.process_iter(["pid", "name", "cmdline"]):
        if _process_matches(pattern, proc.info):
            return f"Found process {proc.info.get('name')} (pid {proc.info.get('pid')})"
    raise CheckFailure(
        ErrorKind.PROCESS_NOT_FOUND,
        f"No process matching {pattern.pattern if pattern else '*'!r}",
    )


def _process_matches(pattern: re.Pattern[str] | None, info: dict[str, Any]) -> bool:
    if pattern is None:
        return True
    name = info.get("name") or ""
    cmdline = " ".join(info.get("cmdline") or [])
    return bool(pattern.search(name) or pattern.search(cmdline))


# Dispatcher — one entry per MonitorType
CheckRunner = Callable[[Any, float], Awaitable[Probe]]

CHECK_RUNNERS: dict[MonitorType, CheckRunner] = {
    MonitorType.HTTP: run_http_check,
    MonitorType.TCP: run_tcp_check,
    MonitorType.COMMAND: run_command_check,
    MonitorType.CERTIFICATE: run_certificate_check,
    MonitorType.PROCESS: run_process_check,
}


# ── Execution ────────────────────────────────────────────────────────────────


async def _bounded(
    operation: Awaitable[Probe], timeout_s: float, cancel: asyncio.Event | None,
) -> Probe:
    """Await ``operation`` until it finishes, the timeout passes, or ``cancel`` fires."""
    op = asyncio.ensure_future(operation)
    waiters: set[asyncio.Future[Any]] = {op}
    stop: asyncio.Future[Any] | None = None
    if cancel is not None:
        stop = asyncio.ensure_future(cancel.wait())
        waiters.add(stop)

    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout_s, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for w in waiters:
            if not w.done():
                w.cancel()

    if op in done:
        return op.result()

    await asyncio.wait({op}, timeout=_CLEANUP_GRACE)
    if op.done() and not op.cancelled():
        op.exception()  # consumed; the attempt already lost the race
    if stop is not None and stop in done:
        raise CheckCancelled()
    raise CheckFailure(ErrorKind.TIMEOUT, f"Timed out after {timeout_s * 1000:.0f}ms")


async def _sleep_or_cancel(delay: float, cancel: asyncio.Event | None) -> bool:
    """Sleep for ``delay``; True if cancelled meanwhile."""
    if cancel is None:
        await asyncio.sleep(delay)
        return False
    try:
        await asyncio.wait_for(cancel.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return False
    return True


async def execute(
    definition: MonitorDefinition,
    cancel: asyncio.Event | None = None,
    max_message_chars: int = MAX_MESSAGE_CHARS,
) -> CheckResult:
    """Run a monitor's check (with retries) and return the final CheckResult."""
    runner = CHECK_RUNNERS[definition.type]
    timeout_s = definition.timeout_ms / 1000
    backoff_s = definition.retry_backoff_ms / 1000
    started = _utcnow()

    attempts = 0
    status: Status = Status.FAIL
    kind: ErrorKind | None = None
    message = ""
    while True:
        if cancel is not None and cancel.is_set():
            status, kind, message = Status.CANCELLED, None, "Check cancelled"
            break
        attempts += 1
        try:
            probe = await _bounded(runner(definition.target, timeout_s), timeout_s, cancel)
        except CheckCancelled:
            status, kind, message = Status.CANCELLED, None, "Check cancelled"
            break
        except CheckFailure as e:
            status, kind, message = Status.FAIL, e.kind, e.message
        except Exception as e:
            logger.exception("Check %s raised unexpectedly", definition.id)
            status, kind, message = Status.FAIL, ErrorKind.INTERNAL, f"Error: {type(e).__name__}: {e}"
        else:
            status, kind, message = probe.status, None, probe.message
            break

        if attempts > definition.retries:
            break
        logger.debug(
            "Check %s attempt %d/%d failed (%s), retrying",
            definition.id, attempts, definition.retries + 1, kind.value if kind else "?",
        )
        if backoff_s > 0:
            if await _sleep_or_cancel(backoff_s, cancel):
                status, kind, message = Status.CANCELLED, None, "Check cancelled"
                break
            backoff_s *= 2

    return CheckResult(
        monitor_id=definition.id,
        status=status,
        started_at=started,
        finished_at=_utcnow(),
        error_kind=kind,
        message=truncate(message, max_message_chars),
        attempts=attempts,
    )
