"""Health subsystem — check engine, result store, scheduler."""

from .engine import CheckResult, ErrorKind, Status, execute
from .scheduler import DispatchOutcome, HealthScheduler
from .store import InvariantViolation, MonitorState, ResultStore
