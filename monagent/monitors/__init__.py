from monagent.monitors.cron import CronError, CronSchedule
from monagent.monitors.registry import (
    CertificateTarget,
    CommandTarget,
    ConfigError,
    HttpTarget,
    MonitorDefinition,
    MonitorType,
    ProcessTarget,
    Registry,
    RegistryHolder,
    TcpTarget,
    load,
    load_file,
)

__all__ = [
    "ConfigError",
    "CronError",
    "CronSchedule",
    "MonitorDefinition",
    "MonitorType",
    "Registry",
    "RegistryHolder",
    "load",
    "load_file",
]
