"""Host information endpoints — memory, CPU and load average via psutil."""

from __future__ import annotations

from typing import Any

import psutil
from fastapi import APIRouter

system_router = APIRouter(prefix="/system")


@system_router.get("/meminfo")
def meminfo() -> dict[str, Any]:
    vm = psutil.virtual_memory()
    swap = psutil.swap_memory()
    return {
        "totalMem": vm.total,
        "freeMem": vm.free,
        "availableMem": vm.available,
        "swapTotal": swap.total,
        "swapFree": swap.free,
    }


@system_router.get("/cpuinfo")
def cpuinfo() -> dict[str, Any]:
    freq = psutil.cpu_freq()
    return {
        "logicalCores": psutil.cpu_count(),
        "physicalCores": psutil.cpu_count(logical=False),
        "cpuPercent": psutil.cpu_percent(interval=None),
        "cpuMhz": round(freq.current, 1) if freq else None,
    }


@system_router.get("/loadavg")
def loadavg() -> dict[str, Any]:
    one, five, fifteen = psutil.getloadavg()
    return {
        "loadavg1min": round(one, 2),
        "loadavg5min": round(five, 2),
        "loadavg15min": round(fifteen, 2),
    }
