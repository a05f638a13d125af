"""Hardware capability scanner used to size the analysis pool."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import psutil

logger = logging.getLogger(__name__)


@dataclass
class HardwareProfile:
    ram_gb: float
    cpu_cores: int


def scan_hardware() -> HardwareProfile:
    """Probe system hardware and return a HardwareProfile."""
    ram_gb = psutil.virtual_memory().total / (1024**3)
    cpu_cores = psutil.cpu_count(logical=True) or 1
    profile = HardwareProfile(ram_gb=round(ram_gb, 1), cpu_cores=cpu_cores)
    logger.debug("Hardware: %.1fGB RAM, %d logical cores", profile.ram_gb, profile.cpu_cores)
    return profile


def cpu_concurrency_hint() -> int:
    """Logical CPU count, the equivalent of a hardware-concurrency hint."""
    return scan_hardware().cpu_cores
