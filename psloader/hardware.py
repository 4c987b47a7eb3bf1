# -*- coding: utf-8 -*-
"""
Hardware descriptors

Collects the stable hardware fields used for the device fingerprint:
machine id, BIOS/motherboard/disk serials, MAC addresses, CPU model and
core count, total memory, hostname and the logged-in user.

Every lookup is best effort. A field that cannot be read is reported as
"UNKNOWN" so that the fingerprint degrades instead of failing.
"""

from __future__ import annotations

import getpass
import logging
import os
import platform
import subprocess
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

UNKNOWN = "UNKNOWN"

_CREATE_NO_WINDOW = getattr(subprocess, "CREATE_NO_WINDOW", 0)


@dataclass
class HardwareInfo:
    """Snapshot of the hardware descriptors."""

    platform: str = UNKNOWN
    machine_id: str = UNKNOWN
    bios_serial: str = UNKNOWN
    motherboard_serial: str = UNKNOWN
    disk_serial: str = UNKNOWN
    mac_addresses: List[str] = field(default_factory=list)
    cpu_model: str = UNKNOWN
    cpu_cores: int = 0
    memory_total_gb: int = 0
    hostname: str = UNKNOWN
    username: str = UNKNOWN

    def to_dict(self) -> Dict[str, Any]:
        return {
            'platform': self.platform,
            'machine_id': self.machine_id,
            'bios_serial': self.bios_serial,
            'motherboard_serial': self.motherboard_serial,
            'disk_serial': self.disk_serial,
            'mac_addresses': list(self.mac_addresses),
            'cpu_model': self.cpu_model,
            'cpu_cores': self.cpu_cores,
            'memory_total_gb': self.memory_total_gb,
            'hostname': self.hostname,
            'username': self.username,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'HardwareInfo':
        return cls(
            platform=data.get('platform') or UNKNOWN,
            machine_id=data.get('machine_id') or UNKNOWN,
            bios_serial=data.get('bios_serial') or UNKNOWN,
            motherboard_serial=data.get('motherboard_serial') or UNKNOWN,
            disk_serial=data.get('disk_serial') or UNKNOWN,
            mac_addresses=list(data.get('mac_addresses') or []),
            cpu_model=data.get('cpu_model') or UNKNOWN,
            cpu_cores=int(data.get('cpu_cores') or 0),
            memory_total_gb=int(data.get('memory_total_gb') or 0),
            hostname=data.get('hostname') or UNKNOWN,
            username=data.get('username') or UNKNOWN,
        )


# =============================================================================
# LOOKUPS
# =============================================================================

def _run(command: List[str]) -> str:
    result = subprocess.run(
        command,
        capture_output=True,
        text=True,
        timeout=10,
        creationflags=_CREATE_NO_WINDOW,
    )
    return result.stdout.strip()


def _wmic_value(*args: str) -> str:
    """First non-header line of a wmic query."""
    lines = [line.strip() for line in _run(["wmic", *args]).splitlines()]
    values = [line for line in lines[1:] if line]
    return values[0] if values else ""


def _read_text(path: str) -> str:
    try:
        return Path(path).read_text(encoding="utf-8").strip()
    except OSError:
        return ""


def _get_machine_id() -> str:
    """OS installation id (MachineGuid, /etc/machine-id, IOPlatformUUID)."""
    try:
        system = platform.system()
        if system == "Windows":
            output = _run([
                "reg", "query",
                r"HKLM\SOFTWARE\Microsoft\Cryptography",
                "/v", "MachineGuid",
            ])
            for line in output.splitlines():
                if "MachineGuid" in line:
                    return line.split()[-1]
        elif system == "Darwin":
            output = _run(["ioreg", "-rd1", "-c", "IOPlatformExpertDevice"])
            for line in output.splitlines():
                if "IOPlatformUUID" in line:
                    return line.split("=")[-1].strip().strip('"')
        else:
            value = _read_text("/etc/machine-id") or _read_text("/var/lib/dbus/machine-id")
            if value:
                return value
    except Exception as e:
        logger.warning(f"Machine id could not be read: {e}")
    return UNKNOWN


def _get_bios_serial() -> str:
    try:
        if platform.system() == "Windows":
            return _wmic_value("bios", "get", "serialnumber") or UNKNOWN
        return _read_text("/sys/class/dmi/id/product_serial") or UNKNOWN
    except Exception as e:
        logger.warning(f"BIOS serial could not be read: {e}")
    return UNKNOWN


def _get_motherboard_serial() -> str:
    try:
        if platform.system() == "Windows":
            return _wmic_value("baseboard", "get", "serialnumber") or UNKNOWN
        return _read_text("/sys/class/dmi/id/board_serial") or UNKNOWN
    except Exception as e:
        logger.warning(f"Motherboard serial could not be read: {e}")
    return UNKNOWN


def _get_disk_serial() -> str:
    """Primary disk serial number."""
    try:
        if platform.system() == "Windows":
            return _wmic_value("diskdrive", "get", "serialnumber") or UNKNOWN
        if platform.system() == "Linux":
            serial = _run(["lsblk", "-ndo", "SERIAL"]).split("\n")[0].strip()
            if serial:
                return serial
    except Exception as e:
        logger.warning(f"Disk serial could not be read: {e}")
    return UNKNOWN


def _get_mac_addresses() -> List[str]:
    """MAC addresses of the physical interfaces, deduplicated."""
    macs: List[str] = []
    try:
        net_dir = Path("/sys/class/net")
        if net_dir.is_dir():
            for iface in sorted(net_dir.iterdir()):
                mac = _read_text(str(iface / "address"))
                if mac and mac != "00:00:00:00:00:00" and mac not in macs:
                    macs.append(mac)
        if not macs:
            node = uuid.getnode()
            macs.append(':'.join(('%012x' % node)[i:i + 2] for i in range(0, 12, 2)))
    except Exception as e:
        logger.warning(f"MAC addresses could not be read: {e}")
    return macs


def _get_cpu_model() -> str:
    try:
        if platform.system() == "Linux":
            with open("/proc/cpuinfo", "r") as f:
                for line in f:
                    if line.startswith("model name") or line.startswith("Model"):
                        return line.split(":", 1)[1].strip()
        return platform.processor() or UNKNOWN
    except Exception as e:
        logger.warning(f"CPU model could not be read: {e}")
    return UNKNOWN


def _get_memory_total_gb() -> int:
    try:
        if hasattr(os, "sysconf") and "SC_PHYS_PAGES" in os.sysconf_names:
            total = os.sysconf("SC_PAGE_SIZE") * os.sysconf("SC_PHYS_PAGES")
            return round(total / (1024 ** 3))
        if platform.system() == "Windows":
            value = _wmic_value("computersystem", "get", "totalphysicalmemory")
            if value.isdigit():
                return round(int(value) / (1024 ** 3))
    except Exception as e:
        logger.warning(f"Total memory could not be read: {e}")
    return 0


def _get_username() -> str:
    try:
        return getpass.getuser()
    except Exception as e:
        logger.warning(f"Username could not be read: {e}")
    return UNKNOWN


def collect_hardware_info() -> HardwareInfo:
    """Read facts from the local machine."""
    return HardwareInfo(
        platform=platform.system() or UNKNOWN,
        machine_id=_get_machine_id(),
        bios_serial=_get_bios_serial(),
        motherboard_serial=_get_motherboard_serial(),
        disk_serial=_get_disk_serial(),
        mac_addresses=_get_mac_addresses(),
        cpu_model=_get_cpu_model(),
        cpu_cores=os.cpu_count() or 0,
        memory_total_gb=_get_memory_total_gb(),
        hostname=platform.node() or UNKNOWN,
        username=_get_username(),
    )


class HardwareProvider:
    """
    Hardware descriptor collaborator.

    Probing spawns subprocesses, so the result is collected once and reused
    for the lifetime of the process.
    """

    def __init__(self, collector=collect_hardware_info):
        self._collector = collector
        self._info: Optional[HardwareInfo] = None

    def get_hardware_info(self) -> Optional[HardwareInfo]:
        """Descriptors, or None when the collaborator is unavailable."""
        if self._info is None:
            try:
                self._info = self._collector()
            except Exception as e:
                logger.error(f"Hardware info unavailable: {e}")
                return None
        return self._info
