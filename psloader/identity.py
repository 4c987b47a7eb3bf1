# -*- coding: utf-8 -*-
"""
Device Identity

Derives the device identity used for device-trust verification:

- device_id: SHA-256 over stable hardware fields, derived once and kept in
  the settings table under "deviceId"
- device_secret: SHA-256 over hardware fields plus the permanent salt,
  recomputed on every process start and never written to disk
- permanent salt: 32 random bytes (hex), created once on first need
"""

import hashlib
import logging
import platform
import secrets
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from . import __version__
from .hardware import UNKNOWN, HardwareInfo, HardwareProvider
from .store import LocalStore

logger = logging.getLogger(__name__)

SEPARATOR = "||"
DEVICE_ID_SETTING = "deviceId"
SALT_BYTES = 32


@dataclass(frozen=True)
class DeviceIdentity:
    device_id: str
    device_secret: str
    permanent_salt: str

    def __repr__(self) -> str:
        return f"DeviceIdentity(device_id={self.device_id[:12]}..., device_secret=<hidden>)"


def _field(value: Any) -> str:
    if value is None or value == "" or value == []:
        return UNKNOWN
    return str(value)


def _digest(parts: List[str]) -> str:
    return hashlib.sha256(SEPARATOR.join(parts).encode("utf-8")).hexdigest()


def derive_device_id(hardware: Optional[HardwareInfo]) -> str:
    """
    Deterministic device id.

    Survives reinstalls as long as the hardware and the OS user stay the
    same. A missing collaborator yields an all-UNKNOWN id.
    """
    hw = hardware or HardwareInfo()
    return _digest([
        _field(hw.platform),
        _field(hw.machine_id),
        _field(hw.bios_serial),
        _field(hw.motherboard_serial),
        _field(hw.cpu_model),
        _field(hw.hostname),
        _field(hw.username),
    ])


def derive_device_secret(hardware: Optional[HardwareInfo], salt: str) -> str:
    hw = hardware or HardwareInfo()
    return _digest([
        _field(hw.platform),
        salt,
        _field(hw.machine_id),
        _field(hw.bios_serial),
        _field(hw.motherboard_serial),
        _field(hw.disk_serial),
        _field(hw.cpu_model),
        _field(hw.cpu_cores or None),
        _field(hw.memory_total_gb or None),
        _field(hw.hostname),
        _field(hw.username),
        _field(",".join(hw.mac_addresses)),
    ])


class DeviceIdentityProvider:
    """Builds and holds the identity of this device."""

    def __init__(self, store: LocalStore, hardware: HardwareProvider):
        self.store = store
        self.hardware = hardware
        self._lock = threading.Lock()
        self._identity: Optional[DeviceIdentity] = None

    def get_or_create_permanent_salt(self) -> str:
        """
        Read the salt, creating it on first need.

        Concurrent callers all get the first value written; the store insert
        is a no-op when a salt exists already.
        """
        salt = self.store.get_permanent_salt()
        if salt:
            return salt
        salt = self.store.create_permanent_salt(secrets.token_hex(SALT_BYTES))
        logger.info("Permanent device salt created")
        return salt

    def get_device_id(self) -> str:
        device_id = self.store.get_setting(DEVICE_ID_SETTING)
        if device_id:
            return device_id
        device_id = derive_device_id(self.hardware.get_hardware_info())
        self.store.set_setting(DEVICE_ID_SETTING, device_id)
        logger.info(f"Device id stored: {device_id[:12]}...")
        return device_id

    def load(self) -> DeviceIdentity:
        """Identity for this process; computed once."""
        with self._lock:
            if self._identity is None:
                hardware = self.hardware.get_hardware_info()
                if hardware is None:
                    logger.warning("Hardware info unavailable, identity falls back to UNKNOWN fields")
                salt = self.get_or_create_permanent_salt()
                self._identity = DeviceIdentity(
                    device_id=self.get_device_id(),
                    device_secret=derive_device_secret(hardware, salt),
                    permanent_salt=salt,
                )
            return self._identity

    def hardware_payload(self) -> Dict[str, Any]:
        """hardware_info block sent on registration."""
        hw = self.hardware.get_hardware_info() or HardwareInfo()
        return {
            'machine_id': _field(hw.machine_id),
            'processor_id': _field(hw.cpu_model),
            'bios_serial': _field(hw.bios_serial),
            'motherboard_serial': _field(hw.motherboard_serial),
            'disk_serial': _field(hw.disk_serial),
            'mac_addresses': list(hw.mac_addresses),
        }

    def device_metadata(self) -> Dict[str, Any]:
        """device_info block sent on registration."""
        hw = self.hardware.get_hardware_info() or HardwareInfo()
        identity = self.load()
        hostname = _field(hw.hostname)
        username = _field(hw.username)
        os_version = f"{platform.system()} {platform.release()}".strip() or UNKNOWN
        return {
            'device_name': f"{hostname} ({username})",
            'os_version': os_version,
            'hostname': hostname,
            'user_agent': f"PSLoader/{__version__} ({os_version})",
            'username': username,
            'details': f"Host: {hostname}, User: {username}, Salt: {identity.permanent_salt[:8]}...",
        }
