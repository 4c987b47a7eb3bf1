# -*- coding: utf-8 -*-
"""Device identity derivation and the permanent salt."""

from __future__ import annotations

import hashlib
import tempfile
import threading
import unittest
from pathlib import Path

from fakes import make_hardware

from psloader.hardware import UNKNOWN, HardwareInfo, HardwareProvider
from psloader.identity import (
    DEVICE_ID_SETTING,
    DeviceIdentityProvider,
    derive_device_id,
    derive_device_secret,
)
from psloader.store import LocalStore


class DeviceSecretTests(unittest.TestCase):
    def test_same_hardware_and_salt_give_same_secret(self) -> None:
        hardware = make_hardware()
        first = derive_device_secret(hardware, "salt-1")
        second = derive_device_secret(make_hardware(), "salt-1")
        self.assertEqual(first, second)
        self.assertEqual(len(first), 64)

    def test_salt_changes_secret(self) -> None:
        hardware = make_hardware()
        self.assertNotEqual(
            derive_device_secret(hardware, "salt-1"),
            derive_device_secret(hardware, "salt-2"),
        )

    def test_disk_serial_is_part_of_secret_but_not_of_device_id(self) -> None:
        a = make_hardware(disk_serial="DISK-1")
        b = make_hardware(disk_serial="DISK-2")
        self.assertNotEqual(derive_device_secret(a, "s"), derive_device_secret(b, "s"))
        self.assertEqual(derive_device_id(a), derive_device_id(b))

    def test_missing_hardware_uses_unknown_placeholders(self) -> None:
        expected = hashlib.sha256(
            "||".join([UNKNOWN, "abc"] + [UNKNOWN] * 10).encode("utf-8")
        ).hexdigest()
        self.assertEqual(derive_device_secret(None, "abc"), expected)
        self.assertEqual(derive_device_secret(HardwareInfo(), "abc"), expected)

    def test_device_id_is_digest_of_stable_fields(self) -> None:
        hardware = make_hardware()
        expected = hashlib.sha256(
            "Linux||machine-123||BIOS-1||MB-1||Test CPU||frontdesk||alice".encode("utf-8")
        ).hexdigest()
        self.assertEqual(derive_device_id(hardware), expected)


class HardwareProviderTests(unittest.TestCase):
    def test_collects_once(self) -> None:
        calls = []

        def collector() -> HardwareInfo:
            calls.append(1)
            return make_hardware()

        provider = HardwareProvider(collector)
        self.assertIs(provider.get_hardware_info(), provider.get_hardware_info())
        self.assertEqual(len(calls), 1)

    def test_from_dict_fills_unknown(self) -> None:
        info = HardwareInfo.from_dict({'hostname': 'frontdesk', 'bios_serial': ''})
        self.assertEqual(info.hostname, 'frontdesk')
        self.assertEqual(info.bios_serial, UNKNOWN)
        self.assertEqual(HardwareInfo.from_dict(info.to_dict()), info)


class IdentityProviderTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.db_path = str(Path(self._tmp.name) / "test.db")
        self.store = LocalStore(self.db_path)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _provider(self, hardware: HardwareInfo | None = None) -> DeviceIdentityProvider:
        info = hardware or make_hardware()
        return DeviceIdentityProvider(self.store, HardwareProvider(lambda: info))

    def test_salt_is_created_once(self) -> None:
        salt = self._provider().get_or_create_permanent_salt()
        self.assertEqual(len(salt), 64)
        self.assertEqual(self._provider().get_or_create_permanent_salt(), salt)
        self.assertEqual(self.store.create_permanent_salt("other"), salt)

    def test_concurrent_salt_creation_yields_one_value(self) -> None:
        results: list[str] = []
        lock = threading.Lock()

        def worker() -> None:
            salt = self._provider().get_or_create_permanent_salt()
            with lock:
                results.append(salt)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(len(results), 8)
        self.assertEqual(len(set(results)), 1)
        self.assertEqual(self.store.get_permanent_salt(), results[0])

    def test_secret_is_stable_across_process_starts(self) -> None:
        first = self._provider().load()
        second = self._provider().load()
        self.assertEqual(first.device_secret, second.device_secret)
        self.assertEqual(first.device_id, second.device_id)

    def test_device_id_is_stored_once(self) -> None:
        identity = self._provider().load()
        self.assertEqual(self.store.get_setting(DEVICE_ID_SETTING), identity.device_id)

        changed = self._provider(make_hardware(hostname="renamed")).load()
        self.assertEqual(changed.device_id, identity.device_id)

    def test_secret_is_never_written_to_disk(self) -> None:
        identity = self._provider().load()
        self.assertNotIn(identity.device_secret.encode("utf-8"), Path(self.db_path).read_bytes())
        self.assertNotIn(identity.device_secret, repr(identity))

    def test_unavailable_hardware_collaborator_degrades(self) -> None:
        def broken() -> HardwareInfo:
            raise RuntimeError("host process gone")

        provider = DeviceIdentityProvider(self.store, HardwareProvider(broken))
        identity = provider.load()
        salt = self.store.get_permanent_salt()
        self.assertEqual(identity.device_secret, derive_device_secret(None, salt))
        self.assertEqual(provider.hardware_payload()['machine_id'], UNKNOWN)

    def test_device_metadata_carries_salt_preview(self) -> None:
        provider = self._provider()
        salt = provider.get_or_create_permanent_salt()
        metadata = provider.device_metadata()
        self.assertEqual(metadata['hostname'], "frontdesk")
        self.assertEqual(metadata['username'], "alice")
        self.assertIn(f"Salt: {salt[:8]}...", metadata['details'])
        self.assertNotIn(salt, metadata['details'])


if __name__ == "__main__":
    unittest.main()
