# Copyright 2024 Canonical, Ltd.
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as
# published by the Free Software Foundation, either version 3 of the
# License, or (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program.  If not, see <http://www.gnu.org/licenses/>.

import unittest
from unittest import mock

from kgp.storage import device
from kgp.storage.device import Characteristic, StorageDevice
from kgp.storage.errors import DeviceUnavailableError

PROBE = {
    "/dev/sda": {
        "DEVNAME": "/dev/sda",
        "DEVTYPE": "disk",
        "DEVPATH": "/devices/pci0000:00/ata1/host0/block/sda",
        "ID_MODEL": "Samsung_SSD_860",
        "MAJOR": "8",
        "attrs": {"size": "500118192", "ro": "0", "removable": "0"},
    },
    "/dev/sda1": {
        "DEVNAME": "/dev/sda1",
        "DEVTYPE": "partition",
        "DEVPATH": "/devices/pci0000:00/ata1/host0/block/sda/sda1",
        "MAJOR": "8",
        "attrs": {"size": "1048576"},
    },
    "/dev/sda2": {
        "DEVNAME": "/dev/sda2",
        "DEVTYPE": "partition",
        "DEVPATH": "/devices/pci0000:00/ata1/host0/block/sda/sda2",
        "MAJOR": "8",
        "attrs": {"size": "499066880"},
    },
    "/dev/sdb": {
        "DEVNAME": "/dev/sdb",
        "DEVTYPE": "disk",
        "DEVPATH": "/devices/pci0000:00/usb1/1-1/host6/block/sdb",
        "ID_MODEL_FROM_DATABASE": "Cruzer Blade",
        "MAJOR": "8",
        "attrs": {"size": "0", "ro": "0", "removable": "1"},
    },
    "/dev/dm-0": {
        "DEVNAME": "/dev/dm-0",
        "DEVTYPE": "disk",
        "DEVPATH": "/devices/virtual/block/dm-0",
        "DM_NAME": "pool-data",
        "DM_VG_NAME": "pool",
        "DM_LV_NAME": "data",
        "DM_UUID": "LVM-abcdef",
        "MAJOR": "253",
        "attrs": {"size": "2097152", "ro": "0"},
    },
    "/dev/dm-1": {
        "DEVNAME": "/dev/dm-1",
        "DEVTYPE": "disk",
        "DEVPATH": "/devices/virtual/block/dm-1",
        "DM_NAME": "opi",
        "DM_UUID": "CRYPT-LUKS2-1234-opi",
        "MAJOR": "253",
        "attrs": {"size": "2093056", "ro": "1"},
    },
}

MOUNTS = {
    "/dev/sda1": ["/boot/efi"],
    "/dev/sda2": ["/"],
    "/dev/dm-1": ["/var/opi"],
}


class TestStorageDevice(unittest.TestCase):
    def setUp(self):
        self.devices = {d.name: d for d in device.devices(PROBE, MOUNTS)}

    def test_disks_only_at_top(self):
        self.assertEqual(
            ["dm-0", "dm-1", "sda", "sdb"], sorted(self.devices)
        )

    def test_disk(self):
        sda = self.devices["sda"]
        self.assertEqual("/dev/sda", sda.devpath)
        self.assertEqual("/sys/class/block/sda", sda.syspath)
        self.assertEqual("Samsung SSD 860", sda.model)
        self.assertEqual(500118192, sda.blocks)
        self.assertEqual(500118192 * 512, sda.size)
        self.assertEqual(["sda1", "sda2"], [p.name for p in sda.partitions])
        self.assertTrue(sda.is_(Characteristic.PHYSICAL))
        self.assertTrue(sda.is_(Characteristic.BOOT_DEVICE))
        self.assertFalse(sda.is_(Characteristic.MOUNTED))
        self.assertFalse(sda.is_(Characteristic.PARTITION))
        self.assertEqual("", sda.mountpoint)

    def test_root_partition(self):
        root = self.devices["sda"].partitions[1]
        self.assertTrue(root.is_(Characteristic.PARTITION))
        self.assertTrue(root.is_(Characteristic.MOUNTED))
        self.assertTrue(root.is_(Characteristic.ROOT_DEVICE))
        self.assertEqual("/", root.mountpoint)
        self.assertEqual((), root.partitions)

    def test_removable(self):
        sdb = self.devices["sdb"]
        self.assertTrue(sdb.is_(Characteristic.REMOVABLE))
        self.assertFalse(sdb.is_(Characteristic.BOOT_DEVICE))
        self.assertEqual(0, sdb.size)
        self.assertEqual("Cruzer Blade", sdb.model)

    def test_lvm(self):
        lv = self.devices["dm-0"]
        self.assertTrue(lv.is_(Characteristic.DEVICE_MAPPER))
        self.assertTrue(lv.is_(Characteristic.LVM))
        self.assertFalse(lv.is_(Characteristic.PHYSICAL))
        self.assertEqual("/dev/pool/data", lv.lvm_path)
        self.assertEqual("", lv.luks_path)

    def test_luks(self):
        luks = self.devices["dm-1"]
        self.assertTrue(luks.is_(Characteristic.LUKS))
        self.assertTrue(luks.is_(Characteristic.READ_ONLY))
        self.assertEqual("/dev/mapper/opi", luks.luks_path)
        self.assertEqual(("/var/opi",), luks.mountpoints)

    def test_immutable(self):
        with self.assertRaises(AttributeError):
            self.devices["sda"].size = 0

    def test_lookup(self):
        self.assertEqual(
            "/dev/sda2", device.lookup("sda2", PROBE, MOUNTS).devpath
        )
        with mock.patch(
            "kgp.storage.device.os.path.realpath", return_value="/dev/dm-1"
        ):
            found = device.lookup("/dev/mapper/opi", PROBE, MOUNTS)
        self.assertEqual("dm-1", found.name)
        with self.assertRaises(DeviceUnavailableError):
            device.lookup("sdz", PROBE, MOUNTS)

    def test_from_probe_without_attrs(self):
        dev = StorageDevice.from_probe("/dev/vdb", {"DEVTYPE": "disk"}, {})
        self.assertEqual(0, dev.size)
        self.assertEqual("vdb", dev.name)


class FakeUdevDevice:
    def __init__(self, properties, attributes):
        self.properties = properties
        self.attributes = mock.Mock()
        self.attributes.available_attributes = list(attributes)
        self.attributes.get = attributes.get


class TestProbe(unittest.TestCase):
    def test_probe_storage(self):
        context = mock.Mock()
        context.list_devices.return_value = [
            FakeUdevDevice(
                {"DEVNAME": "/dev/sda", "DEVTYPE": "disk", "MAJOR": "8"},
                {"size": b"100", "ro": b"0"},
            ),
            FakeUdevDevice(
                {"DEVNAME": "/dev/loop0", "DEVTYPE": "disk", "MAJOR": "7"},
                {"size": b"8"},
            ),
        ]
        probe = device.probe_storage(context)
        context.list_devices.assert_called_once_with(subsystem="block")
        self.assertEqual(["/dev/sda"], list(probe))
        self.assertEqual({"size": "100", "ro": "0"}, probe["/dev/sda"]["attrs"])
        self.assertEqual("disk", probe["/dev/sda"]["DEVTYPE"])
