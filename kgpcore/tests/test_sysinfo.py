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

from parameterized import parameterized

from kgpcore.sysinfo import (
    HardwareType,
    SysInfo,
    detect_sysinfo,
    hardware_type_from_model,
)
from kgpcore.tests import KgpTestCase


class TestHardwareType(KgpTestCase):
    @parameterized.expand(
        [
            ("", HardwareType.PC),
            ("OPI\0", HardwareType.OPI),
            ("Marvell Armada 385 Keep\0", HardwareType.ARMADA),
            ("Raspberry Pi 4 Model B\0", HardwareType.UNKNOWN),
        ]
    )
    def test_from_model(self, model, expected):
        self.assertEqual(expected, hardware_type_from_model(model))


class TestDetectSysInfo(KgpTestCase):
    def test_no_device_tree(self):
        info = detect_sysinfo(self.tmp_path("model"))
        self.assertTrue(info.is_pc())
        self.assertEqual("", info.storage_device)
        self.assertEqual("", info.storage_device_path())

    def test_armada(self):
        path = self.tmp_path("model")
        with open(path, "wb") as fp:
            fp.write(b"Armada 385\0")
        info = detect_sysinfo(path)
        self.assertTrue(info.is_armada())
        self.assertEqual("/dev/sda", info.storage_device)

    def test_opi(self):
        info = SysInfo.for_type(HardwareType.OPI)
        self.assertTrue(info.is_opi())
        self.assertFalse(info.is_armada())
        self.assertEqual("/dev/mmcblk0", info.storage_device)
