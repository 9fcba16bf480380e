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

import io
from unittest import mock

import yaml

from kgp.cmd import storage as cmd
from kgp.common.types import ErrorKind, StorageResult
from kgp.storage.device import Characteristic, StorageDevice
from kgpcore.sysinfo import HardwareType, SysInfo
from kgpcore.tests import KgpTestCase

LEGACY = {
    "dns": {"provider": "OpenProducts"},
    "filesystem": {"storagemount": "/var/opi"},
}

PLAIN = {
    "storage": {
        "model": "dynamic",
        "physical": "block",
        "block_devices": ["/dev/sdx"],
        "logical": "none",
        "encryption": "none",
    },
    "filesystem": {"storagemount": "/var/opi"},
}

ENCRYPTED = {
    "storage": {
        "model": "static",
        "physical": "block",
        "block_devices": ["/dev/mmcblk0"],
        "logical": "none",
        "encryption": "luks",
        "luks_device": "/dev/mapper/opi",
    },
}


class TestStorageCommand(KgpTestCase):
    def setUp(self):
        self.dir = self.tmp_dir()
        self.config = self.tmp_path("sysconfig.yaml", dir=self.dir)
        self.password_file = self.tmp_path("password", dir=self.dir)
        with open(self.password_file, "w") as fp:
            fp.write("secret\n")
        for target, value in (
            ("setup_logger", None),
            ("detect_sysinfo", SysInfo.for_type(HardwareType.OPI)),
        ):
            patcher = mock.patch.object(cmd, target, return_value=value)
            patcher.start()
            self.addCleanup(patcher.stop)

    def write_config(self, data):
        with open(self.config, "w") as fp:
            yaml.safe_dump(data, fp)

    def run_cmd(self, *args):
        out = io.StringIO()
        argv = [
            "--config",
            self.config,
            "--logdir",
            self.dir,
            "--lockfile",
            self.tmp_path("lock", dir=self.dir),
            "--password-file",
            self.password_file,
        ] + list(args)
        return cmd.main(argv, out), out.getvalue()

    def test_migrate(self):
        self.write_config(LEGACY)
        rc, out = self.run_cmd("migrate")
        self.assertEqual(0, rc)
        self.assertEqual("storage configuration created\n", out)
        with open(self.config) as fp:
            storage = yaml.safe_load(fp)["storage"]
        self.assertEqual("static", storage["model"])
        self.assertEqual(["/dev/mmcblk0"], storage["block_devices"])

        rc, out = self.run_cmd("migrate")
        self.assertEqual("storage configuration already present\n", out)

    def test_status(self):
        self.write_config(PLAIN)
        rc, out = self.run_cmd("status")
        self.assertEqual(0, rc)
        status = yaml.safe_load(out)
        self.assertEqual("dynamic", status["model"])
        self.assertTrue(status["valid"])
        self.assertEqual("block", status["physical"])
        self.assertEqual("/dev/sdx1", status["device"])
        self.assertFalse(status["exists"])
        self.assertFalse(status["locked"])

    def test_status_takes_shared_lock(self):
        self.write_config(PLAIN)
        with mock.patch.object(cmd, "Lockfile") as lockfile_cls:
            rc, out = self.run_cmd("status")
        self.assertEqual(0, rc)
        lockfile = lockfile_cls.return_value
        lockfile.shared.assert_called_once_with()
        lockfile.exclusive.assert_not_called()
        lockfile.close.assert_called_once_with()

    @mock.patch.object(cmd, "StorageManager")
    def test_init_takes_exclusive_lock(self, manager_cls):
        self.write_config(PLAIN)
        manager = manager_cls.return_value
        manager.use_locking.return_value = False
        manager.initialize.return_value = StorageResult.success()
        with mock.patch.object(cmd, "Lockfile") as lockfile_cls:
            rc, out = self.run_cmd("init")
        self.assertEqual(0, rc)
        lockfile = lockfile_cls.return_value
        lockfile.exclusive.assert_called_once_with()
        lockfile.shared.assert_not_called()

    @mock.patch.object(cmd, "StorageManager")
    def test_init(self, manager_cls):
        self.write_config(ENCRYPTED)
        manager = manager_cls.return_value
        manager.use_locking.return_value = True
        manager.initialize.return_value = StorageResult.success()
        rc, out = self.run_cmd("init")
        self.assertEqual(0, rc)
        manager.initialize.assert_called_once_with("secret")
        manager.open.assert_not_called()

    @mock.patch.object(cmd, "StorageManager")
    def test_open_wrong_password(self, manager_cls):
        self.write_config(ENCRYPTED)
        manager = manager_cls.return_value
        manager.use_locking.return_value = True
        manager.open.return_value = StorageResult.failure(
            ErrorKind.SECRET, "Unable to unlock crypto storage. (Wrong password?)"
        )
        with mock.patch("sys.stderr", new_callable=io.StringIO) as err:
            rc, out = self.run_cmd("open")
        self.assertEqual(1, rc)
        self.assertIn("Wrong password", err.getvalue())

    @mock.patch.object(cmd, "StorageManager")
    def test_no_password_without_encryption(self, manager_cls):
        self.write_config(PLAIN)
        manager = manager_cls.return_value
        manager.use_locking.return_value = False
        manager.initialize.return_value = StorageResult.success()
        with mock.patch.object(cmd, "read_password") as read_password:
            rc, out = self.run_cmd("init")
        self.assertEqual(0, rc)
        read_password.assert_not_called()
        manager.initialize.assert_called_once_with("")

    def test_broken_config(self):
        self.write_config({"storage": {"model": "dynamic"}})
        with mock.patch("sys.stderr", new_callable=io.StringIO) as err:
            rc, out = self.run_cmd("status")
        self.assertEqual(1, rc)
        self.assertIn("malformed storage configuration", err.getvalue())

    def test_devices(self):
        part = StorageDevice(
            name="sda1",
            syspath="/sys/class/block/sda1",
            devpath="/dev/sda1",
            size=512,
            characteristics=frozenset(
                {Characteristic.PARTITION, Characteristic.ROOT_DEVICE}
            ),
        )
        disk = StorageDevice(
            name="sda",
            syspath="/sys/class/block/sda",
            devpath="/dev/sda",
            model="Samsung SSD",
            size=1024,
            partitions=(part,),
        )
        with mock.patch.object(cmd.device, "devices", return_value=[disk]):
            rc, out = self.run_cmd("devices")
        self.assertEqual(0, rc)
        lines = out.splitlines()
        self.assertEqual(2, len(lines))
        self.assertTrue(lines[0].startswith("sda "))
        self.assertIn("Samsung SSD", lines[0])
        self.assertTrue(lines[1].endswith("partition,root-device"))

    def test_password_from_stdin(self):
        opts = cmd.parse_options(["open"])
        stdin = io.StringIO("hunter2\n")
        self.assertEqual("hunter2", cmd.read_password(opts, stdin))
