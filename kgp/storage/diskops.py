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

"""
Disk operations used by the storage manager.

This is the only module that touches block devices. It shells out to the
usual Linux tools (sfdisk, mkfs, mount, lvm2, cryptsetup, rsync) and reads
sysfs/procfs; the storage manager only sequences these calls.
"""

import logging
import os
import stat
import subprocess
from typing import List, Sequence, Tuple

from kgp.storage.errors import DeviceUnavailableError, DiskOperationError
from kgpcore.utils import log_process_streams, run_command

log = logging.getLogger("kgp.storage.diskops")

SYS_CLASS_BLOCK = "/sys/class/block"
PROC_MOUNTS = "/proc/self/mounts"

# One partition spanning the whole disk, GPT label.
PARTITION_SCRIPT = "label: gpt\n,,L\n"

# cryptsetup exit code for "no permission (bad passphrase)"
CRYPTSETUP_EPERM = 2


def partition_name(device: str, number: int = 1) -> str:
    """Path of partition `number` on `device`.

    /dev/sdb -> /dev/sdb1, /dev/mmcblk0 -> /dev/mmcblk0p1,
    /dev/disk/by-id/usb-X -> /dev/disk/by-id/usb-X-part1
    """
    if not device:
        return ""
    if device.startswith("/dev/disk/by-"):
        return f"{device}-part{number}"
    if device[-1].isdigit():
        return f"{device}p{number}"
    return f"{device}{number}"


def _unescape_mount_field(field: str) -> str:
    # /proc/mounts encodes space, tab, newline and backslash as octal
    for code, char in (("\\040", " "), ("\\011", "\t"), ("\\012", "\n")):
        field = field.replace(code, char)
    return field.replace("\\134", "\\")


class DiskOperations:
    def __init__(self, sys_class_block=SYS_CLASS_BLOCK, proc_mounts=PROC_MOUNTS):
        self.sys_class_block = sys_class_block
        self.proc_mounts = proc_mounts

    def _run(self, operation: str, cmd: Sequence[str], **kw):
        try:
            return run_command(cmd, check=True, **kw)
        except subprocess.CalledProcessError as cpe:
            log_process_streams(logging.DEBUG, cpe, operation)
            raise DiskOperationError(operation, cpe) from cpe

    # Block devices

    def device_exists(self, path: str) -> bool:
        try:
            st = os.stat(path)
        except FileNotFoundError:
            return False
        return stat.S_ISBLK(st.st_mode)

    def device_size(self, path: str) -> int:
        """Size of the device in bytes."""
        name = os.path.basename(os.path.realpath(path))
        size_file = os.path.join(self.sys_class_block, name, "size")
        try:
            with open(size_file) as fp:
                blocks = int(fp.read().strip())
        except FileNotFoundError:
            raise DeviceUnavailableError(path, "not found in sysfs")
        # sysfs always counts 512 byte sectors
        return blocks * 512

    def partition_device(self, device: str) -> None:
        log.debug("partitioning %s", device)
        self._run(
            f"partition {device}",
            ["sfdisk", "--wipe", "always", device],
            input=PARTITION_SCRIPT,
        )

    def format_partition(self, device: str, label: str) -> None:
        log.debug("formatting %s with label %s", device, label)
        self._run(
            f"format {device}",
            ["mkfs.ext4", "-q", "-F", "-L", label, device],
        )

    def filesystem_label(self, device: str) -> str:
        """Label of the filesystem on device, "" if none can be read."""
        cp = run_command(["blkid", "-s", "LABEL", "-o", "value", device])
        if cp.returncode != 0:
            return ""
        return cp.stdout.strip()

    # Mounts

    def mount_table(self) -> List[Tuple[str, str]]:
        """(device, mountpoint) pairs of mounted block devices."""
        table = []
        with open(self.proc_mounts) as fp:
            for line in fp:
                fields = line.split()
                if len(fields) < 2:
                    continue
                source = _unescape_mount_field(fields[0])
                if not source.startswith("/"):
                    continue
                table.append((source, _unescape_mount_field(fields[1])))
        return table

    def is_mounted(self, device: str) -> str:
        """Return where `device` is mounted, or "" if it is not."""
        target = os.path.realpath(device)
        for source, mountpoint in self.mount_table():
            if os.path.realpath(source) == target:
                return mountpoint
        return ""

    def mount(self, device: str, mountpoint: str) -> None:
        os.makedirs(mountpoint, exist_ok=True)
        self._run(f"mount {device}", ["mount", device, mountpoint])

    def umount(self, device: str) -> None:
        self._run(f"umount {device}", ["umount", device])

    def sync_paths(self, source: str, destination: str) -> None:
        """Copy the tree at source into destination, preserving attributes."""
        self._run(
            f"sync {source}",
            [
                "rsync",
                "-aHAX",
                source.rstrip("/") + "/",
                destination.rstrip("/") + "/",
            ],
        )

    # LVM

    def create_physical_volume(self, device: str) -> str:
        self._run(f"pvcreate {device}", ["pvcreate", "-ff", "-y", device])
        return device

    def create_volume_group(self, name: str, pvs: List[str]) -> str:
        self._run(f"vgcreate {name}", ["vgcreate", "-y", name] + list(pvs))
        return name

    def create_logical_volume(self, vg: str, lv: str) -> str:
        self._run(
            f"lvcreate {vg}/{lv}",
            ["lvcreate", "-y", "-l", "100%FREE", "-n", lv, vg],
        )
        return f"/dev/{vg}/{lv}"

    def volume_groups(self) -> List[str]:
        cp = self._run(
            "list volume groups", ["vgs", "--noheadings", "-o", "vg_name"]
        )
        return [line.strip() for line in cp.stdout.splitlines() if line.strip()]

    def logical_volumes(self, vg: str) -> List[str]:
        cp = self._run(
            f"list logical volumes of {vg}",
            ["lvs", "--noheadings", "-o", "lv_name", vg],
        )
        return [line.strip() for line in cp.stdout.splitlines() if line.strip()]

    def physical_volume_group(self, device: str) -> str:
        """Volume group the physical volume device belongs to.

        "" when device is not a physical volume or not in any group.
        """
        cp = run_command(["pvs", "--noheadings", "-o", "vg_name", device])
        if cp.returncode != 0:
            return ""
        return cp.stdout.strip()

    def remove_volume_group(self, name: str) -> None:
        self._run(f"vgremove {name}", ["vgremove", "-f", name])

    def remove_logical_volume(self, vg: str, lv: str) -> None:
        self._run(f"lvremove {vg}/{lv}", ["lvremove", "-f", f"{vg}/{lv}"])

    # LUKS

    def luks_format(self, device: str, password: str) -> None:
        log.debug("luks format %s", device)
        self._run(
            f"luksFormat {device}",
            ["cryptsetup", "luksFormat", "--batch-mode", "--key-file=-", device],
            input=password,
        )

    def luks_open(self, device: str, name: str, password: str) -> bool:
        """Open device as /dev/mapper/<name>. False means wrong password."""
        cp = run_command(
            [
                "cryptsetup",
                "open",
                "--type",
                "luks",
                "--key-file=-",
                device,
                name,
            ],
            input=password,
        )
        if cp.returncode == 0:
            return True
        if cp.returncode == CRYPTSETUP_EPERM:
            log.debug("luks open of %s refused, bad passphrase", device)
            return False
        cpe = subprocess.CalledProcessError(
            cp.returncode, cp.args, cp.stdout, cp.stderr
        )
        log_process_streams(logging.DEBUG, cpe, f"luks open {device}")
        raise DiskOperationError(f"luks open {device}", cpe)

    def luks_close(self, name: str) -> None:
        self._run(f"luks close {name}", ["cryptsetup", "close", name])

    def luks_active(self, name: str) -> bool:
        cp = run_command(["cryptsetup", "status", name])
        return cp.returncode == 0

    def is_luks(self, device: str) -> bool:
        cp = run_command(["cryptsetup", "isLuks", device])
        return cp.returncode == 0
