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

import enum
import logging
import os
from typing import Dict, FrozenSet, List, Optional, Tuple

import attr
import pyudev

from kgp.storage.diskops import DiskOperations
from kgp.storage.errors import DeviceUnavailableError
from kgpcore.utils import udev_get_attributes

log = logging.getLogger("kgp.storage.device")

SYS_CLASS_BLOCK = "/sys/class/block"

# ramdisks and loop devices
_IGNORED_MAJORS = ("1", "7")

BOOT_MOUNTS = ("/", "/boot", "/boot/efi")


class Characteristic(enum.Enum):
    MOUNTED = "mounted"
    PARTITION = "partition"
    PHYSICAL = "physical"
    READ_ONLY = "read-only"
    REMOVABLE = "removable"
    ROOT_DEVICE = "root-device"
    BOOT_DEVICE = "boot-device"
    DEVICE_MAPPER = "device-mapper"
    LVM = "lvm"
    LUKS = "luks"


@attr.s(auto_attribs=True, frozen=True)
class StorageDevice:
    """Snapshot of a block device as seen when it was probed.

    Probing again gives a new snapshot; nothing here follows the device.
    """

    name: str
    syspath: str
    devpath: str
    dm_path: str = ""
    model: str = ""
    mountpoints: Tuple[str, ...] = ()
    size: int = 0
    blocks: int = 0
    partitions: Tuple["StorageDevice", ...] = ()
    characteristics: FrozenSet[Characteristic] = frozenset()

    def is_(self, characteristic: Characteristic) -> bool:
        return characteristic in self.characteristics

    @property
    def mountpoint(self) -> str:
        if self.mountpoints:
            return self.mountpoints[0]
        return ""

    @property
    def lvm_path(self) -> str:
        if self.is_(Characteristic.LVM):
            return self.dm_path
        return ""

    @property
    def luks_path(self) -> str:
        if self.is_(Characteristic.LUKS):
            return self.dm_path
        return ""

    @classmethod
    def from_probe(cls, devname, info, mounts, partitions=()):
        """Build a descriptor from one entry of probe_storage()."""
        attrs = info.get("attrs", {})
        blocks = int(attrs.get("size") or 0)
        mountpoints = tuple(mounts.get(devname, ()))
        uuid = info.get("DM_UUID", "")

        chars = set()
        if mountpoints:
            chars.add(Characteristic.MOUNTED)
        if "/" in mountpoints:
            chars.add(Characteristic.ROOT_DEVICE)
        if info.get("DEVTYPE") == "partition":
            chars.add(Characteristic.PARTITION)
        if not info.get("DEVPATH", "").startswith("/devices/virtual/"):
            chars.add(Characteristic.PHYSICAL)
        if attrs.get("ro") == "1":
            chars.add(Characteristic.READ_ONLY)
        if attrs.get("removable") == "1":
            chars.add(Characteristic.REMOVABLE)
        if "DM_NAME" in info:
            chars.add(Characteristic.DEVICE_MAPPER)
        if uuid.startswith("LVM-"):
            chars.add(Characteristic.LVM)
        elif uuid.startswith("CRYPT-LUKS"):
            chars.add(Characteristic.LUKS)

        held = set(mountpoints)
        for part in partitions:
            held.update(part.mountpoints)
        if held.intersection(BOOT_MOUNTS):
            chars.add(Characteristic.BOOT_DEVICE)

        return cls(
            name=os.path.basename(devname),
            syspath=os.path.join(SYS_CLASS_BLOCK, os.path.basename(devname)),
            devpath=devname,
            dm_path=_dm_path(info),
            model=_model(info),
            mountpoints=mountpoints,
            size=blocks * 512,
            blocks=blocks,
            partitions=tuple(partitions),
            characteristics=frozenset(chars),
        )


def _dm_path(info) -> str:
    if "DM_VG_NAME" in info and "DM_LV_NAME" in info:
        return "/dev/{}/{}".format(info["DM_VG_NAME"], info["DM_LV_NAME"])
    if "DM_NAME" in info:
        return "/dev/mapper/" + info["DM_NAME"]
    return ""


def _model(info) -> str:
    for key in ("ID_MODEL_FROM_DATABASE", "ID_MODEL", "ID_MODEL_ID"):
        if key in info:
            return info[key].replace("_", " ")
    return ""


def probe_storage(context: Optional[pyudev.Context] = None) -> Dict[str, dict]:
    """udev properties and sysfs attributes of every block device."""
    if context is None:
        context = pyudev.Context()
    storage = {}
    for device in context.list_devices(subsystem="block"):
        props = device.properties
        if props.get("MAJOR") in _IGNORED_MAJORS:
            continue
        data = dict(props)
        data["attrs"] = udev_get_attributes(device)
        storage[props["DEVNAME"]] = data
    return storage


def mounts_by_device(disk: DiskOperations) -> Dict[str, List[str]]:
    mounts: Dict[str, List[str]] = {}
    for source, mountpoint in disk.mount_table():
        mounts.setdefault(os.path.realpath(source), []).append(mountpoint)
    return mounts


def devices(
    probe_data: Optional[Dict[str, dict]] = None,
    mounts: Optional[Dict[str, List[str]]] = None,
) -> List[StorageDevice]:
    """All disks with their partitions, sorted by name."""
    if probe_data is None:
        probe_data = probe_storage()
    if mounts is None:
        mounts = mounts_by_device(DiskOperations())

    children: Dict[str, List[str]] = {}
    disks = []
    for devname, info in probe_data.items():
        if info.get("DEVTYPE") == "partition":
            parent = os.path.dirname(info.get("DEVPATH", ""))
            children.setdefault(parent, []).append(devname)
        else:
            disks.append(devname)

    result = []
    for devname in sorted(disks):
        info = probe_data[devname]
        parts = [
            StorageDevice.from_probe(p, probe_data[p], mounts)
            for p in sorted(children.get(info.get("DEVPATH", ""), []))
        ]
        result.append(StorageDevice.from_probe(devname, info, mounts, parts))
    return result


def lookup(
    devicename: str,
    probe_data: Optional[Dict[str, dict]] = None,
    mounts: Optional[Dict[str, List[str]]] = None,
) -> StorageDevice:
    """Find a device by short name (sda) or by any path leading to it."""
    if "/" in devicename:
        wanted = os.path.basename(os.path.realpath(devicename))
    else:
        wanted = devicename
    for dev in devices(probe_data, mounts):
        if dev.name == wanted:
            return dev
        for part in dev.partitions:
            if part.name == wanted:
                return part
    log.debug("no block device named %s", devicename)
    raise DeviceUnavailableError(devicename, "could not be located")
