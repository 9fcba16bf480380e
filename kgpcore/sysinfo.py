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

import attr

log = logging.getLogger("kgpcore.sysinfo")

DEVICE_TREE_MODEL = "/proc/device-tree/model"


class HardwareType(enum.Enum):
    PC = enum.auto()
    OPI = enum.auto()
    ARMADA = enum.auto()
    UNKNOWN = enum.auto()


# Block device that holds user data on appliances with a fixed layout.
_STORAGE_DEVICES = {
    HardwareType.OPI: "/dev/mmcblk0",
    HardwareType.ARMADA: "/dev/sda",
}


@attr.s(auto_attribs=True, frozen=True)
class SysInfo:
    type: HardwareType
    storage_device: str = ""

    def is_opi(self) -> bool:
        return self.type == HardwareType.OPI

    def is_armada(self) -> bool:
        return self.type == HardwareType.ARMADA

    def is_pc(self) -> bool:
        return self.type == HardwareType.PC

    def storage_device_path(self) -> str:
        if not self.storage_device:
            return ""
        return os.path.realpath(self.storage_device)

    @classmethod
    def for_type(cls, type: HardwareType) -> "SysInfo":
        return cls(type=type, storage_device=_STORAGE_DEVICES.get(type, ""))


def hardware_type_from_model(model: str) -> HardwareType:
    model = model.strip("\0 \n").lower()
    if not model:
        return HardwareType.PC
    if "opi" in model or "openproducts" in model:
        return HardwareType.OPI
    if "armada" in model:
        return HardwareType.ARMADA
    return HardwareType.UNKNOWN


def detect_sysinfo(model_path=DEVICE_TREE_MODEL) -> SysInfo:
    """Work out which kind of appliance we are running on.

    Boards with a device tree identify themselves in its model string; a
    machine without one is treated as a generic PC.
    """
    try:
        with open(model_path, "rb") as fp:
            model = fp.read().decode("utf-8", "replace")
    except FileNotFoundError:
        model = ""
    hwtype = hardware_type_from_model(model)
    log.debug("hardware model %r detected as %s", model, hwtype.name)
    return SysInfo.for_type(hwtype)
