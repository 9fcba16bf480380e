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

import copy
import logging
from typing import Any, Dict, List

import jsonschema
from jsonschema.exceptions import ValidationError

from kgp.common.types import (
    Encryption,
    Logical,
    Model,
    Physical,
    StorageType,
    name_of,
)
from kgp.storage.diskops import partition_name
from kgp.storage.errors import StorageConfigError
from kgpcore.sysconfig import SysConfig
from kgpcore.sysinfo import SysInfo

log = logging.getLogger("kgp.models.storage")

SCOPE = "storage"

# Volume label of every filesystem created on the storage device.
PARTITION_NAME = "KGP"

DEFAULT_VG = "pool"
DEFAULT_LV = "data"
DEFAULT_LVM_DEVICE = f"/dev/{DEFAULT_VG}/{DEFAULT_LV}"

LUKS_NAME = "opi"
DEFAULT_ENCRYPTION_DEVICE = f"/dev/mapper/{LUKS_NAME}"

DEFAULT_STORAGE_MOUNT = "/var/opi"

LEGACY_PROVIDER = "OpenProducts"

_PHYSICAL_KEYS = ("partition_path", "block_devices")
_LOGICAL_KEYS = ("lvm_device", "lvm_lv", "lvm_vg")
_ENCRYPTION_KEYS = ("luks_device",)

STORAGE_SCHEMA = {
    "type": "object",
    "required": ["model", "physical", "logical", "encryption"],
    "properties": {
        "model": {"type": "string"},
        "physical": {"type": "string"},
        "partition_path": {"type": "string"},
        "block_devices": {
            "type": "array",
            "items": {"type": "string"},
        },
        "logical": {"type": "string"},
        "lvm_device": {"type": "string"},
        "lvm_lv": {"type": "string"},
        "lvm_vg": {"type": "string"},
        "encryption": {"type": "string"},
        "luks_device": {"type": "string"},
    },
    "additionalProperties": True,
}


def migrate_storage_config(
    config: Dict[str, Dict[str, Any]], sysinfo: SysInfo
) -> Dict[str, Dict[str, Any]]:
    """Return a copy of config that has a storage section.

    Configurations that already have one are returned unchanged. Appliances
    configured before the storage section existed have a fixed block
    device that is always encrypted; their layout is rebuilt from the
    legacy filesystem keys. Everything else starts out undefined so the
    user can pick a layout.
    """
    new = copy.deepcopy(config)
    if isinstance(config.get(SCOPE), dict):
        return new

    legacy = config.get("filesystem") or {}
    provider = (config.get("dns") or {}).get("provider")

    if provider == LEGACY_PROVIDER:
        log.debug("migrating fixed layout appliance")
        storage = {
            "model": name_of(Model.STATIC),
            "physical": name_of(Physical.BLOCK),
            "block_devices": [sysinfo.storage_device],
        }
        if sysinfo.is_opi():
            storage["logical"] = name_of(Logical.NONE)
        else:
            storage.update(
                {
                    "logical": name_of(Logical.LVM),
                    "lvm_device": legacy.get("lvmdevice", DEFAULT_LVM_DEVICE),
                    "lvm_lv": legacy.get("lvmlv", DEFAULT_LV),
                    "lvm_vg": legacy.get("lvmvg", DEFAULT_VG),
                }
            )
        storage["encryption"] = name_of(Encryption.LUKS)
        storage["luks_device"] = legacy.get(
            "luksdevice", DEFAULT_ENCRYPTION_DEVICE
        )
    else:
        log.debug("creating storage config for dynamic layout")
        storage = {
            "model": name_of(Model.DYNAMIC),
            "physical": name_of(Physical.UNDEFINED),
            "logical": name_of(Logical.UNDEFINED),
            "encryption": name_of(Encryption.UNDEFINED),
        }

    new[SCOPE] = storage
    return new


def ensure_storage_config(sysconfig: SysConfig, sysinfo: SysInfo) -> bool:
    """Add a storage section to sysconfig if it lacks one.

    Returns True if the configuration was migrated.
    """
    if sysconfig.has_scope(SCOPE):
        return False
    log.info("Migrate/create sysconfig entries to use storage section")
    sysconfig.replace(migrate_storage_config(sysconfig.as_dict(), sysinfo))
    log.info("Migration completed")
    return True


class StorageConfig:
    """The storage layout selected for this appliance.

    Wraps the storage section of the system configuration. The layout is
    made of three layers, each of which may be absent: physical (a
    partition or whole block devices), logical (LVM) and encryption
    (LUKS). Every setter writes through to the system configuration at
    once.
    """

    def __init__(self, sysconfig: SysConfig, sysinfo: SysInfo):
        self.sysconfig = sysconfig
        self.sysinfo = sysinfo
        if not sysconfig.has_scope(SCOPE):
            raise StorageConfigError("no storage section in configuration")
        try:
            jsonschema.validate(sysconfig.scope(SCOPE), STORAGE_SCHEMA)
        except ValidationError as ve:
            raise StorageConfigError(
                f"malformed storage configuration: {ve.message}"
            ) from ve
        self._model = Model.from_name(self._get("model"))
        self._physical = Physical.from_name(self._get("physical"))
        self._logical = Logical.from_name(self._get("logical"))
        self._encryption = Encryption.from_name(self._get("encryption"))

    def _get(self, key: str, default=None):
        return self.sysconfig.get(SCOPE, key, default)

    def _has(self, key: str) -> bool:
        return self.sysconfig.has_key(SCOPE, key)

    def _put(self, key: str, value) -> None:
        self.sysconfig.put(SCOPE, key, value)

    def _remove(self, *keys: str) -> None:
        for key in keys:
            self.sysconfig.remove_key(SCOPE, key)

    def model(self) -> Model:
        return self._model

    def storage_type(self) -> StorageType:
        return StorageType(self._physical, self._logical, self._encryption)

    def is_static(self) -> bool:
        """Does this appliance have a fixed, non configurable layout?"""
        return self._model == Model.STATIC

    def is_valid(self) -> bool:
        if self.is_static():
            return True
        return self._encryption_valid()

    def _uses_block_storage(self) -> bool:
        return self._physical in (Physical.PARTITION, Physical.BLOCK)

    def _encryption_valid(self) -> bool:
        if self._encryption == Encryption.NONE:
            return self._logical_valid()
        if self._encryption == Encryption.LUKS:
            return (
                self._has("luks_device")
                and self._uses_block_storage()
                and self._logical_valid()
            )
        return False

    def _logical_valid(self) -> bool:
        if self._logical == Logical.NONE:
            if not self._physical_valid():
                return False
            # Without a volume group several disks can't be combined
            if self._physical == Physical.BLOCK:
                return len(self.physical_devices()) == 1
            return True
        if self._logical == Logical.LVM:
            return (
                all(self._has(key) for key in _LOGICAL_KEYS)
                and self._uses_block_storage()
                and self._physical_valid()
            )
        return False

    def _physical_valid(self) -> bool:
        partition = self._has("partition_path")
        block = self._has("block_devices")
        if self._physical == Physical.NONE:
            return not partition and not block
        if self._physical == Physical.PARTITION:
            return partition and not block
        if self._physical == Physical.BLOCK:
            return not partition and block
        return False

    # Physical storage

    def query_physical_storage(self) -> List[Physical]:
        if self.sysinfo.is_opi() or self.sysinfo.is_armada():
            return [Physical.BLOCK]
        return [Physical.NONE, Physical.PARTITION, Physical.BLOCK]

    def physical_storage(self) -> Physical:
        return self._physical

    def set_physical_storage(self, type: Physical) -> None:
        self._put("physical", name_of(type))
        self._physical = type
        if type == Physical.PARTITION:
            self._remove("block_devices")
        elif type == Physical.BLOCK:
            self._remove("partition_path")
        else:
            self._remove(*_PHYSICAL_KEYS)

    def use_physical_storage(self, type: Physical) -> bool:
        return self._physical == type

    def physical_devices(self) -> List[str]:
        if self._physical == Physical.PARTITION and self._has("partition_path"):
            return [self._get("partition_path")]
        if self._physical == Physical.BLOCK and self._has("block_devices"):
            return self.sysconfig.get_list(SCOPE, "block_devices")
        return []

    def set_partition(self, partition: str) -> None:
        if self._physical != Physical.PARTITION:
            raise StorageConfigError(
                "Illegal Physical storage type for partition "
                + name_of(self._physical)
            )
        self._put("partition_path", partition)
        self._remove("block_devices")

    def set_block_devices(self, devices: List[str]) -> None:
        if self._physical != Physical.BLOCK:
            raise StorageConfigError(
                "Illegal Physical storage type for block devices "
                + name_of(self._physical)
            )
        if not devices:
            raise StorageConfigError("At least one block device is needed")
        self._put("block_devices", list(devices))
        self._remove("partition_path")

    # Logical storage

    def query_logical_storage(self, physical: Physical) -> List[Logical]:
        if self.sysinfo.is_opi():
            return [Logical.NONE]
        if self.sysinfo.is_armada():
            return [Logical.LVM]
        if physical in (Physical.PARTITION, Physical.BLOCK):
            return [Logical.NONE, Logical.LVM]
        return []

    def logical_storage(self) -> Logical:
        return self._logical

    def set_logical_storage(self, type: Logical) -> None:
        self._put("logical", name_of(type))
        self._logical = type
        if type == Logical.LVM:
            self._put("lvm_device", DEFAULT_LVM_DEVICE)
            self._put("lvm_lv", DEFAULT_LV)
            self._put("lvm_vg", DEFAULT_VG)
        else:
            self._remove(*_LOGICAL_KEYS)

    def use_logical_storage(self, type: Logical) -> bool:
        return self._logical == type

    def logical_devices(self) -> List[str]:
        """Currently only one logical device is supported."""
        if self._logical == Logical.LVM and self._has("lvm_device"):
            return [self._get("lvm_device")]
        return []

    def set_logical_devices(self, devices: List[str]) -> None:
        if self._logical != Logical.LVM:
            raise StorageConfigError(
                "Illegal set logical devices when type is "
                + name_of(self._logical)
            )
        if len(devices) != 1:
            raise StorageConfigError(
                "Only one logical device currently supported provided: "
                + str(len(devices))
            )
        self._put("lvm_device", devices[0])

    def logical_defaults(self) -> None:
        self.set_logical_storage(Logical.LVM)

    def volume_group(self) -> str:
        return self._get("lvm_vg", DEFAULT_VG)

    def logical_volume(self) -> str:
        return self._get("lvm_lv", DEFAULT_LV)

    # Encryption

    def query_encryption_storage(
        self, physical: Physical, logical: Logical
    ) -> List[Encryption]:
        if self.sysinfo.is_opi() or self.sysinfo.is_armada():
            return [Encryption.LUKS]
        # Encryption needs some block storage beneath it
        if physical not in (Physical.PARTITION, Physical.BLOCK):
            return [Encryption.NONE]
        if logical in (Logical.UNDEFINED, Logical.UNKNOWN):
            return [Encryption.NONE]
        return [Encryption.NONE, Encryption.LUKS]

    def encryption_storage(self) -> Encryption:
        return self._encryption

    def set_encryption_storage(self, type: Encryption) -> None:
        self._put("encryption", name_of(type))
        self._encryption = type
        if type == Encryption.LUKS:
            self._put("luks_device", DEFAULT_ENCRYPTION_DEVICE)
        else:
            self._remove(*_ENCRYPTION_KEYS)

    def use_encryption(self, type: Encryption) -> bool:
        return self._encryption == type

    def encryption_devices(self) -> List[str]:
        """Currently only one encryption device is supported."""
        if self._encryption == Encryption.LUKS and self._has("luks_device"):
            return [self._get("luks_device")]
        return []

    def set_encryption_devices(self, devices: List[str]) -> None:
        if self._encryption != Encryption.LUKS:
            raise StorageConfigError(
                "Illegal encryption devices when type is "
                + name_of(self._encryption)
            )
        if len(devices) != 1:
            raise StorageConfigError(
                "Only one crypto device currently supported provided: "
                + str(len(devices))
            )
        self._put("luks_device", devices[0])

    def encryption_defaults(self) -> None:
        self.set_encryption_storage(Encryption.LUKS)

    def storage_device(self) -> str:
        """Path of the device that ends up mounted, "" if undeterminable."""
        if self.use_encryption(Encryption.LUKS):
            return self._get("luks_device", "")

        if self.use_logical_storage(Logical.LVM):
            return self._get("lvm_device", "")

        # An unencrypted disk holds exactly one partition that is used
        if self.use_physical_storage(Physical.BLOCK):
            devs = self.physical_devices()
            if len(devs) != 1:
                log.error(
                    "Unable to determine storage device. Got %d disks",
                    len(devs),
                )
                return ""
            return partition_name(devs[0])

        if self.use_physical_storage(Physical.PARTITION):
            return self._get("partition_path", "")

        log.info("Unable to determine final storage device path")
        return ""
