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
The storage provisioning engine.

Brings the configured storage stack (partition or disk, optional LVM,
optional LUKS, ext4 filesystem) from absent to mounted at the storage
mount point, or reattaches to a stack that already exists.
"""

import logging
import os
import tempfile
from typing import Callable, List, Optional

from kgp.common.types import (
    Encryption,
    ErrorKind,
    Logical,
    Physical,
    StorageResult,
    StorageType,
)
from kgp.models.storage import (
    DEFAULT_STORAGE_MOUNT,
    LUKS_NAME,
    PARTITION_NAME,
    StorageConfig,
)
from kgp.storage.diskops import DiskOperations, partition_name
from kgp.storage.errors import (
    DeviceUnavailableError,
    StorageConfigError,
    StorageError,
    WrongPasswordError,
)
from kgp.storage.settle import check_device
from kgpcore.context import Context

log = logging.getLogger("kgp.storage.manager")

SettleFunc = Callable[[str, Callable[[str], bool]], bool]


def _single(devices: List[str], what: str) -> str:
    if len(devices) != 1:
        raise StorageConfigError(
            f"Wrong amount of {what} devices got: {len(devices)} assumed 1"
        )
    return devices[0]


class StorageManager:
    def __init__(
        self,
        config: StorageConfig,
        disk: Optional[DiskOperations] = None,
        *,
        settle: SettleFunc = check_device,
        context: Optional[Context] = None,
    ):
        self.config = config
        if disk is None:
            disk = DiskOperations()
        self.disk = disk
        self.settle = settle
        if context is None:
            context = Context.new("storage")
        self.context = context
        self.initialized = False
        self.dosyncstorage = False
        self._password: Optional[str] = None
        self._error = ""
        self._handlers = {
            StorageType(
                Physical.PARTITION, Logical.NONE, Encryption.NONE
            ): self._init_partition,
            StorageType(
                Physical.PARTITION, Logical.LVM, Encryption.NONE
            ): self._init_partition_lvm,
            StorageType(
                Physical.PARTITION, Logical.NONE, Encryption.LUKS
            ): self._init_partition_luks,
            StorageType(
                Physical.PARTITION, Logical.LVM, Encryption.LUKS
            ): self._init_partition_lvm_luks,
            StorageType(
                Physical.BLOCK, Logical.NONE, Encryption.NONE
            ): self._init_block,
            StorageType(
                Physical.BLOCK, Logical.LVM, Encryption.NONE
            ): self._init_block_lvm,
            StorageType(
                Physical.BLOCK, Logical.NONE, Encryption.LUKS
            ): self._init_block_luks,
            StorageType(
                Physical.BLOCK, Logical.LVM, Encryption.LUKS
            ): self._init_block_lvm_luks,
        }

    @property
    def mountpoint(self) -> str:
        return self.config.sysconfig.get(
            "filesystem", "storagemount", DEFAULT_STORAGE_MOUNT
        )

    # Results

    def _ok(self) -> StorageResult:
        return StorageResult.success()

    def _fail(self, exc: Exception) -> StorageResult:
        kind = getattr(exc, "kind", ErrorKind.OPERATIONAL)
        self._error = str(exc)
        log.error("storage operation failed: %s", exc)
        return StorageResult.failure(kind, self._error)

    def error(self) -> str:
        """Message of the most recent failure."""
        return self._error

    # Public operations

    def initialize(self, password: str) -> StorageResult:
        log.debug("storage manager initialize storage")
        if self.config.use_physical_storage(Physical.NONE):
            log.info(
                "device doesn't use separate physical backing store, "
                "skip storage initialization"
            )
            return self._ok()

        self._password = password
        try:
            if not self.initialized:
                handler = self._handler()
                if not self.config.is_valid():
                    raise StorageConfigError("Invalid storage configuration")
                if self._is_provisioned():
                    log.info("storage area already present, attaching")
                else:
                    with self.context.child("init", str(self.storage_type())):
                        handler()
                self.initialized = True
            self._setup_storage_area()
        except (StorageError, OSError) as e:
            return self._fail(e)
        finally:
            self._password = None
        return self._ok()

    def open(self, password: str) -> StorageResult:
        self._password = password
        try:
            self._unlock()
        except (StorageError, OSError) as e:
            return self._fail(e)
        finally:
            self._password = None
        return self._ok()

    def use_locking(self) -> bool:
        return self.config.use_encryption(Encryption.LUKS)

    def use_logical_storage(self) -> bool:
        return self.config.use_logical_storage(Logical.LVM)

    def is_locked(self) -> bool:
        if not self.use_locking():
            return False
        return not self.disk.luks_active(LUKS_NAME)

    def device_path(self) -> str:
        return self.config.storage_device()

    def mount_device(self, destination: str) -> StorageResult:
        if self.config.use_physical_storage(Physical.NONE):
            log.error("device doesn't use separate storage, not mounting")
            return self._fail(
                StorageConfigError("Device doesn't use separate storage")
            )
        source = self.device_path()
        log.debug("mount %s device at %s", source, destination)
        try:
            if self.disk.is_mounted(source):
                self.disk.umount(source)
        except (StorageError, OSError) as e:
            log.error("failed to make sure storage not mounted: %s", e)
            return self._fail(e)
        try:
            self._mount(source, destination)
        except (StorageError, OSError) as e:
            return self._fail(e)
        return self._ok()

    def umount_device(self) -> StorageResult:
        try:
            self.disk.umount(self.device_path())
        except (StorageError, OSError) as e:
            return self._fail(e)
        return self._ok()

    def storage_area_exists(self) -> bool:
        """Does every layer of the configured stack already exist?

        Only looks, never changes anything.
        """
        log.debug("check if storage area exists")
        try:
            return self._storage_area_exists()
        except (StorageError, OSError) as e:
            log.info("failed to check %s: %s", self.device_path(), e)
            return False

    def _storage_area_exists(self) -> bool:
        pdevs = self.config.physical_devices()
        if not pdevs:
            log.error("missing physical devices in config")
            return False

        for pdev in pdevs:
            if not self.disk.device_exists(pdev):
                log.info("device %s doesn't exist", pdev)
                return False
            # i.e. an sd-card is in the slot
            if self.disk.device_size(pdev) == 0:
                log.info("device %s has no space", pdev)
                return False

        if self.use_logical_storage():
            ldevs = self.config.logical_devices()
            if not ldevs:
                log.error("logical storage selected but no device specified")
                return False
            for ldev in ldevs:
                if not self.disk.device_exists(ldev):
                    log.debug("logical device %s not created", ldev)
                    return False

        if self.use_locking():
            if self.use_logical_storage():
                devs = self.config.logical_devices()
            elif self.config.use_physical_storage(Physical.BLOCK):
                devs = [partition_name(dev) for dev in pdevs]
            else:
                devs = pdevs
            for dev in devs:
                if not self.disk.is_luks(dev):
                    log.debug("no LUKS on device %s", dev)
                    return False

        return True

    def device_exists(self) -> bool:
        try:
            for dev in self.config.physical_devices():
                device = os.path.realpath(dev)
                log.debug("checking device %s", device)
                if not self.disk.device_exists(device):
                    return False
                if self.disk.device_size(device) == 0:
                    return False
        except (StorageError, OSError) as e:
            log.info("failed to check device. (%s)", e)
            return False
        return True

    def size(self) -> int:
        """Size in bytes of the hardware storage device, 0 if unknown."""
        path = self.config.sysinfo.storage_device_path()
        if not path:
            return 0
        try:
            return self.disk.device_size(path)
        except (StorageError, OSError) as e:
            log.info("unable to get size of %s: %s", path, e)
            return 0

    # Provisioning

    def storage_type(self) -> StorageType:
        return self.config.storage_type()

    def _handler(self) -> Callable[[], None]:
        stype = self.storage_type()
        log.debug("current storage config %s", stype)
        handler = self._handlers.get(stype)
        if handler is None:
            raise StorageConfigError(f"Undefined setup configuration {stype}")
        return handler

    def _is_provisioned(self) -> bool:
        """Is the whole stack, filesystem included, already in place?

        Unlocks the encrypted layer to be able to look at the filesystem.
        """
        if not self.storage_area_exists():
            return False
        self._unlock()
        return self.disk.filesystem_label(self.device_path()) == PARTITION_NAME

    def _physical_device(self) -> str:
        return _single(self.config.physical_devices(), "physical")

    def _logical_device(self) -> str:
        return _single(self.config.logical_devices(), "logical")

    def _encryption_device(self) -> str:
        return _single(self.config.encryption_devices(), "encryption")

    def _backing_device(self) -> str:
        """The device LUKS lives on."""
        if self.use_logical_storage():
            return self._logical_device()
        if self.config.use_physical_storage(Physical.BLOCK):
            return partition_name(self._physical_device())
        return self._physical_device()

    def _in_use(self, part: str) -> bool:
        """Does part already carry the next layer of the stack?"""
        if self.use_logical_storage():
            vg = self.disk.physical_volume_group(part)
            return vg == self.config.volume_group()
        if self.use_locking():
            return self.disk.is_luks(part)
        return False

    def _partition_disks(self, devs: List[str]) -> List[str]:
        for dev in devs:
            if not self.disk.device_exists(dev):
                raise DeviceUnavailableError(dev, "doesn't exist")
            part = partition_name(dev)
            if self.disk.device_exists(part) and self._in_use(part):
                log.info("keeping existing partition %s", part)
                continue
            log.debug("partition %s", dev)
            self.disk.partition_device(os.path.realpath(dev))

        parts = [partition_name(dev) for dev in devs]
        for part in parts:
            if not self.settle(part, self.disk.device_exists):
                raise DeviceUnavailableError(part, "partition missing")
        return parts

    def _create_lvm(self, pdevs: List[str]) -> None:
        vg = self.config.volume_group()
        lv = self.config.logical_volume()
        if vg in self.disk.volume_groups():
            for pdev in pdevs:
                if self.disk.physical_volume_group(pdev) != vg:
                    raise StorageError(
                        f"Volume group {vg} already exists without {pdev}"
                    )
            log.info("reusing existing volume group %s", vg)
        else:
            pvs = []
            for pdev in pdevs:
                log.debug("adding %s to volume group", pdev)
                pvs.append(
                    self.disk.create_physical_volume(os.path.realpath(pdev))
                )
            self.disk.create_volume_group(vg, pvs)
        if lv in self.disk.logical_volumes(vg):
            log.info("reusing existing logical volume %s/%s", vg, lv)
        else:
            self.disk.create_logical_volume(vg, lv)

    def _initialize_luks(self, device: str) -> None:
        log.debug("initialize LUKS on device %s", device)
        if not self.disk.is_luks(device):
            self.disk.luks_format(os.path.realpath(device), self._password)
        self._unlock_luks(device)

    def _unlock_luks(self, device: str) -> None:
        if self.disk.luks_active(LUKS_NAME):
            return
        log.debug("activating LUKS volume on %s", device)
        if not self.disk.luks_open(device, LUKS_NAME, self._password):
            raise WrongPasswordError(device)

    def _unlock(self) -> None:
        if self.use_locking():
            self._unlock_luks(self._backing_device())

    def _format(self, device: str) -> None:
        self.disk.format_partition(device, PARTITION_NAME)
        self.dosyncstorage = True

    def _init_partition(self):
        self._format(self._physical_device())

    def _init_partition_lvm(self):
        self._create_lvm([self._physical_device()])
        self._format(self._logical_device())

    def _init_partition_luks(self):
        self._initialize_luks(self._physical_device())
        self._format(self._encryption_device())

    def _init_partition_lvm_luks(self):
        self._create_lvm([self._physical_device()])
        self._initialize_luks(self._logical_device())
        self._format(self._encryption_device())

    def _init_block(self):
        [part] = self._partition_disks([self._physical_device()])
        self._format(part)

    def _init_block_lvm(self):
        parts = self._partition_disks(self.config.physical_devices())
        self._create_lvm(parts)
        self._format(self._logical_device())

    def _init_block_luks(self):
        [part] = self._partition_disks([self._physical_device()])
        self._initialize_luks(part)
        self._format(self._encryption_device())

    def _init_block_lvm_luks(self):
        parts = self._partition_disks(self.config.physical_devices())
        self._create_lvm(parts)
        self._initialize_luks(self._logical_device())
        self._format(self._encryption_device())

    # Mounting

    def _mount(self, device: str, target: str) -> None:
        try:
            self.disk.mount(device, target)
        except ChildProcessError as e:
            # Raised by backends that reap the mount process themselves;
            # the mount usually went through anyway.
            if self.disk.is_mounted(device):
                log.info("storage is mounted, ignore previous error: %s", e)
                return
            raise

    def _sync_template(self, device: str, template: str) -> None:
        log.debug("sync template data to storage device %s", device)
        tmp = tempfile.mkdtemp(prefix="kgp-storage-")
        try:
            self._mount(device, tmp)
            try:
                self.disk.sync_paths(template, tmp)
            finally:
                self.disk.umount(device)
        finally:
            os.rmdir(tmp)

    def _setup_storage_area(self) -> None:
        device = self.device_path()
        mountpoint = self.mountpoint
        log.debug("setting up storage area on %s", device)
        try:
            if self.disk.is_mounted(device):
                self.disk.umount(device)
            if self.dosyncstorage:
                self._sync_template(device, mountpoint)
                self.dosyncstorage = False
            self._mount(device, mountpoint)
        except (StorageError, OSError) as e:
            log.error("finalize unlock failed: %s", e)
            raise StorageError("Unable to access storage device") from e
