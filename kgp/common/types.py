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

# Types shared between the storage configuration, the provisioning engine and
# the managers that consume them.

import enum
import itertools
from typing import Optional, Type, TypeVar

import attr


class StorageTypeNotFound(LookupError):
    """Raised for a machine name or value outside a storage enumeration."""


T = TypeVar("T", bound="_LayerType")


class _LayerType(enum.Enum):
    """A storage layer variant with a canonical machine name used for
    persistence and a human readable description."""

    def __init__(self, machine_name, description):
        self.machine_name = machine_name
        self.description = description

    @classmethod
    def from_name(cls: Type[T], name: str) -> T:
        for member in cls:
            if member.machine_name == name:
                return member
        raise StorageTypeNotFound(f"unknown {cls.__name__} type {name!r}")

    def __str__(self):
        return self.machine_name


class Model(_LayerType):
    UNDEFINED = ("undefined", "Undefined")
    STATIC = ("static", "Static")
    DYNAMIC = ("dynamic", "Dynamic")
    UNKNOWN = ("unknown", "Unknown")


class Physical(_LayerType):
    UNDEFINED = ("undefined", "Undefined")
    NONE = ("none", "Use local OS partition")
    PARTITION = ("partition", "Use partition(s) on OS disk")
    BLOCK = ("block", "Use block device(s)")
    UNKNOWN = ("unknown", "Unknown")


class Logical(_LayerType):
    UNDEFINED = ("undefined", "Undefined")
    NONE = ("none", "Don't use logical volume storage")
    LVM = ("lvm", "Use logical volume to group storage")
    UNKNOWN = ("unknown", "Unknown")


class Encryption(_LayerType):
    UNDEFINED = ("undefined", "Undefined")
    NONE = ("none", "Don't use encryption")
    LUKS = ("luks", "Use LUKS encryption on storage")
    UNKNOWN = ("unknown", "Unknown")


def name_of(value: _LayerType) -> str:
    if not isinstance(value, _LayerType):
        raise StorageTypeNotFound(f"{value!r} is not a storage type")
    return value.machine_name


def parse(cls: Type[T], name: str) -> T:
    return cls.from_name(name)


@attr.s(auto_attribs=True, frozen=True)
class StorageType:
    physical: Physical
    logical: Logical
    encryption: Encryption

    def __str__(self):
        return "{}|{}|{}".format(self.physical, self.logical, self.encryption)


# The only layer combinations that can be provisioned. Physical NONE means
# the OS root filesystem is used and nothing is set up at all.
VALID_STORAGE_TYPES = frozenset(
    StorageType(p, lv, e)
    for p, lv, e in itertools.product(
        (Physical.PARTITION, Physical.BLOCK),
        (Logical.NONE, Logical.LVM),
        (Encryption.NONE, Encryption.LUKS),
    )
)


class ErrorKind(enum.Enum):
    NONE = enum.auto()
    CONFIGURATION = enum.auto()
    HARDWARE = enum.auto()
    SECRET = enum.auto()
    OPERATIONAL = enum.auto()


@attr.s(auto_attribs=True, frozen=True)
class StorageResult:
    """Outcome of a storage operation. Truthy when the operation succeeded."""

    ok: bool
    kind: ErrorKind = ErrorKind.NONE
    message: str = ""

    def __bool__(self):
        return self.ok

    @classmethod
    def success(cls) -> "StorageResult":
        return cls(ok=True)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str) -> "StorageResult":
        return cls(ok=False, kind=kind, message=message)

    @property
    def error(self) -> Optional[str]:
        if self.ok:
            return None
        return self.message
