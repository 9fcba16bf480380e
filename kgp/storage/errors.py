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
Exceptions raised while configuring and provisioning storage.

Each exception carries the ErrorKind it is reported as once it reaches the
public boundary of the storage manager.
"""

import subprocess
from typing import Optional

from kgp.common.types import ErrorKind


class StorageError(Exception):
    kind = ErrorKind.OPERATIONAL


class StorageConfigError(StorageError):
    """Unsupported layer combination or misuse of the configuration API."""

    kind = ErrorKind.CONFIGURATION


class DeviceUnavailableError(StorageError):
    """A device or storage component is missing or has no space."""

    kind = ErrorKind.HARDWARE

    def __init__(self, device: str, reason: str = "not available"):
        self.device = device
        self.reason = reason
        super().__init__(f"Device {device} {reason}")


class WrongPasswordError(StorageError):
    kind = ErrorKind.SECRET

    def __init__(self, device: str, message: Optional[str] = None):
        self.device = device
        if message is None:
            message = "Unable to unlock crypto storage. (Wrong password?)"
        super().__init__(message)


class DiskOperationError(StorageError):
    """An external disk tool failed."""

    def __init__(
        self,
        operation: str,
        cpe: Optional[subprocess.CalledProcessError] = None,
    ):
        self.operation = operation
        self.cpe = cpe
        msg = f"{operation} failed"
        if cpe is not None:
            detail = (cpe.stderr or "").strip()
            msg += f" with exit code {cpe.returncode}"
            if detail:
                msg += f": {detail.splitlines()[-1]}"
        super().__init__(msg)
