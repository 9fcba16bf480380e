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
Waiting for freshly created device nodes to settle.

When a partition table is written udev may add and remove the device node
for the new partition several times before it stays. A single existence
check is therefore not trustworthy: a device is only considered present
once it has been seen in every check of a round, and absent once it has
not been seen in any of them. Anything in between starts another round.
"""

import logging
import os
import time
from typing import Callable

log = logging.getLogger("kgp.storage.settle")

CHECKS_PER_ROUND = 3
CHECK_INTERVAL = 0.333
MAX_ROUNDS = 3

ONCE_RETRIES = 50
ONCE_DELAY = 0.005


def check_once(
    path: str,
    exists: Callable[[str], bool],
    retries: int = ONCE_RETRIES,
    delay: float = ONCE_DELAY,
) -> bool:
    """Check for path, waiting up to retries * delay for it to appear."""
    log.debug("test once if %s present", path)
    while True:
        try:
            present = exists(os.path.realpath(path))
        except OSError as e:
            log.debug("unable to probe device: %s", e)
            present = False
        if present:
            return True
        if retries <= 0:
            break
        retries -= 1
        time.sleep(delay)
    log.info("unable to locate device %s", path)
    return False


def check_device(
    path: str,
    exists: Callable[[str], bool],
    *,
    checks: int = CHECKS_PER_ROUND,
    interval: float = CHECK_INTERVAL,
    rounds: int = MAX_ROUNDS,
    once_retries: int = ONCE_RETRIES,
) -> bool:
    """Return True once path has been reliably present.

    An inconclusive final round counts as absent.
    """
    log.debug("check device %s", path)
    present = False
    for attempt in range(1, rounds + 1):
        seen = 0
        for _ in range(checks):
            if check_once(path, exists, retries=once_retries):
                seen += 1
            time.sleep(interval)
        present = seen == checks
        if present or seen == 0:
            break
        log.debug(
            "device %s seen %d of %d times in round %d, retrying",
            path,
            seen,
            checks,
            attempt,
        )
    log.debug("device %s %s", path, "available" if present else "not available")
    return present
