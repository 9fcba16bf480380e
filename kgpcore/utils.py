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

import logging
import os
import subprocess
from typing import Sequence

log = logging.getLogger("kgpcore.utils")


def _clean_env(env, *, locale=True):
    if env is None:
        env = os.environ.copy()
    else:
        env = env.copy()
    if locale:
        env["LC_ALL"] = "C"
    return env


def run_command(
    cmd: Sequence[str],
    *,
    input=None,
    stdout=subprocess.PIPE,
    stderr=subprocess.PIPE,
    encoding="utf-8",
    errors="replace",
    env=None,
    clean_locale=True,
    **kw,
) -> subprocess.CompletedProcess:
    """A wrapper around subprocess.run with logging and different defaults.

    We never ever want a subprocess to inherit our file descriptors!
    """
    if input is None:
        kw["stdin"] = subprocess.DEVNULL
    else:
        input = input.encode(encoding)
    log.debug("run_command called: %s", cmd)
    try:
        cp = subprocess.run(
            cmd,
            input=input,
            stdout=stdout,
            stderr=stderr,
            env=_clean_env(env, locale=clean_locale),
            **kw,
        )
        if encoding:
            if isinstance(cp.stdout, bytes):
                cp.stdout = cp.stdout.decode(encoding, errors)
            if isinstance(cp.stderr, bytes):
                cp.stderr = cp.stderr.decode(encoding, errors)
    except subprocess.CalledProcessError as e:
        if encoding:
            if isinstance(e.stdout, bytes):
                e.stdout = e.stdout.decode(encoding, errors)
            if isinstance(e.stderr, bytes):
                e.stderr = e.stderr.decode(encoding, errors)
        log.debug("run_command %s", str(e))
        raise
    else:
        log.debug("run_command %s exited with code %s", cp.args, cp.returncode)
        return cp


def _log_stream(level: int, stream, name: str):
    if stream:
        log.log(level, f"{name}: ------------------------------------------")
        for line in stream.splitlines():
            log.log(level, line)
    elif stream is None:
        log.log(level, f"<{name} is None>")
    else:
        log.log(level, f"<{name} is empty>")


def log_process_streams(
    level: int, cpe: subprocess.CalledProcessError, command_msg: str
):
    log.log(level, f"{command_msg} exited with result: {cpe.returncode}")
    _log_stream(level, cpe.stdout, "stdout")
    _log_stream(level, cpe.stderr, "stderr")
    log.log(level, "--------------------------------------------------")


def udev_get_attributes(device):
    """sysfs attributes of a pyudev device as a dict of str."""
    r = {}
    for key in device.attributes.available_attributes:
        val = device.attributes.get(key)
        if isinstance(val, bytes):
            val = val.decode("utf-8", "replace")
        r[key] = val
    return r
