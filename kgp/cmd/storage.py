#!/usr/bin/env python3
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

import argparse
import logging
import sys

import yaml

from kgp.common.types import StorageTypeNotFound, name_of
from kgp.models.storage import StorageConfig, ensure_storage_config
from kgp.storage import device
from kgp.storage.errors import StorageError
from kgp.storage.manager import StorageManager
from kgpcore import __version__
from kgpcore.lockfile import Lockfile
from kgpcore.log import setup_logger
from kgpcore.sysconfig import DEFAULT_SYSCONFIG, SysConfig
from kgpcore.sysinfo import detect_sysinfo

LOGDIR = "/var/log/kgp/"
LOCKFILE = "/run/lock/kgp-storage.lock"

log = logging.getLogger("kgp.cmd.storage")


def parse_options(argv):
    parser = argparse.ArgumentParser(
        description="Set up and unlock the appliance storage area",
        prog="kgp-storage",
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_SYSCONFIG,
        help="system configuration file (default: %(default)s)",
    )
    parser.add_argument(
        "--logdir",
        default=LOGDIR,
        help="directory to write logs to (default: %(default)s)",
    )
    parser.add_argument(
        "--lockfile",
        default=LOCKFILE,
        help="advisory lock held while storage is set up",
    )
    parser.add_argument(
        "--password-file",
        dest="password_file",
        help="read the storage password from this file instead of stdin",
    )
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True
    subparsers.add_parser(
        "init", help="create storage if needed, unlock and mount it"
    )
    subparsers.add_parser("open", help="unlock encrypted storage")
    subparsers.add_parser("status", help="show storage configuration and state")
    subparsers.add_parser("devices", help="list block devices")
    subparsers.add_parser(
        "migrate", help="add a storage section to an older configuration"
    )
    return parser.parse_args(argv)


def read_password(opts, stdin=None):
    if opts.password_file:
        with open(opts.password_file) as fp:
            return fp.readline().rstrip("\n")
    if stdin is None:
        stdin = sys.stdin
    return stdin.readline().rstrip("\n")


def _open_config(opts, sysinfo):
    sysconfig = SysConfig(opts.config)
    ensure_storage_config(sysconfig, sysinfo)
    return StorageConfig(sysconfig, sysinfo)


def cmd_provision(opts, sysinfo, out):
    config = _open_config(opts, sysinfo)
    manager = StorageManager(config)
    password = read_password(opts) if manager.use_locking() else ""
    lockfile = Lockfile(opts.lockfile)
    try:
        with lockfile.exclusive():
            if opts.command == "init":
                result = manager.initialize(password)
            else:
                result = manager.open(password)
    finally:
        lockfile.close()
    if not result:
        print(result.message, file=sys.stderr)
        return 1
    return 0


def cmd_status(opts, sysinfo, out):
    config = _open_config(opts, sysinfo)
    manager = StorageManager(config)
    lockfile = Lockfile(opts.lockfile)
    try:
        with lockfile.shared():
            exists = manager.storage_area_exists()
            locked = manager.is_locked()
    finally:
        lockfile.close()
    status = {
        "model": name_of(config.model()),
        "valid": config.is_valid(),
        "physical": name_of(config.physical_storage()),
        "logical": name_of(config.logical_storage()),
        "encryption": name_of(config.encryption_storage()),
        "device": config.storage_device(),
        "exists": exists,
        "locked": locked,
    }
    yaml.safe_dump(status, out, default_flow_style=False, sort_keys=False)
    return 0


def cmd_devices(opts, sysinfo, out):
    for dev in device.devices():
        for d in (dev,) + dev.partitions:
            flags = ",".join(sorted(c.value for c in d.characteristics))
            print(
                "{:<12} {:>16} {:<24} {}".format(d.name, d.size, d.model, flags),
                file=out,
            )
    return 0


def cmd_migrate(opts, sysinfo, out):
    sysconfig = SysConfig(opts.config)
    if ensure_storage_config(sysconfig, sysinfo):
        print("storage configuration created", file=out)
    else:
        print("storage configuration already present", file=out)
    return 0


COMMANDS = {
    "init": cmd_provision,
    "open": cmd_provision,
    "status": cmd_status,
    "devices": cmd_devices,
    "migrate": cmd_migrate,
}


def main(argv=None, out=None):
    if argv is None:
        argv = sys.argv[1:]
    if out is None:
        out = sys.stdout
    opts = parse_options(argv)
    setup_logger(dir=opts.logdir)
    log.info("Starting kgp-storage version %s", __version__)
    log.info("Arguments passed: %s", argv)

    sysinfo = detect_sysinfo()
    try:
        return COMMANDS[opts.command](opts, sysinfo, out)
    except (StorageError, StorageTypeNotFound, OSError) as e:
        log.exception("%s failed", opts.command)
        print("kgp-storage: {}".format(e), file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
