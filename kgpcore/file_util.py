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

import grp
import os
import stat
import tempfile

_DEF_PERMS = 0o640
_DEF_GROUP = "adm"


def set_log_perms(target, *, group_write=False, mode=True):
    if os.getuid() != 0:
        return
    if mode:
        perms = _DEF_PERMS
        if os.path.isdir(target):
            perms |= stat.S_IXUSR | stat.S_IXGRP
        if group_write:
            perms |= stat.S_IWGRP
        os.chmod(target, perms)
    os.chown(target, -1, grp.getgrnam(_DEF_GROUP).gr_gid)


def write_file(filename, content, mode=None, omode="w", copy_mode=False):
    """Atomically write filename.
    open filename in mode 'omode', write content, chmod to 'mode'.
    """
    if mode is None:
        mode = 0o644
    if copy_mode:
        try:
            file_stat = os.stat(filename)
            mode = stat.S_IMODE(file_stat.st_mode)
        except OSError:
            pass

    dirname = os.path.dirname(filename) or "."
    os.makedirs(dirname, exist_ok=True)
    tf = None
    try:
        tf = tempfile.NamedTemporaryFile(dir=dirname, delete=False, mode=omode)
        tf.write(content)
        tf.close()
        os.chmod(tf.name, mode)
        os.rename(tf.name, filename)
    except OSError as e:
        if tf is not None:
            os.unlink(tf.name)
        raise e
