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
import os
from typing import Any, Dict, List, Optional

import yaml

from kgpcore.file_util import write_file

log = logging.getLogger("kgpcore.sysconfig")

DEFAULT_SYSCONFIG = "/etc/kgp/sysconfig.yaml"

_missing = object()


class SysConfig:
    """Scoped key/value system configuration backed by a YAML file.

    The file holds a mapping of scopes ("storage", "filesystem", ...) to
    mappings of keys. Every mutation is written back to disk immediately.
    A SysConfig created with path=None lives in memory only.
    """

    def __init__(self, path: Optional[str] = DEFAULT_SYSCONFIG, *, data=None):
        self.path = path
        if data is not None:
            self._data = copy.deepcopy(data)
        elif path is not None and os.path.exists(path):
            with open(path) as fp:
                self._data = yaml.safe_load(fp) or {}
        else:
            self._data = {}
        if not isinstance(self._data, dict):
            raise ValueError(f"{path}: configuration is not a mapping")

    def as_dict(self) -> Dict[str, Dict[str, Any]]:
        return copy.deepcopy(self._data)

    def replace(self, data: Dict[str, Dict[str, Any]]) -> None:
        self._data = copy.deepcopy(data)
        self.save()

    def has_scope(self, scope: str) -> bool:
        return isinstance(self._data.get(scope), dict)

    def has_key(self, scope: str, key: str) -> bool:
        return self.has_scope(scope) and key in self._data[scope]

    def scope(self, scope: str) -> Dict[str, Any]:
        if not self.has_scope(scope):
            return {}
        return copy.deepcopy(self._data[scope])

    def get(self, scope: str, key: str, default=_missing) -> Any:
        if not self.has_key(scope, key):
            if default is _missing:
                raise KeyError(f"missing configuration key {scope}.{key}")
            return default
        return self._data[scope][key]

    def get_str(self, scope: str, key: str, default=_missing) -> str:
        return str(self.get(scope, key, default))

    def get_list(self, scope: str, key: str) -> List[str]:
        value = self.get(scope, key)
        if isinstance(value, str):
            return [value]
        return [str(v) for v in value]

    def put(self, scope: str, key: str, value: Any) -> None:
        log.debug("put %s.%s = %r", scope, key, value)
        self._data.setdefault(scope, {})[key] = copy.deepcopy(value)
        self.save()

    def remove_key(self, scope: str, key: str) -> None:
        if not self.has_key(scope, key):
            return
        log.debug("remove %s.%s", scope, key)
        del self._data[scope][key]
        self.save()

    def save(self) -> None:
        if self.path is None:
            return
        write_file(
            self.path,
            yaml.safe_dump(self._data, default_flow_style=False),
            mode=0o600,
        )
