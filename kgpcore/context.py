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

log = logging.getLogger("kgpcore.context")


class Status(enum.Enum):
    SUCCESS = enum.auto()
    FAIL = enum.auto()


class Context:
    """Class to report when things start and finish.

    The expected way to use this is something like:

    with somecontext.child("operation"):
        long_running_operation()

    Start and finish events are written to the log at the level of the
    context. A context that is left by an exception reports FAIL together
    with the exception text; the exception itself is not swallowed.

    You can override the message shown on exit by assigning to description:

    with somecontext.child("operation") as context:
        result = long_running_operation()
        context.description = "result was {}".format(result)
    """

    def __init__(self, name, description, parent, level, childlevel=None):
        self.name = name
        self.description = description
        self.parent = parent
        self.level = level
        if childlevel is None:
            childlevel = level
        self.childlevel = childlevel

    @classmethod
    def new(cls, name, level="INFO"):
        return cls(name, "", None, level)

    def child(self, name, description="", level=None, childlevel=None):
        if level is None:
            level = self.childlevel
        return Context(name, description, self, level, childlevel)

    def _name(self):
        c = self
        names = []
        while c is not None:
            names.append(c.name)
            c = c.parent
        return "/".join(reversed(names))

    def _log(self, event, description):
        msg = "%s %s"
        args = [event, self._name()]
        if description:
            msg += ": %s"
            args.append(description)
        log.log(logging.getLevelName(self.level), msg, *args)

    def enter(self, description=None):
        if description is None:
            description = self.description
        self._log("start", description)

    def exit(self, description=None, result=Status.SUCCESS):
        if description is None:
            description = self.description
        self._log("finish " + result.name, description)

    def __enter__(self):
        self.enter()
        return self

    def __exit__(self, exc, value, tb):
        if exc is not None:
            result = Status.FAIL
            description = str(value)
        else:
            result = Status.SUCCESS
            description = None
        self.exit(description, result)
