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

import os
import tempfile
import unittest


class KgpTestCase(unittest.TestCase):
    def tmp_dir(self, dir=None):
        tempdir = tempfile.TemporaryDirectory(dir=dir)
        self.addCleanup(tempdir.cleanup)
        return tempdir.name

    def tmp_path(self, path, dir=None):
        return os.path.join(self.tmp_dir(dir=dir), path)

    def assert_contents(self, path, expected_contents):
        with open(path, "r") as fp:
            self.assertEqual(expected_contents, fp.read())
