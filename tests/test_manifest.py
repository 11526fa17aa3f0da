# Licensed to the Apache Software Foundation (ASF) under one or more
# contributor license agreements.  See the NOTICE file distributed with
# this work for additional information regarding copyright ownership.
# The ASF licenses this file to You under the Apache License, Version 2.0
# (the "License"); you may not use this file except in compliance with
# the License.  You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.


import pytest

from hab_pkg_rpm.build_rpm import Manifest
from hab_pkg_rpm.util import ExportError
from tests.conftest import write


def test_identity_from_install_path(install_dir):
    m = Manifest(str(install_dir))
    assert (m.origin, m.name, m.version, m.release) == \
        ("core", "redis", "3.2.4-rc1", "20170514150022")


def test_metadata_from_manifest(install_dir):
    m = Manifest(str(install_dir))
    assert m.description() == "Persistent key-value database, with built-in net interface"
    assert m.maintainer() == "The Habitat Maintainers <humans@habitat.sh>"
    assert m.license() == "BSD-3-Clause"
    assert m.upstream_url() == "http://redis.io"


def test_fallbacks_for_sparse_manifest(tmp_path):
    path = tmp_path / "hab" / "pkgs" / "acme" / "tool" / "1.0" / "20200101000000"
    write(path / "MANIFEST", "# acme/tool\n\n* __Upstream URL__: upstream project's website or home page is not defined\n")
    m = Manifest(str(path))
    assert m.description() == "tool"
    assert m.maintainer() == "acme"
    assert m.license() == "Unknown"
    assert m.upstream_url() == ""


def test_missing_manifest(tmp_path):
    path = tmp_path / "hab" / "pkgs" / "acme" / "tool" / "1.0" / "20200101000000"
    path.mkdir(parents=True)
    with pytest.raises(ExportError, match="No MANIFEST"):
        Manifest(str(path))


def test_short_path_is_rejected():
    with pytest.raises(ExportError, match="not a fully qualified"):
        Manifest("/hab/pkgs")
