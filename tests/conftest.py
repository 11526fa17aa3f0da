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


import logging
import os

import pytest

from hab_pkg_rpm import build_rpm

MANIFEST = """# core/redis
Persistent key-value database, with built-in net interface

* __Maintainer__: The Habitat Maintainers <humans@habitat.sh>
* __Version__: 3.2.4-rc1
* __Release__: 20170514150022
* __Architecture__: x86_64
* __System__: linux
* __Target__: x86_64-linux
* __Upstream URL__: [http://redis.io](http://redis.io)
* __License__: BSD-3-Clause
"""

IDENT = "core/redis/3.2.4-rc1/20170514150022"


def write(path, content=""):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


@pytest.fixture(autouse=True)
def fixed_arch(monkeypatch):
    monkeypatch.setenv("RPM_ARCH", "x86_64")
    monkeypatch.setattr(build_rpm, "_ARCH", None)
    monkeypatch.delenv("DEBUG", raising=False)


@pytest.fixture
def tmpdir_root(tmp_path, monkeypatch):
    root = tmp_path / "tmp"
    root.mkdir()
    monkeypatch.setattr("tempfile.tempdir", str(root))
    return root


@pytest.fixture
def install_dir(tmp_path):
    path = tmp_path / "hab" / "pkgs" / "core" / "redis" / "3.2.4-rc1" / "20170514150022"
    write(path / "MANIFEST", MANIFEST)
    write(path / "bin" / "redis-server", "#!/bin/sh\n")
    return path


@pytest.fixture
def fake_hab(monkeypatch, install_dir, tmpdir_root):
    """Replaces the hab CLI: the package resolves to install_dir and the
    studio gets a copy of it plus the hab binary."""
    created = []

    def create_studio(ident, root):
        pkg = os.path.join(root, "hab", "pkgs", *IDENT.split("/"))
        os.makedirs(os.path.join(pkg, "bin"))
        with open(os.path.join(pkg, "bin", "redis-server"), "w") as o:
            o.write("#!/bin/sh\n")
        os.makedirs(os.path.join(root, "hab", "bin"))
        with open(os.path.join(root, "hab", "bin", "hab"), "w") as o:
            o.write("binary")
        created.append(root)

    monkeypatch.setattr(build_rpm.Habitat, "package_path", staticmethod(lambda ident: str(install_dir)))
    monkeypatch.setattr(build_rpm.Habitat, "create_studio", staticmethod(create_studio))
    monkeypatch.setattr(build_rpm, "find_system_commands", lambda config: None)
    return created


@pytest.fixture(autouse=True)
def reset_logger():
    yield
    for name in ["hab_pkg_rpm", "__main__"]:
        logger = logging.getLogger(name)
        for h in list(logger.handlers):
            logger.removeHandler(h)
        logger.setLevel(logging.NOTSET)
        logger.propagate = True
