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

"""Small filesystem, process and logging helpers shared by the exporter."""

import fnmatch
import logging
import os
import shutil
import subprocess
import sys

LOG = logging.getLogger(__name__)

COLOR_TERMS = ["*term", "xterm-*", "rxvt", "screen", "screen-*"]

LEVEL_PREFIXES = {
    logging.ERROR: ("ERROR", "\033[1;31m"),
    logging.WARNING: ("WARN", "\033[1;33m"),
}


class ExportError(Exception):
    """Raised when the export cannot continue. The message is shown to the user."""


def use_color(stream=None):
    if os.environ.get("HAB_NOCOLORING", "") == "true":
        return False
    if stream is not None and not getattr(stream, "isatty", lambda: False)():
        return False
    term = os.environ.get("TERM", "")
    return any(fnmatch.fnmatchcase(term, p) for p in COLOR_TERMS)


class LevelFormatter(logging.Formatter):
    """Prefixes warnings and errors with WARN: / ERROR:, coloured on terminals
    that support it. Other levels are printed bare."""

    def __init__(self, color=False):
        logging.Formatter.__init__(self, "%(message)s")
        self._color = color

    def format(self, record):
        message = logging.Formatter.format(self, record)
        if record.levelno not in LEVEL_PREFIXES:
            return message
        prefix, color = LEVEL_PREFIXES[record.levelno]
        if self._color:
            return "%s%s: \033[1;37m%s\033[0m" % (color, prefix, message)
        return "%s: %s" % (prefix, message)


def configure_logger(logger, stream=None):
    stream = stream or sys.stderr
    # Reconfiguring must not stack handlers
    for h in list(logger.handlers):
        logger.removeHandler(h)
    handler = logging.StreamHandler(stream)
    handler.setFormatter(LevelFormatter(color=use_color(stream)))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    logger.propagate = False


def configure_debug_logger(logger):
    logger.setLevel(logging.DEBUG)
    for h in logger.handlers:
        h.setLevel(logging.DEBUG)


def mkdirs_recursive(path):
    if not os.path.isdir(path):
        os.makedirs(path)


def rmtree(path):
    """Remove a directory tree, ignoring paths that do not exist."""
    if os.path.lexists(path):
        shutil.rmtree(path)


def find_executable(name):
    return shutil.which(name)


def run(cmd, cwd=None, env=None):
    """Run a command to completion, raising CalledProcessError on failure."""
    LOG.debug("Running: %s", " ".join(cmd))
    subprocess.check_call(cmd, cwd=cwd, env=env)


def check_output(cmd, cwd=None, env=None):
    LOG.debug("Running: %s", " ".join(cmd))
    out = subprocess.check_output(cmd, cwd=cwd, env=env)
    return out.decode("utf-8").strip()


def read_lines(path):
    """Non-empty lines of a text file, without trailing newlines."""
    with open(path, "r") as infile:
        return [line.rstrip("\n") for line in infile if line.strip()]


def apparent_size_kib(path):
    """Sum of file sizes under path in KiB, each entry rounded up, like
    `du --apparent-size --block-size=1024`."""
    total = 0
    for root, dirs, files in os.walk(path):
        for name in dirs + files:
            st = os.lstat(os.path.join(root, name))
            total += (st.st_size + 1023) // 1024
    return total
