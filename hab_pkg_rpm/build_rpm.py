#!/usr/bin/env python
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

# Run like this:
# hab-pkg-rpm --dist_tag el7 --requires bash,glibc --group Applications/Databases\
# --gnupg_keyname "Acme Release" core/redis

import argparse
from collections import namedtuple
import glob
import logging
import os
import re
import shutil
import subprocess
import sys
import tempfile
import time

from jinja2 import Environment, FileSystemLoader, TemplateError

from hab_pkg_rpm import util
from hab_pkg_rpm.util import ExportError

PROGRAM = "hab-pkg-rpm"
AUTHOR = "The Habitat Maintainers <humans@habitat.sh>"

SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
TEMPLATE_DIR = os.path.join(SCRIPT_DIR, "templates")
FILESYSTEM_LIST = os.path.join(SCRIPT_DIR, "sorted_filesystem_list")

LOG = logging.getLogger(__name__)

LIFECYCLE_SCRIPTS = ["post", "postun", "pre", "preun"]

# rpm payload compressors, see %_binary_payload in rpm's macros
PAYLOADS = {
    "gzip": "w9.gzdio",
    "bzip2": "w9.bzdio",
    "xz": "w9.xzdio",
}
DEFAULT_COMPRESSION = "xz"
DEFAULT_GROUP = "default"
DEFAULT_LICENSE = "Unknown"
DEFAULT_RESULTS_DIR = "results"

PACKAGE_USER = "root"
PACKAGE_GROUP = "root"

STAGING_DIRS = ["BUILD", "BUILD/hab", "RPMS", "SRPMS", "SOURCES", "SPECS", "tmp"]

# Set from RPM_ARCH or `rpm --eval` on first use
_ARCH = None

TRACE_TIMES = []
def timer_decorate(func):
    """Decorator function used to print timing information."""
    def func_wrapper(*args, **kwargs):
        start = time.time()
        ret = func(*args, **kwargs)
        end = time.time()
        delta = end - start
        delta_ms = delta * 1000
        LOG.debug("Function %s executed in %d ms", func.__name__, delta_ms)
        TRACE_TIMES.append((func.__name__, delta_ms))
        return ret
    return func_wrapper

def log_timer_traces():
    LOG.debug("Collected trace timings:")
    for t in TRACE_TIMES:
        LOG.debug("\t%s ran in %d ms", t[0], t[1])


def convert_name(origin, name):
    """The RPM name, `<origin>-<name>` in lowercase."""
    return ("%s-%s" % (origin, name)).lower()

def convert_version(version):
    """Return the RPM-ready version, with every dash (-) replaced by a tilde (~)."""
    if "-" not in version:
        return version
    safe_version = version.replace("-", "~")
    LOG.warning("Dashes hold special significance in RPM package versions. "
                "Versions that contain a dash and should be considered an earlier "
                "version (e.g. pre-releases) may actually be ordered as later "
                "(e.g. 12.0.0-rc.6 > 12.0.0). We'll work around this by replacing "
                "dashes (-) with tildes (~). Converting '%s' to '%s'.",
                version, safe_version)
    return safe_version

def rpm_release(release, dist_tag=None):
    if dist_tag:
        return "%s.%s" % (release, dist_tag)
    return release

def rpm_filename(safe_name, safe_version, release, arch, dist_tag=None, archive=None):
    """The filename of the exported package."""
    if archive:
        return archive
    return "%s-%s-%s.%s.rpm" % (safe_name, safe_version, rpm_release(release, dist_tag), arch)

def dependency_list(tag, value):
    """Expand a comma-separated list into `<tag>: <item>` preamble lines."""
    if not value:
        return []
    items = [v.strip() for v in value.split(",")]
    return ["%s: %s" % (tag, v) for v in items if v]

def architecture():
    """The platform architecture."""
    global _ARCH
    if _ARCH is None:
        _ARCH = os.environ.get("RPM_ARCH") or util.check_output(["rpm", "--eval", "%{_arch}"])
    return _ARCH

def load_filesystem_list(path=FILESYSTEM_LIST):
    """Directories owned by the base `filesystem` package."""
    return set(util.read_lines(path))

def find_system_commands(config):
    """Make sure the external tools needed for this run are available."""
    required = ["hab", "rpm"]
    if not config.testname:
        required.append("rpmbuild")
        if config.gpg_keyname:
            required.append("rpmsign")
    for cmd in required:
        if util.find_executable(cmd) is None:
            raise ExportError("We require %s to build RPM packages; aborting" % cmd)

    version = util.check_output(["rpm", "--version"])
    m = re.search(r"(\d+)\.\d+", version)
    if m is None or int(m.group(1)) < 4:
        raise ExportError("We require RPM 4.x or later to build packages, found '%s'; aborting" % version)
    LOG.debug("Using %s", version)


class BuildConfig(object):
    """Options taken from the command line. Read-only once built."""

    def __init__(self, pkg_ident, archive=None, compression=DEFAULT_COMPRESSION,
                 conflicts=None, dist_tag=None, gpg_keyname=None, gpg_path=None,
                 group=None, obsoletes=None, provides=None, requires=None,
                 scripts=None, testname=None, results_dir=DEFAULT_RESULTS_DIR,
                 verbose=False):
        self.pkg_ident = pkg_ident
        self.archive = archive
        self.compression = compression
        self.conflicts = conflicts
        self.dist_tag = dist_tag
        self.gpg_keyname = gpg_keyname
        self.gpg_path = gpg_path or os.path.join(os.path.expanduser("~"), ".gnupg")
        self.group = group or DEFAULT_GROUP
        self.obsoletes = obsoletes
        self.provides = provides
        self.requires = requires
        self.scripts = dict(scripts or {})
        self.testname = testname
        self.results_dir = results_dir
        self.verbose = verbose

    def lifecycle_scripts(self, install_dir):
        """Scripts to embed, by name. Scripts not given on the command line are
        taken from the package's `bin` directory when it ships them."""
        scripts = {}
        for name in LIFECYCLE_SCRIPTS:
            path = self.scripts.get(name)
            if not path:
                candidate = os.path.join(install_dir, "bin", name)
                if os.path.exists(candidate):
                    path = candidate
            if not path:
                continue
            if not os.path.isfile(path):
                raise ExportError("%s script '%s' not found" % (name, path))
            scripts[name] = path
        return scripts

    def dependencies(self):
        return {
            "conflicts": dependency_list("Conflicts", self.conflicts),
            "obsoletes": dependency_list("Obsoletes", self.obsoletes),
            "provides": dependency_list("Provides", self.provides),
            "requires": dependency_list("Requires", self.requires),
        }

    @staticmethod
    def add_arguments(parser):
        parser.add_argument('pkg_ident',
                            nargs='?',
                            metavar="PKG_IDENT",
                            help="Habitat package identifier (ex: acme/redis)")
        parser.add_argument('--archive',
                            metavar="FILE",
                            help="Filename of exported RPM package. Should end in .rpm")
        parser.add_argument('--compression',
                            metavar="TYPE",
                            choices=sorted(PAYLOADS),
                            default=DEFAULT_COMPRESSION,
                            help="Compression type for RPM; gzip, bzip2, or xz (default)")
        parser.add_argument('--conflicts',
                            metavar="PKG",
                            help="Comma-separated list of packages with which the exported RPM conflicts")
        parser.add_argument('--dist_tag',
                            help="Distribution name for use in RPM filename")
        parser.add_argument('--gnupg_keyname',
                            metavar="NAME",
                            help="Name associated with GPG key to use in signing RPM files.")
        parser.add_argument('--gnupg_path',
                            metavar="PATH",
                            help="Full path to .gnupg directory")
        parser.add_argument('--group',
                            metavar="RPMGROUP",
                            help="Group to be assigned to the RPM package")
        parser.add_argument('--obsoletes',
                            metavar="PKG",
                            help="Comma-separated list of packages made obsolete by the exported RPM")
        parser.add_argument('--post',
                            metavar="FILE",
                            help="File name of script called after installation")
        parser.add_argument('--postun',
                            metavar="FILE",
                            help="File name of script called after removal")
        parser.add_argument('--pre',
                            metavar="FILE",
                            help="File name of script called before installation")
        parser.add_argument('--preun',
                            metavar="FILE",
                            help="File name of script called before removal")
        parser.add_argument('--provides',
                            metavar="PKG",
                            help="Comma-separated list of facilities provided by the exported RPM")
        parser.add_argument('--requires',
                            metavar="PKG",
                            help="Comma-separated list of packages required by the exported RPM")
        parser.add_argument('--testname',
                            help="Test name used to create a staging directory for examination." +
                            " The spec file is generated but no RPM is built.")
        parser.add_argument('--results-dir',
                            dest="results_dir",
                            default=DEFAULT_RESULTS_DIR,
                            help="Directory the built RPM is copied to. Created if it does not exist.")

    @staticmethod
    def build_from_args(args):
        scripts = dict((name, getattr(args, name)) for name in LIFECYCLE_SCRIPTS
                       if getattr(args, name))
        verbose = args.verbose or bool(os.environ.get("DEBUG"))
        return BuildConfig(args.pkg_ident, archive=args.archive, compression=args.compression,
                           conflicts=args.conflicts, dist_tag=args.dist_tag,
                           gpg_keyname=args.gnupg_keyname, gpg_path=args.gnupg_path,
                           group=args.group, obsoletes=args.obsoletes,
                           provides=args.provides, requires=args.requires,
                           scripts=scripts, testname=args.testname,
                           results_dir=args.results_dir, verbose=verbose)


class Habitat(object):
    """Calls out to the `hab` CLI."""

    @staticmethod
    def package_path(ident):
        path = util.check_output(["hab", "pkg", "path", ident])
        if not path:
            raise ExportError("Could not find an installed package for %s" % ident)
        return path

    @staticmethod
    @timer_decorate
    def create_studio(ident, root):
        """Create a bare studio in root holding ident and its runtime deps."""
        LOG.info("Creating bare studio for %s in %s", ident, root)
        env = dict(os.environ, PKGS=ident, NO_MOUNT="1")
        util.run(["hab", "studio", "-r", root, "-t", "bare", "new"], cwd=root, env=env)
        with open(os.path.join(root, ".hab_pkg"), "w") as o:
            o.write(ident + "\n")


class Manifest(object):
    """Identity and metadata of an installed Habitat package.

    The identity comes from the install path,
    /hab/pkgs/<origin>/<name>/<version>/<release>. Everything else is read
    from the MANIFEST file in that directory, whose second line is the
    package description and whose `* __Key__: value` lines carry the rest.
    """

    def __init__(self, install_dir):
        self.install_dir = os.path.normpath(install_dir)
        parts = [p for p in self.install_dir.split(os.sep) if p]
        if len(parts) < 4:
            raise ExportError("%s is not a fully qualified package path" % install_dir)
        self.origin, self.name, self.version, self.release = parts[-4:]

        path = os.path.join(self.install_dir, "MANIFEST")
        if not os.path.isfile(path):
            raise ExportError("No MANIFEST found in %s" % self.install_dir)
        with open(path, "r") as infile:
            self._lines = infile.read().splitlines()

    def _field(self, key):
        marker = "__%s__:" % key
        for line in self._lines:
            if marker in line:
                return line.split(marker, 1)[1].strip()
        return ""

    def description(self):
        # TODO: multi-line descriptions are cut to the first line
        if len(self._lines) > 1 and self._lines[1].strip():
            return self._lines[1].strip()
        return self.name

    def maintainer(self):
        return self._field("Maintainer") or self.origin

    def license(self):
        return self._field("License") or DEFAULT_LICENSE

    def upstream_url(self):
        # Rendered as a markdown link: [url](url)
        value = self._field("Upstream URL")
        if not value or value.endswith("not defined"):
            return ""
        links = re.findall(r"\(([^()]*)\)", value)
        if links:
            return links[-1]
        return value


FileEntry = namedtuple("FileEntry", ["path", "is_dir", "filesystem_owned"])

def format_entry(entry):
    """The %files line for a single entry."""
    path = entry.path
    if any(c.isspace() for c in path):
        path = '"%s"' % path
    if entry.filesystem_owned:
        return "%%dir %%attr(0755,%s,%s) %s" % (PACKAGE_USER, PACKAGE_GROUP, path)
    if entry.is_dir:
        return "%dir " + path
    return path


class FileManifest(object):
    """Ordered %files entries for everything under a build root."""

    def __init__(self, entries):
        self.entries = entries

    @staticmethod
    def scan(build_root, filesystem_dirs, exclude=()):
        excluded = set(exclude)
        entries = []
        for root, dirs, files in os.walk(build_root):
            for name in dirs + files:
                full_path = os.path.join(root, name)
                path = "/" + os.path.relpath(full_path, build_root)
                if path in excluded:
                    continue
                # Symlinks to directories are packaged as links
                is_dir = os.path.isdir(full_path) and not os.path.islink(full_path)
                entries.append(FileEntry(path, is_dir, is_dir and path in filesystem_dirs))
        entries.sort(key=lambda e: e.path)
        return FileManifest(entries)

    def filesystem_dirs(self):
        return [e.path for e in self.entries if e.filesystem_owned]

    def package_dirs(self):
        return [e.path for e in self.entries if e.is_dir and not e.filesystem_owned]

    def lines(self):
        return [format_entry(e) for e in self.entries]

    def write(self, path):
        with open(path, "w") as o:
            for line in self.lines():
                o.write(line + "\n")


class Stager(object):
    """Lays out an rpmbuild top directory and copies the studio's Habitat
    trees into its BUILD root."""

    def __init__(self, studio_dir, testname=None, filesystem_list=FILESYSTEM_LIST):
        self._studio_dir = studio_dir
        self._testname = testname
        self._filesystem_list = filesystem_list
        self.staging = None

    @property
    def build_root(self):
        return os.path.join(self.staging, "BUILD")

    @timer_decorate
    def create(self):
        if self._testname:
            # Kept after the run so tests can examine it
            self.staging = os.path.join(tempfile.gettempdir(),
                                        "test-%s-%s" % (PROGRAM, self._testname))
        else:
            self.staging = tempfile.mkdtemp(prefix="%s-staging-" % PROGRAM)
        for d in STAGING_DIRS:
            util.mkdirs_recursive(os.path.join(self.staging, d))
        LOG.info("Staging RPM build in %s", self.staging)
        return self.staging

    @timer_decorate
    def copy_bits(self):
        for d in ["pkgs", "bin"]:
            src_path = os.path.join(self._studio_dir, "hab", d)
            dst_path = os.path.join(self.build_root, "hab", d)
            if not os.path.isdir(src_path):
                raise ExportError("Studio is missing %s" % src_path)
            LOG.info("Copying %s to %s", src_path, dst_path)
            # Test staging directories are reused between runs
            util.rmtree(dst_path)
            shutil.copytree(src_path, dst_path, symlinks=True)

    @timer_decorate
    def generate_filelist(self, config_files=()):
        filesystem_dirs = load_filesystem_list(self._filesystem_list)
        files = FileManifest.scan(self.build_root, filesystem_dirs, exclude=config_files)
        for d in files.filesystem_dirs():
            LOG.debug("Marking directory owned by filesystem package: %s", d)
        files.write(os.path.join(self.staging, "tmp", "filelist"))
        LOG.info("Found %d paths, %d of them directories owned by the filesystem package",
                 len(files.entries), len(files.filesystem_dirs()))
        return files

    def installed_size(self):
        return util.apparent_size_kib(self.build_root)

    def cleanup(self):
        if self.staging and not self._testname:
            util.rmtree(self.staging)


class SpecRenderer(object):
    """Fills the spec template from the package manifest and build options.

    A package can ship its own template in export/rpm/spec and a list of
    config files in export/rpm/configs; otherwise the bundled template is used.
    """

    def __init__(self, manifest, config, scripts, arch):
        self._manifest = manifest
        self._config = config
        self._scripts = scripts
        self._arch = arch
        self.safe_name = convert_name(manifest.origin, manifest.name)
        self.safe_version = convert_version(manifest.version)

    def template_path(self):
        custom = os.path.join(self._manifest.install_dir, "export", "rpm", "spec")
        if os.path.isfile(custom):
            return custom
        return os.path.join(TEMPLATE_DIR, "spec")

    def config_files(self):
        path = os.path.join(self._manifest.install_dir, "export", "rpm", "configs")
        if not os.path.isfile(path):
            return []
        return [line.strip() for line in util.read_lines(path)]

    def configs(self):
        return "\n".join("%%config(noreplace) %s" % f for f in self.config_files())

    def script_contents(self):
        sections = []
        for name in LIFECYCLE_SCRIPTS:
            path = self._scripts.get(name)
            if not path:
                continue
            with open(path, "r") as infile:
                sections.append("%%%s\n%s" % (name, infile.read().rstrip("\n")))
        return "\n\n".join(sections)

    def context(self, installed_size):
        m = self._manifest
        context = {
            "payload": PAYLOADS[self._config.compression],
            "compression": self._config.compression,
            "name": self.safe_name,
            "version": self.safe_version,
            "release": rpm_release(m.release, self._config.dist_tag),
            "summary": m.name.lower(),
            "description": m.description(),
            "group": self._config.group,
            "license": m.license(),
            "vendor": m.origin,
            "url": m.upstream_url(),
            "packager": m.maintainer(),
            "architecture": self._arch,
            "installed_size": installed_size,
            "pkg_upstream_url": m.upstream_url(),
            "scripts": self.script_contents(),
            "configs": self.configs(),
            "package_user": PACKAGE_USER,
            "package_group": PACKAGE_GROUP,
        }
        context.update(self._config.dependencies())
        return context

    @timer_decorate
    def render(self, files, installed_size, out_dir):
        template_path = self.template_path()
        LOG.info("Rendering spec file from %s", template_path)
        env = Environment(loader=FileSystemLoader(os.path.dirname(template_path)))
        try:
            template = env.get_template(os.path.basename(template_path))
            text = template.render(self.context(installed_size))
        except TemplateError as e:
            raise ExportError("Could not render spec template %s: %s" % (template_path, e))

        spec_file = os.path.join(out_dir, "%s.spec" % self.safe_name)
        with open(spec_file, "w") as o:
            o.write(text)
            if not text.endswith("\n"):
                o.write("\n")
            # The file list goes after the template's %files header
            for line in files.lines():
                o.write(line + "\n")
        return spec_file


class Builder(object):
    """Runs rpmbuild on the staged tree, signs and collects the result."""

    def __init__(self, staging, spec_file, arch, config):
        self._staging = staging
        self._spec_file = spec_file
        self._arch = arch
        self._config = config

    def build_options(self):
        options = ["--target", self._arch, "-bb",
                   "--buildroot", os.path.join(self._staging, "BUILD"),
                   "--define", "_topdir %s" % self._staging,
                   self._spec_file]
        if self._config.verbose:
            options.append("--verbose")
        return options

    @timer_decorate
    def build(self):
        LOG.info("Building %s", os.path.basename(self._spec_file))
        util.run(["rpmbuild"] + self.build_options())

    def built_rpms(self):
        return sorted(glob.glob(os.path.join(self._staging, "RPMS", self._arch, "*.rpm")))

    @timer_decorate
    def sign(self):
        for rpm in self.built_rpms():
            LOG.info("Signing %s with key '%s'", os.path.basename(rpm), self._config.gpg_keyname)
            util.run(["rpmsign", "--addsign",
                      "--define", "_signature gpg",
                      "--define", "_gpg_path %s" % self._config.gpg_path,
                      "--define", "_gpg_name %s" % self._config.gpg_keyname,
                      rpm])

    @timer_decorate
    def copy_artifacts(self, results_dir, archive=None):
        rpms = self.built_rpms()
        if not rpms:
            raise ExportError("rpmbuild succeeded but no .rpm found under %s" %
                              os.path.join(self._staging, "RPMS", self._arch))
        if archive and len(rpms) > 1:
            LOG.warning("rpmbuild produced %d packages, ignoring --archive=%s", len(rpms), archive)
            archive = None
        util.mkdirs_recursive(results_dir)
        copied = []
        for rpm in rpms:
            name = archive or os.path.basename(rpm)
            dest = os.path.join(results_dir, name)
            shutil.copy(rpm, dest)
            LOG.info("Wrote %s", dest)
            copied.append(dest)
        return copied

    def write_rpm_name(self, rpm_name):
        path = os.path.join(self._staging, "rpm_name")
        with open(path, "w") as o:
            o.write(rpm_name)
        return path


@timer_decorate
def export(config):
    """Export config.pkg_ident as an RPM. Returns the paths of the copied
    artifacts, or of the rpm_name file in test mode."""
    install_dir = Habitat.package_path(config.pkg_ident)
    LOG.info("Exporting %s from %s", config.pkg_ident, install_dir)
    manifest = Manifest(install_dir)
    scripts = config.lifecycle_scripts(install_dir)
    arch = architecture()
    renderer = SpecRenderer(manifest, config, scripts, arch)

    studio_dir = tempfile.mkdtemp(prefix="%s-" % PROGRAM)
    stager = Stager(studio_dir, config.testname)
    try:
        Habitat.create_studio(config.pkg_ident, studio_dir)
        stager.create()
        stager.copy_bits()
        files = stager.generate_filelist(renderer.config_files())
        spec_file = renderer.render(files, stager.installed_size(),
                                    os.path.join(stager.staging, "SPECS"))

        builder = Builder(stager.staging, spec_file, arch, config)
        # For most testing, the spec file and RPM name are enough
        if config.testname:
            rpm_name = rpm_filename(renderer.safe_name, renderer.safe_version, manifest.release,
                                    arch, config.dist_tag, config.archive)
            LOG.info("Test mode: wrote %s, staging kept in %s", spec_file, stager.staging)
            return [builder.write_rpm_name(rpm_name)]

        builder.build()
        if config.gpg_keyname:
            builder.sign()
        return builder.copy_artifacts(config.results_dir, config.archive)
    finally:
        util.rmtree(studio_dir)
        stager.cleanup()


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog=PROGRAM,
        description="Habitat Package RPM - Create a RPM package from a set of Habitat packages",
        epilog=AUTHOR)

    # Global argument
    parser.add_argument('-v', '--verbose',
                        action='store_true',
                        help="Whether to print verbose output for debugging.")

    BuildConfig.add_arguments(parser)

    args = parser.parse_args(argv)
    if not args.pkg_ident:
        parser.print_help()
        LOG.error("You must specify a Habitat package.")
        sys.exit(1)
    return args


def main(argv=None):
    # LOG is named __main__ when run with python -m
    loggers = [logging.getLogger("hab_pkg_rpm")]
    if not LOG.name.startswith("hab_pkg_rpm"):
        loggers.append(LOG)
    for logger in loggers:
        util.configure_logger(logger)

    config = BuildConfig.build_from_args(parse_args(argv))
    if config.verbose:
        for logger in loggers:
            util.configure_debug_logger(logger)

    try:
        find_system_commands(config)
        export(config)
    except ExportError as e:
        LOG.error("%s", e)
        sys.exit(1)
    except subprocess.CalledProcessError as e:
        LOG.error("'%s' failed with exit status %d", " ".join(e.cmd), e.returncode)
        sys.exit(1)
    log_timer_traces()

if __name__ == "__main__":
    main()
