#!/usr/bin/env python3
"""libbundle.py - makes compiled LibreDWG artifact trees self-contained

features:

- Bundles every non-system shared library the binaries in `bin/` need
  (transitively) into `lib/`.
- Rewrites embedded references so each artifact finds its libraries
  relative to its own location ($ORIGIN on linux, @loader_path on macOS).
- Re-signs mutated Mach-O files and verifies the resulting tree.
- Only inspects binaries through the platform tools: ldd, patchelf, file
  (linux) and otool, install_name_tool, codesign, file (macOS).

class structure:

ShellCmd
    DependencyInspector
        LddInspector
        OtoolInspector
    ReferenceRewriter
        PatchelfRewriter
        InstallNameRewriter
    Signer
        NullSigner
        CodesignSigner
    ClosureResolver
    PathRewriter
    Toolchain
    ArtifactTree
    Bundler

Classifier
DependencyEnumerator
Verifier

"""

import argparse
import datetime
import json
import logging
import os
import platform
import re
import shutil
import subprocess
import sys
import tempfile
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional, Sequence, Union

__version__ = "0.1.0"

# ----------------------------------------------------------------------------
# type aliases

Pathlike = Union[str, Path]


# ----------------------------------------------------------------------------
# env helpers


def getenv(key: str, default: bool = False) -> bool:
    """convert '0','1' env values to bool {True, False}"""
    return bool(int(os.getenv(key, default)))


# ----------------------------------------------------------------------------
# constants

SYSTEM = "system"
BUNDLEABLE = "bundleable"

ROOT = "root"
BUNDLED = "bundled-library"

PLATFORMS: dict[str, dict[str, Any]] = {
    "linux": {
        "format": "elf",
        "magic": "ELF",
        "library_glob": "*.so*",
        "origin": "$ORIGIN",
        "tokens": ("$ORIGIN", "${ORIGIN}"),
        "alias": r"^(?P<stem>.+\.so)(\.\d+)+$",
        "alias_suffix": "",
        "tools": ["file", "ldd", "patchelf"],
    },
    "darwin": {
        "format": "macho",
        "magic": "Mach-O",
        "library_glob": "*.dylib",
        "origin": "@loader_path",
        "tokens": ("@loader_path", "@executable_path", "@rpath"),
        "alias": r"^(?P<stem>.+?)(\.\d+)+\.dylib$",
        "alias_suffix": ".dylib",
        "tools": ["file", "otool", "install_name_tool", "codesign"],
    },
}

SYSTEM_LIBRARIES: dict[str, dict[str, list[str]]] = {
    "linux": {
        "prefixes": [],
        "fragments": [
            "linux-vdso",
            "ld-linux",
            "ld-musl",
            "libc.so",
            "libm.so",
            "libpthread.so",
            "libdl.so",
            "librt.so",
            "libstdc++.so",
            "libgcc_s.so",
        ],
    },
    "darwin": {
        "prefixes": ["/usr/lib/", "/System/"],
        "fragments": [],
    },
}

# ----------------------------------------------------------------------------
# envar options

DEBUG = getenv("DEBUG", default=False)
COLOR = getenv("COLOR", default=True)

# ----------------------------------------------------------------------------
# platform detection utilities


class PlatformInfo:
    """Centralized platform detection"""

    def __init__(self) -> None:
        self.system = platform.system()
        self.machine = platform.machine()

    @property
    def is_darwin(self) -> bool:
        """Check if running on macOS"""
        return self.system == "Darwin"

    @property
    def is_linux(self) -> bool:
        """Check if running on Linux"""
        return self.system == "Linux"

    @property
    def tag(self) -> str:
        """platform key into PLATFORMS: 'linux' or 'darwin'"""
        if self.is_darwin:
            return "darwin"
        if self.is_linux:
            return "linux"
        raise ValidationError(f"unsupported platform: {self.system}")


PLATFORM_INFO = PlatformInfo()

# ----------------------------------------------------------------------------
# logging config


class CustomFormatter(logging.Formatter):
    """custom logging formatting class"""

    white = "\x1b[97;20m"
    grey = "\x1b[38;20m"
    green = "\x1b[32;20m"
    yellow = "\x1b[33;20m"
    red = "\x1b[31;20m"
    bold_red = "\x1b[31;1m"
    reset = "\x1b[0m"
    fmt = "%(delta)s - %(levelname)s - %(name)s.%(funcName)s - %(message)s"
    cfmt = (
        f"{white}%(delta)s{reset} - "
        f"{{}}%(levelname)s{{}} - "
        f"{white}%(name)s.%(funcName)s{reset} - "
        f"{grey}%(message)s{reset}"
    )

    FORMATS = {
        logging.DEBUG: cfmt.format(grey, reset),
        logging.INFO: cfmt.format(green, reset),
        logging.WARNING: cfmt.format(yellow, reset),
        logging.ERROR: cfmt.format(red, reset),
        logging.CRITICAL: cfmt.format(bold_red, reset),
    }

    def __init__(self, use_color: bool = COLOR) -> None:
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        """custom logger formatting method"""
        if not self.use_color:
            log_fmt: str = self.fmt
        else:
            log_fmt = self.FORMATS.get(record.levelno, self.fmt)
        duration = datetime.datetime.fromtimestamp(
            record.relativeCreated / 1000, datetime.timezone.utc
        )
        record.delta = duration.strftime("%H:%M:%S")
        formatter = logging.Formatter(log_fmt)
        return formatter.format(record)


strm_handler = logging.StreamHandler()
strm_handler.setFormatter(CustomFormatter())
logging.basicConfig(
    level=logging.DEBUG if DEBUG else logging.INFO,
    handlers=[strm_handler],
)


# ----------------------------------------------------------------------------
# custom exceptions


class BundleError(Exception):
    """Base exception for bundling errors"""

    pass


class CommandError(BundleError):
    """Exception for command execution errors"""

    def __init__(
        self, command: Sequence[str], returncode: int, output: Optional[str] = None
    ) -> None:
        self.command = " ".join(command)
        self.returncode = returncode
        self.output = output
        msg = f"Command '{self.command}' failed with return code {returncode}"
        if output:
            msg += f": {output.strip()}"
        super().__init__(msg)


class ValidationError(BundleError):
    """Exception for invalid input or missing tools"""

    pass


class UnresolvedReference(BundleError):
    """A declared dependency cannot be found on the build host"""

    def __init__(self, artifact: Pathlike, names: Sequence[str]) -> None:
        self.artifact = Path(artifact)
        self.names = list(names)
        super().__init__(
            f"{self.artifact}: unresolved reference(s): {', '.join(self.names)}"
        )


class NameCollision(BundleError):
    """Two distinct source libraries share a bundled basename"""

    def __init__(self, name: str, first: Pathlike, second: Pathlike) -> None:
        self.name = name
        self.first = Path(first)
        self.second = Path(second)
        super().__init__(
            f"name collision for {name}: {self.first} and {self.second}"
        )


class CopyFailure(BundleError):
    """Filesystem error while staging a library"""

    def __init__(self, source: Pathlike, destination: Pathlike, reason: str) -> None:
        self.source = Path(source)
        self.destination = Path(destination)
        super().__init__(f"cannot copy {source} to {destination}: {reason}")


class ArtifactError(BundleError):
    """Failure confined to a single artifact"""

    def __init__(self, artifact: Pathlike, reason: str) -> None:
        self.artifact = Path(artifact)
        self.reason = reason
        super().__init__(f"{self.artifact.name}: {reason}")


class RewriteFailure(ArtifactError):
    """Exception for reference rewriting errors"""

    pass


class SignatureFailure(ArtifactError):
    """Exception for re-signing errors"""

    pass


# ----------------------------------------------------------------------------
# dataclasses


@dataclass(frozen=True)
class Reference:
    """A dependency record embedded in an artifact."""

    declared: str
    resolved: Optional[Path]
    system: bool

    @property
    def name(self) -> str:
        """basename the dependency is bundled under"""
        if self.resolved is not None:
            return self.resolved.name
        return os.path.basename(self.declared)

    @property
    def is_resolved(self) -> bool:
        return self.resolved is not None


@dataclass
class Artifact:
    """An executable or shared library subject to dependency resolution."""

    path: Path
    kind: str
    references: list[Reference] = field(default_factory=list)

    @property
    def role(self) -> str:
        return ROOT if self.kind.endswith("-binary") else BUNDLED

    @classmethod
    def from_path(cls, path: Pathlike, fmt: str, role: str) -> "Artifact":
        suffix = "binary" if role == ROOT else "shared-lib"
        return cls(Path(path), f"{fmt}-{suffix}")


@dataclass
class BundleEntry:
    """One library in the bundle: where it comes from and where it goes."""

    name: str
    source: Path
    destination: Path
    prepopulated: bool = False


@dataclass
class RewriteRecord:
    """A single reference string written into an artifact."""

    artifact: Path
    field: str
    original: str
    replacement: str


@dataclass
class Violation:
    """A portability problem found by the verifier."""

    artifact: Path
    problem: str


@dataclass
class VerifyResult:
    """Outcome of a verification pass."""

    artifacts: list[Path] = field(default_factory=list)
    violations: list[Violation] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.violations

    def problems(self, artifact: Path) -> list[str]:
        return [v.problem for v in self.violations if v.artifact == artifact]

    def report_lines(self) -> list[str]:
        """one human-readable line per artifact"""
        lines = []
        for artifact in self.artifacts:
            problems = self.problems(artifact)
            status = "OK" if not problems else "; ".join(problems)
            lines.append(f"{artifact.name}: {status}")
        return lines


class BundleSet:
    """Ordered mapping of library basename to its single bundle entry."""

    def __init__(self) -> None:
        self.entries: dict[str, BundleEntry] = {}

    def __contains__(self, name: object) -> bool:
        return name in self.entries

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[BundleEntry]:
        return iter(self.entries.values())

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {list(self.entries)}>"

    def get(self, name: str) -> Optional[BundleEntry]:
        return self.entries.get(name)

    def add(self, entry: BundleEntry) -> BundleEntry:
        if entry.name in self.entries:
            raise ValueError(f"{entry.name} is already bundled")
        self.entries[entry.name] = entry
        return entry

    def names(self) -> list[str]:
        return list(self.entries)

    @property
    def staged(self) -> list[BundleEntry]:
        """entries copied in by this run"""
        return [e for e in self if not e.prepopulated]


# ----------------------------------------------------------------------------
# path helpers


def is_self_relative(path: str, tokens: Sequence[str]) -> bool:
    """True if path starts with one of the platform's self-relative tokens"""
    return any(path == t or path.startswith(t + "/") for t in tokens)


def relative_search_path(token: str, artifact: Path, lib_dir: Path) -> str:
    """search path from artifact's directory to lib_dir, e.g. $ORIGIN/../lib"""
    rel = os.path.relpath(lib_dir, artifact.parent)
    if rel == ".":
        return token
    return f"{token}/{Path(rel).as_posix()}"


def is_within(path: Path, root: Path) -> bool:
    """True if path (symlinks resolved) lies inside root"""
    real = Path(os.path.realpath(path))
    return real.is_relative_to(Path(os.path.realpath(root)))


def same_file(a: Path, b: Path) -> bool:
    return os.path.realpath(a) == os.path.realpath(b)


# ----------------------------------------------------------------------------
# system library classifier


class SystemLibraries:
    """Allow-list of libraries assumed present on every target host.

    A library is a system library when its path starts with one of
    ``prefixes`` or its basename contains one of ``fragments``.
    """

    def __init__(
        self,
        prefixes: Iterable[str] = (),
        fragments: Iterable[str] = (),
    ) -> None:
        self.prefixes: list[str] = list(prefixes)
        self.fragments: list[str] = list(fragments)

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} "
            f"prefixes={self.prefixes} fragments={self.fragments}>"
        )

    @classmethod
    def for_platform(cls, name: str) -> "SystemLibraries":
        """built-in table for 'linux' or 'darwin'"""
        try:
            table = SYSTEM_LIBRARIES[name]
        except KeyError:
            raise ValidationError(f"no system library table for {name}") from None
        return cls(table["prefixes"], table["fragments"])

    @classmethod
    def from_json(cls, path: Pathlike, name: str) -> "SystemLibraries":
        """built-in table for platform `name` extended by a json file

        The file maps platform names to {"prefixes": [...], "fragments": [...]}.
        """
        try:
            with open(path, encoding="utf8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ValidationError(f"cannot read system library table {path}: {e}") from e
        table = cls.for_platform(name)
        extra = data.get(name, {})
        if not isinstance(extra, dict):
            raise ValidationError(f"{path}: entry for {name} must be an object")
        table.extend(extra.get("prefixes", ()), extra.get("fragments", ()))
        return table

    def extend(
        self, prefixes: Iterable[str] = (), fragments: Iterable[str] = ()
    ) -> None:
        for prefix in prefixes:
            if prefix not in self.prefixes:
                self.prefixes.append(prefix)
        for fragment in fragments:
            if fragment not in self.fragments:
                self.fragments.append(fragment)

    def matches(self, path_or_name: str) -> bool:
        if any(path_or_name.startswith(p) for p in self.prefixes):
            return True
        basename = os.path.basename(path_or_name)
        return any(f in basename for f in self.fragments)


class Classifier:
    """Decides whether a library is 'system' or 'bundleable'."""

    def __init__(self, table: SystemLibraries) -> None:
        self.table = table
        self._cache: dict[str, str] = {}

    def classify(self, path_or_name: Pathlike) -> str:
        key = str(path_or_name)
        if key not in self._cache:
            self._cache[key] = SYSTEM if self.table.matches(key) else BUNDLEABLE
        return self._cache[key]

    def is_system(self, path_or_name: Pathlike) -> bool:
        return self.classify(path_or_name) == SYSTEM


# ----------------------------------------------------------------------------
# utility classes


class ShellCmd:
    """Runs the platform tools and performs file handling."""

    log: logging.Logger

    def run(
        self, args: Sequence[str], check: bool = True
    ) -> subprocess.CompletedProcess:
        """Run a command and capture its output

        Raises:
            CommandError: If check is set and the command exits non-zero
                or cannot be started
        """
        self.log.debug(" ".join(args))
        try:
            proc = subprocess.run(list(args), capture_output=True, text=True)
        except OSError as e:
            raise CommandError(args, -1, str(e)) from e
        if check and proc.returncode != 0:
            raise CommandError(args, proc.returncode, proc.stderr or proc.stdout)
        return proc

    def get(self, args: Sequence[str]) -> str:
        """get output of command"""
        return self.run(args).stdout

    def cmd(self, args: Sequence[str]) -> None:
        """Run a command that mutates something, logged at info level"""
        self.log.info(" ".join(args))
        self.run(args)

    def makedirs(self, path: Pathlike, exist_ok: bool = True) -> None:
        """Recursive directory creation function"""
        self.log.debug("Making directory: %s", path)
        os.makedirs(path, exist_ok=exist_ok)

    def chmod(self, path: Pathlike, perm: int = 0o644) -> None:
        """Change permission of file"""
        self.log.debug("change permission of %s to %s", path, oct(perm))
        os.chmod(path, perm)

    def symlink(self, target: str, link: Pathlike) -> None:
        """Create a relative symlink `link` pointing at `target`"""
        self.log.info("Creating symlink: %s -> %s", Path(link).name, target)
        os.symlink(target, link)

    def copy_atomic(self, src: Pathlike, dst: Pathlike, perm: int = 0o644) -> None:
        """copy src to dst without ever leaving a partial file at dst"""
        dst = Path(dst)
        fd, tmp = tempfile.mkstemp(prefix=f".{dst.name}.", dir=dst.parent)
        os.close(fd)
        try:
            shutil.copyfile(src, tmp)
            self.chmod(tmp, perm)
            os.replace(tmp, dst)
        except OSError:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def apt_install(self, *pkgs: str) -> None:
        """install debian packages using apt"""
        self.cmd(["sudo", "apt-get", "update", "-qq"])
        self.cmd(["sudo", "apt-get", "install", "-y", "-qq", *pkgs])


# ----------------------------------------------------------------------------
# dependency enumeration


class DependencyInspector(ShellCmd):
    """Lists the references embedded in an artifact."""

    def __init__(self, classifier: Classifier) -> None:
        self.classifier = classifier
        self.log = logging.getLogger(self.__class__.__name__)

    def references(self, path: Path) -> list[Reference]:
        """direct references in declaration order; unresolved have resolved=None"""
        raise NotImplementedError

    def search_paths(self, path: Path) -> list[str]:
        """embedded run-time search paths"""
        raise NotImplementedError

    def install_name(self, path: Path) -> Optional[str]:
        """the artifact's self-identifying reference, if the format has one"""
        return None

    def is_dynamic(self, path: Path) -> bool:
        """False for statically linked artifacts, which carry no references"""
        return True


class LddInspector(DependencyInspector):
    """ELF inspection through patchelf (what is needed) and ldd (where it is)."""

    LDD_PATTERN = re.compile(r"^(?P<name>\S+)\s+=>\s+(?P<path>not found|\S+)")
    LOADER_PATTERN = re.compile(r"^(?P<path>/\S+)\s+\(0x[0-9a-fA-F]+\)")
    NOT_DYNAMIC = ("not a dynamic executable", "statically linked")

    def loader_map(self, path: Path) -> Optional[dict[str, Optional[Path]]]:
        """map of needed name to the path the host loader picks

        Returns None for artifacts that are not dynamically linked.
        """
        proc = self.run(["ldd", str(path)], check=False)
        output = proc.stdout + proc.stderr
        if any(marker in output for marker in self.NOT_DYNAMIC):
            return None
        if proc.returncode != 0:
            raise CommandError(["ldd", str(path)], proc.returncode, output)
        mapping: dict[str, Optional[Path]] = {}
        for line in proc.stdout.splitlines():
            line = line.strip()
            m = self.LDD_PATTERN.match(line)
            if m:
                found = m.group("path")
                mapping[m.group("name")] = None if found == "not found" else Path(found)
                continue
            m = self.LOADER_PATTERN.match(line)
            if m:
                mapping[m.group("path")] = Path(m.group("path"))
        return mapping

    def needed(self, path: Path) -> list[str]:
        return self.get(["patchelf", "--print-needed", str(path)]).split()

    def references(self, path: Path) -> list[Reference]:
        mapping = self.loader_map(path)
        if mapping is None:
            self.log.debug("%s is not dynamically linked", path.name)
            return []
        refs = []
        for name in self.needed(path):
            resolved = mapping.get(name)
            if resolved is None and "/" in name and os.path.exists(name):
                resolved = Path(name)
            system = self.classifier.is_system(resolved if resolved else name)
            refs.append(Reference(name, resolved, system))
        return refs

    def is_dynamic(self, path: Path) -> bool:
        return self.loader_map(path) is not None

    def search_paths(self, path: Path) -> list[str]:
        # patchelf fails on files without a .dynamic section
        if not self.is_dynamic(path):
            return []
        rpath = self.get(["patchelf", "--print-rpath", str(path)]).strip()
        return [p for p in rpath.split(":") if p]


class OtoolInspector(DependencyInspector):
    """Mach-O inspection through otool."""

    OTOOL_PATTERN = re.compile(r"^(?P<path>.+?) \(compatibility version .*\)$")
    RPATH_PATTERN = re.compile(r"^path (?P<path>.+) \(offset \d+\)$")

    def install_name(self, path: Path) -> Optional[str]:
        lines = self.get(["otool", "-D", str(path)]).splitlines()
        # first line echoes the file name
        ids = [line.strip() for line in lines[1:] if line.strip()]
        return ids[0] if ids else None

    def search_paths(self, path: Path) -> list[str]:
        rpaths: list[str] = []
        lines = self.get(["otool", "-l", str(path)]).splitlines()
        for i, line in enumerate(lines):
            if line.strip() != "cmd LC_RPATH":
                continue
            for candidate in lines[i + 1 : i + 3]:
                m = self.RPATH_PATTERN.match(candidate.strip())
                if m and m.group("path") not in rpaths:
                    rpaths.append(m.group("path"))
        return rpaths

    def resolve(
        self, declared: str, path: Path, rpaths: Sequence[str]
    ) -> Optional[Path]:
        """where dyld would find `declared` when loaded from `path`"""
        origin = str(path.parent)
        for token in ("@loader_path/", "@executable_path/"):
            if declared.startswith(token):
                return self._existing(os.path.join(origin, declared[len(token) :]))
        if declared.startswith("@rpath/"):
            tail = declared[len("@rpath/") :]
            for rpath in rpaths:
                base = rpath.replace("@loader_path", origin)
                base = base.replace("@executable_path", origin)
                candidate = os.path.join(base, tail)
                found = self._existing(candidate)
                if found:
                    return found
                # system dylibs live in the dyld shared cache, not on disk
                if self.classifier.is_system(candidate):
                    return Path(os.path.normpath(candidate))
            return None
        return self._existing(declared)

    def _existing(self, candidate: str) -> Optional[Path]:
        candidate = os.path.normpath(candidate)
        return Path(candidate) if os.path.exists(candidate) else None

    def references(self, path: Path) -> list[Reference]:
        output = self.get(["otool", "-L", str(path)])
        own_id = self.install_name(path)
        rpaths = self.search_paths(path)
        refs: list[Reference] = []
        seen: set[str] = set()
        for line in output.splitlines():
            # section headers ("file:" or "file (architecture arm64):") are not indented
            if not line[:1].isspace():
                continue
            m = self.OTOOL_PATTERN.match(line.strip())
            if not m:
                continue
            declared = m.group("path")
            if declared == own_id or declared in seen:
                continue
            seen.add(declared)
            if self.classifier.is_system(declared):
                # system dylibs live in the dyld shared cache, not on disk
                refs.append(Reference(declared, Path(declared), True))
                continue
            resolved = self.resolve(declared, path, rpaths)
            system = resolved is not None and self.classifier.is_system(resolved)
            refs.append(Reference(declared, resolved, system))
        return refs


class DependencyEnumerator:
    """Strict enumeration: every reference must resolve."""

    def __init__(self, inspector: DependencyInspector) -> None:
        self.inspector = inspector
        self.log = logging.getLogger(self.__class__.__name__)

    def enumerate(self, path: Pathlike) -> list[Reference]:
        path = Path(path)
        refs = self.inspector.references(path)
        missing = [ref.declared for ref in refs if not ref.is_resolved]
        if missing:
            self.log.error("%s: cannot resolve %s", path.name, ", ".join(missing))
            raise UnresolvedReference(path, missing)
        for ref in refs:
            self.log.debug(
                "%s: %s -> %s (%s)",
                path.name,
                ref.declared,
                ref.resolved,
                SYSTEM if ref.system else BUNDLEABLE,
            )
        return refs


# ----------------------------------------------------------------------------
# closure resolution


class ClosureResolver(ShellCmd):
    """Computes and stages the transitive set of bundleable libraries."""

    def __init__(self, enumerator: DependencyEnumerator, lib_dir: Pathlike) -> None:
        self.enumerator = enumerator
        self.lib_dir = Path(lib_dir)
        self.log = logging.getLogger(self.__class__.__name__)

    def resolve(
        self, roots: Sequence[Path], prepopulated: Sequence[Path] = ()
    ) -> BundleSet:
        """breadth-first walk from the roots; nothing is copied here

        Libraries already in lib_dir (`prepopulated`) satisfy any reference
        with the same basename. Regular files among them are always part of
        the bundle, symlinks only once something references them.
        """
        bundle = BundleSet()
        present = {lib.name: lib for lib in prepopulated}
        queue: deque[tuple[Path, Reference]] = deque()

        def enqueue(owner: Path) -> None:
            for ref in self.enumerator.enumerate(owner):
                if not ref.system:
                    queue.append((owner, ref))

        libs = [lib for lib in prepopulated if not lib.is_symlink()]
        for lib in libs:
            bundle.add(BundleEntry(lib.name, lib, lib, prepopulated=True))
        for root in roots:
            enqueue(root)
        for lib in libs:
            enqueue(lib)

        while queue:
            owner, ref = queue.popleft()
            assert ref.resolved is not None
            entry = bundle.get(ref.name)
            if entry is None and ref.name in present:
                link = present[ref.name]
                bundle.add(BundleEntry(ref.name, link, link, prepopulated=True))
                continue
            if entry is not None:
                if not entry.prepopulated and not same_file(entry.source, ref.resolved):
                    self.log.error(
                        "%s needed by %s is %s, but %s is already bundled",
                        ref.name,
                        owner.name,
                        ref.resolved,
                        entry.source,
                    )
                    raise NameCollision(ref.name, entry.source, ref.resolved)
                continue
            # entry goes in before its own dependencies so cycles end here
            bundle.add(BundleEntry(ref.name, ref.resolved, self.lib_dir / ref.name))
            self.log.info("Found dependency: %s -> %s", ref.name, ref.resolved)
            enqueue(ref.resolved)
        return bundle

    def stage(self, bundle: BundleSet) -> list[Path]:
        """copy every newly discovered library into lib_dir"""
        self.makedirs(self.lib_dir)
        copied = []
        for entry in bundle.staged:
            if entry.destination.exists() and same_file(entry.source, entry.destination):
                continue
            self.log.info("Copying %s...", entry.name)
            try:
                self.copy_atomic(entry.source, entry.destination)
            except OSError as e:
                raise CopyFailure(entry.source, entry.destination, str(e)) from e
            copied.append(entry.destination)
        return copied


# ----------------------------------------------------------------------------
# reference rewriting


class ReferenceRewriter(ShellCmd):
    """Mutates the references embedded in one artifact."""

    def __init__(self, inspector: DependencyInspector, token: str) -> None:
        self.inspector = inspector
        self.token = token
        self.log = logging.getLogger(self.__class__.__name__)

    def rewrite(
        self,
        artifact: Path,
        references: Sequence[Reference],
        role: str,
        lib_dir: Path,
    ) -> list[RewriteRecord]:
        """rewrite the bundleable `references`; returns only actual changes"""
        raise NotImplementedError


class PatchelfRewriter(ReferenceRewriter):
    """ELF: point RUNPATH at lib_dir relative to $ORIGIN."""

    def rewrite(
        self,
        artifact: Path,
        references: Sequence[Reference],
        role: str,
        lib_dir: Path,
    ) -> list[RewriteRecord]:
        if not self.inspector.is_dynamic(artifact):
            self.log.debug("%s is statically linked, nothing to rewrite", artifact.name)
            return []
        args: list[str] = []
        records: list[RewriteRecord] = []
        for ref in references:
            if "/" in ref.declared:
                args += ["--replace-needed", ref.declared, ref.name]
                records.append(RewriteRecord(artifact, "needed", ref.declared, ref.name))
        current = ":".join(self.inspector.search_paths(artifact))
        wanted = relative_search_path(self.token, artifact, lib_dir)
        if current != wanted:
            args += ["--set-rpath", wanted]
            records.append(RewriteRecord(artifact, "rpath", current, wanted))
        if args:
            self.cmd(["patchelf", *args, str(artifact)])
        return records


class InstallNameRewriter(ReferenceRewriter):
    """Mach-O: change load commands and ids to @loader_path forms."""

    def __init__(
        self, inspector: DependencyInspector, token: str, classifier: Classifier
    ) -> None:
        super().__init__(inspector, token)
        self.classifier = classifier

    def rewrite(
        self,
        artifact: Path,
        references: Sequence[Reference],
        role: str,
        lib_dir: Path,
    ) -> list[RewriteRecord]:
        args: list[str] = []
        records: list[RewriteRecord] = []
        prefix = relative_search_path(self.token, artifact, lib_dir)
        for ref in references:
            wanted = f"{prefix}/{ref.name}"
            if ref.declared != wanted:
                args += ["-change", ref.declared, wanted]
                records.append(RewriteRecord(artifact, "load", ref.declared, wanted))
        if role == BUNDLED:
            current = self.inspector.install_name(artifact)
            wanted = f"{self.token}/{artifact.name}"
            if current != wanted:
                args += ["-id", wanted]
                records.append(RewriteRecord(artifact, "id", current or "", wanted))
        for rpath in self.inspector.search_paths(artifact):
            if rpath.startswith("@") or self.classifier.is_system(rpath):
                continue
            args += ["-delete_rpath", rpath]
            records.append(RewriteRecord(artifact, "rpath", rpath, ""))
        if args:
            self.cmd(["install_name_tool", *args, str(artifact)])
        return records


class Signer(ShellCmd):
    """Applies and checks code signatures."""

    def __init__(self) -> None:
        self.log = logging.getLogger(self.__class__.__name__)

    def sign(self, path: Path) -> None:
        raise NotImplementedError

    def verify(self, path: Path) -> Optional[str]:
        """None if the signature is valid, else the reason"""
        raise NotImplementedError


class NullSigner(Signer):
    """For formats without signatures."""

    def sign(self, path: Path) -> None:
        pass

    def verify(self, path: Path) -> Optional[str]:
        return None


class CodesignSigner(Signer):
    """Ad-hoc (or identity) signing through codesign."""

    def __init__(self, identity: str = "-") -> None:
        super().__init__()
        self.identity = identity

    def sign(self, path: Path) -> None:
        self.cmd(["codesign", "--force", "--sign", self.identity, str(path)])

    def verify(self, path: Path) -> Optional[str]:
        proc = self.run(["codesign", "--verify", "--verbose", str(path)], check=False)
        if proc.returncode == 0:
            return None
        reason = (proc.stderr or proc.stdout).strip().splitlines()
        return reason[-1] if reason else f"codesign exited {proc.returncode}"


class PathRewriter(ShellCmd):
    """Rewrites artifacts to self-relative references and re-signs them."""

    def __init__(
        self,
        inspector: DependencyInspector,
        rewriter: ReferenceRewriter,
        signer: Signer,
        lib_dir: Pathlike,
        alias_pattern: str,
        alias_suffix: str = "",
    ) -> None:
        self.inspector = inspector
        self.rewriter = rewriter
        self.signer = signer
        self.lib_dir = Path(lib_dir)
        self.alias_pattern = re.compile(alias_pattern)
        self.alias_suffix = alias_suffix
        self.log = logging.getLogger(self.__class__.__name__)

    def rewrite(
        self, artifact: Path, bundle: BundleSet, role: str
    ) -> list[RewriteRecord]:
        """Rewrite artifact's bundled references for its role

        Raises:
            RewriteFailure: If inspecting or mutating the artifact fails
            SignatureFailure: If re-signing the mutated artifact fails
        """
        self.log.info("Fixing %s...", artifact.name)
        try:
            references = [
                ref
                for ref in self.inspector.references(artifact)
                if not ref.system and ref.name in bundle
            ]
            records = self.rewriter.rewrite(artifact, references, role, self.lib_dir)
        except CommandError as e:
            raise RewriteFailure(artifact, str(e)) from e
        for record in records:
            self.log.info(
                "  Updating %s: %s -> %s",
                record.field,
                record.original or "(none)",
                record.replacement or "(removed)",
            )
        if records:
            try:
                self.signer.sign(artifact)
            except CommandError as e:
                raise SignatureFailure(artifact, str(e)) from e
        return records

    def alias_for(self, name: str) -> Optional[str]:
        """unversioned name for a versioned library, e.g. libiconv.so.2 -> libiconv.so"""
        m = self.alias_pattern.match(name)
        if not m:
            return None
        return m.group("stem") + self.alias_suffix

    def create_aliases(self) -> list[Path]:
        created = []
        for lib in sorted(self.lib_dir.iterdir()):
            if lib.is_symlink() or not lib.is_file():
                continue
            alias_name = self.alias_for(lib.name)
            if alias_name is None or alias_name == lib.name:
                continue
            alias = self.lib_dir / alias_name
            if os.path.lexists(alias):
                continue
            self.symlink(lib.name, alias)
            created.append(alias)
        return created


# ----------------------------------------------------------------------------
# verification


class Verifier:
    """Read-only check that a tree carries no host-specific references."""

    def __init__(
        self,
        inspector: DependencyInspector,
        signer: Signer,
        classifier: Classifier,
        tokens: Sequence[str],
    ) -> None:
        self.inspector = inspector
        self.signer = signer
        self.classifier = classifier
        self.tokens = tuple(tokens)
        self.log = logging.getLogger(self.__class__.__name__)

    def verify(self, tree: "ArtifactTree") -> VerifyResult:
        result = VerifyResult()
        for artifact in tree.artifacts():
            result.artifacts.append(artifact)
            for problem in self.check(artifact, tree.root):
                self.log.warning("%s: %s", artifact.name, problem)
                result.violations.append(Violation(artifact, problem))
        return result

    def check(self, artifact: Path, root: Path) -> list[str]:
        try:
            references = self.inspector.references(artifact)
            search_paths = self.inspector.search_paths(artifact)
        except CommandError as e:
            return [f"inspection failed: {e}"]
        problems = []
        for ref in references:
            if ref.resolved is None:
                problems.append(f"unresolved reference {ref.declared}")
            elif ref.system:
                continue
            elif "/" in ref.declared and not is_self_relative(ref.declared, self.tokens):
                problems.append(f"hardcoded reference {ref.declared}")
            elif not is_within(ref.resolved, root):
                problems.append(f"{ref.declared} resolves outside tree: {ref.resolved}")
        for search_path in search_paths:
            if is_self_relative(search_path, self.tokens):
                continue
            if self.classifier.is_system(search_path):
                continue
            problems.append(f"absolute search path {search_path}")
        reason = self.signer.verify(artifact)
        if reason:
            problems.append(f"invalid code signature: {reason}")
        return problems


# ----------------------------------------------------------------------------
# main classes


class Toolchain(ShellCmd):
    """Binds the per-platform inspector, rewriter and signer."""

    def __init__(
        self,
        name: str,
        classifier: Classifier,
        inspector: DependencyInspector,
        rewriter: ReferenceRewriter,
        signer: Signer,
    ) -> None:
        if name not in PLATFORMS:
            raise ValidationError(f"unsupported platform: {name}")
        self.name = name
        self.settings = PLATFORMS[name]
        self.classifier = classifier
        self.inspector = inspector
        self.rewriter = rewriter
        self.signer = signer
        self.log = logging.getLogger(self.__class__.__name__)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} '{self.name}'>"

    @classmethod
    def for_platform(
        cls,
        name: str,
        system_libraries: Optional[SystemLibraries] = None,
        codesign: bool = True,
        identity: str = "-",
    ) -> "Toolchain":
        if name not in PLATFORMS:
            raise ValidationError(f"unsupported platform: {name}")
        classifier = Classifier(system_libraries or SystemLibraries.for_platform(name))
        token = PLATFORMS[name]["origin"]
        inspector: DependencyInspector
        rewriter: ReferenceRewriter
        signer: Signer
        if name == "darwin":
            inspector = OtoolInspector(classifier)
            rewriter = InstallNameRewriter(inspector, token, classifier)
            signer = CodesignSigner(identity) if codesign else NullSigner()
        else:
            inspector = LddInspector(classifier)
            rewriter = PatchelfRewriter(inspector, token)
            signer = NullSigner()
        return cls(name, classifier, inspector, rewriter, signer)

    @property
    def format(self) -> str:
        return self.settings["format"]

    @property
    def library_glob(self) -> str:
        return self.settings["library_glob"]

    @property
    def tokens(self) -> tuple[str, ...]:
        return self.settings["tokens"]

    @property
    def tools(self) -> list[str]:
        tools = list(self.settings["tools"])
        if isinstance(self.signer, NullSigner) and "codesign" in tools:
            tools.remove("codesign")
        return tools

    def missing_tools(self) -> list[str]:
        return [tool for tool in self.tools if shutil.which(tool) is None]

    def check(self, install: bool = False) -> None:
        """Ensure the platform tools are on PATH

        Raises:
            ValidationError: If a required tool is missing
        """
        missing = self.missing_tools()
        if missing and install and self.name == "linux" and "patchelf" in missing:
            self.log.info("Installing patchelf...")
            self.apt_install("patchelf")
            missing = self.missing_tools()
        if missing:
            hint = "apt install patchelf" if self.name == "linux" else "xcode-select --install"
            raise ValidationError(f"missing tools: {', '.join(missing)} (try: {hint})")

    def is_artifact(self, path: Path) -> bool:
        """True if `file` recognises path as this platform's binary format"""
        try:
            description = self.get(["file", "-b", str(path)])
        except CommandError as e:
            self.log.warning("cannot identify %s: %s", path, e)
            return False
        return self.settings["magic"] in description


class ArtifactTree(ShellCmd):
    """Utility class to hold the artifact directory structure"""

    def __init__(
        self,
        root: Pathlike,
        toolchain: Toolchain,
        bin_name: str = "bin",
        lib_name: str = "lib",
    ) -> None:
        self.root = Path(root).absolute()
        self.toolchain = toolchain
        self.bin = self.root / bin_name
        self.lib = self.root / lib_name
        self.log = logging.getLogger(self.__class__.__name__)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} '{self.root}'>"

    def validate(self) -> None:
        if not self.root.is_dir():
            raise ValidationError(f"Directory {self.root} does not exist")

    def setup(self) -> None:
        """create the library directory"""
        self.makedirs(self.lib)

    def binaries(self) -> list[Path]:
        """executables in bin/ in the platform's binary format"""
        if not self.bin.is_dir():
            self.log.warning("No bin directory found in %s", self.root)
            return []
        found = []
        for path in sorted(self.bin.iterdir()):
            if path.is_symlink() or not path.is_file():
                continue
            if not os.access(path, os.X_OK):
                continue
            if self.toolchain.is_artifact(path):
                found.append(path)
        return found

    def library_entries(self) -> list[Path]:
        """everything in lib/ that looks like a shared library, links included"""
        if not self.lib.is_dir():
            return []
        return sorted(
            p
            for p in self.lib.glob(self.toolchain.library_glob)
            if p.is_file() and not p.name.startswith(".")
        )

    def libraries(self) -> list[Path]:
        """regular shared library files in lib/"""
        return [p for p in self.library_entries() if not p.is_symlink()]

    def artifacts(self) -> list[Path]:
        return self.binaries() + self.libraries()

    def describe(self, path: Path, references: Sequence[Reference] = ()) -> Artifact:
        role = BUNDLED if path.parent == self.lib else ROOT
        artifact = Artifact.from_path(path, self.toolchain.format, role)
        artifact.references.extend(references)
        return artifact


class Bundler(ShellCmd):
    """Runs discovery, resolution, staging, rewriting and verification."""

    def __init__(self, tree: ArtifactTree, toolchain: Toolchain) -> None:
        self.tree = tree
        self.toolchain = toolchain
        self.enumerator = DependencyEnumerator(toolchain.inspector)
        self.resolver = ClosureResolver(self.enumerator, tree.lib)
        self.rewriter = PathRewriter(
            toolchain.inspector,
            toolchain.rewriter,
            toolchain.signer,
            tree.lib,
            toolchain.settings["alias"],
            toolchain.settings["alias_suffix"],
        )
        self.verifier = Verifier(
            toolchain.inspector,
            toolchain.signer,
            toolchain.classifier,
            toolchain.tokens,
        )
        self.records: list[RewriteRecord] = []
        self.log = logging.getLogger(self.__class__.__name__)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} '{self.tree.root}'>"

    def plan(self) -> tuple[list[Path], BundleSet]:
        """discover roots and compute the bundle without changing anything"""
        self.tree.validate()
        roots = self.tree.binaries()
        bundle = self.resolver.resolve(roots, self.tree.library_entries())
        return roots, bundle

    def dry_run(self) -> BundleSet:
        """Display bundling plan without copying or rewriting anything."""
        roots, bundle = self.plan()

        print("\n" + "=" * 60)
        print("BUNDLE PLAN (dry-run)")
        print("=" * 60)

        print("\n[Artifact Tree]")
        print(f"  Root:              {self.tree.root}")
        print(f"  Binaries:          {self.tree.bin}")
        print(f"  Libraries:         {self.tree.lib}")
        print(f"  Platform:          {self.toolchain.name}")

        print("\n[Binaries]")
        for root in roots:
            artifact = self.tree.describe(root, self.enumerator.enumerate(root))
            print(f"  {root.name} ({artifact.kind})")
            for ref in artifact.references:
                kind = SYSTEM if ref.system else BUNDLEABLE
                print(f"    {ref.declared:<28} {kind}")
        if not roots:
            print("  (none)")

        print("\n[Libraries - Present]")
        present = [e for e in bundle if e.prepopulated]
        for entry in present:
            print(f"  {entry.name}")
        if not present:
            print("  (none)")

        print("\n[Libraries - To Bundle]")
        for entry in bundle.staged:
            print(f"  {entry.name:<30} <- {entry.source}")
        if not bundle.staged:
            print("  (none)")

        print("\n" + "=" * 60)
        print("No changes were made (dry-run mode)")
        print("=" * 60 + "\n")
        return bundle

    def process(self) -> VerifyResult:
        """main bundling process"""
        self.log.info("=== Fixing %s dependencies for %s ===", self.toolchain.name, self.tree.root)
        roots, bundle = self.plan()
        self.tree.setup()
        self.resolver.stage(bundle)

        failures: list[Violation] = []
        for root in roots:
            self._rewrite(root, bundle, ROOT, failures)
        for lib in self.tree.libraries():
            self._rewrite(lib, bundle, BUNDLED, failures)
        self.rewriter.create_aliases()

        result = self.verify()
        result.violations = failures + result.violations
        self.report(result)
        self.summary(roots, bundle)
        return result

    def _rewrite(
        self, artifact: Path, bundle: BundleSet, role: str, failures: list[Violation]
    ) -> None:
        try:
            self.records.extend(self.rewriter.rewrite(artifact, bundle, role))
        except (RewriteFailure, SignatureFailure) as e:
            self.log.error("%s", e)
            failures.append(Violation(artifact, e.reason))

    def verify(self) -> VerifyResult:
        self.log.info("=== Verification ===")
        return self.verifier.verify(self.tree)

    def report(self, result: VerifyResult) -> None:
        print("\n" + "=" * 60)
        print("VERIFICATION")
        print("=" * 60)
        for line in result.report_lines():
            print(f"  {line}")
        print("")
        if result.ok:
            print("All binaries are properly configured with bundled dependencies!")
        else:
            print(f"{len(result.violations)} violation(s) found")

    def summary(self, roots: Sequence[Path], bundle: BundleSet) -> None:
        print("\n=== Summary ===")
        print(f"Binaries fixed: {len(roots)}")
        print(
            f"Libraries bundled: {len(self.tree.libraries())} "
            f"({len(bundle.staged)} copied in this run)"
        )
        print(f"All dependencies are now relative using {self.toolchain.settings['origin']}")


def main(argv: Optional[Sequence[str]] = None) -> None:
    """commandline api entrypoint"""

    parser = argparse.ArgumentParser(
        prog="libbundle",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Bundle shared library dependencies into an artifact tree",
    )
    opt = parser.add_argument

    # fmt: off
    opt("artifact_dir", help="artifact tree containing bin/ and lib/", metavar="ARTIFACT_DIR")
    opt("-p", "--platform", choices=sorted(PLATFORMS), help="target platform (default: host)")
    opt("-b", "--bin-dir", default="bin", help="binaries subdirectory (default: %(default)s)")
    opt("-l", "--lib-dir", default="lib", help="libraries subdirectory (default: %(default)s)")
    opt("-s", "--system-libs", metavar="JSON", help="json file extending the system library table")
    opt("-x", "--exclude", nargs="+", default=[], metavar="FRAGMENT",
        help="treat libraries whose name contains FRAGMENT as system libraries")
    opt("-i", "--codesign-identity", default="-", help="codesign identity (default: ad-hoc '%(default)s')")
    opt("--no-codesign", action="store_true", help="do not re-sign mutated Mach-O files")
    opt("-n", "--dry-run", action="store_true", help="show bundle plan without changing anything")
    opt("--verify-only", action="store_true", help="only verify the artifact tree")
    opt("--install-tools", action="store_true", help="install missing tools (patchelf via apt)")
    opt("-v", "--verbose", action="store_true", help="debug logging")
    opt("--no-color", action="store_true", help="disable color in logging")
    opt("--version", action="version", version=f"%(prog)s {__version__}")
    # fmt: on

    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    if args.no_color:
        strm_handler.setFormatter(CustomFormatter(use_color=False))

    log = logging.getLogger("libbundle")
    try:
        name = args.platform or PLATFORM_INFO.tag
        if args.system_libs:
            table = SystemLibraries.from_json(args.system_libs, name)
        else:
            table = SystemLibraries.for_platform(name)
        table.extend(fragments=args.exclude)

        toolchain = Toolchain.for_platform(
            name,
            system_libraries=table,
            codesign=not args.no_codesign,
            identity=args.codesign_identity,
        )
        toolchain.check(install=args.install_tools)
        tree = ArtifactTree(args.artifact_dir, toolchain, args.bin_dir, args.lib_dir)
        bundler = Bundler(tree, toolchain)

        if args.dry_run:
            bundler.dry_run()
            sys.exit(0)
        if args.verify_only:
            tree.validate()
            result = bundler.verify()
            bundler.report(result)
        else:
            result = bundler.process()
    except BundleError as e:
        log.critical("%s", e)
        sys.exit(1)

    sys.exit(0 if result.ok else 1)


if __name__ == "__main__":
    main()
