"""Fake toolchain for exercising the pipeline without platform tools.

Fake artifacts are small json files recording what a real binary would
embed: the libraries it needs and its run-time search path. The fake
inspector resolves them the way the loader would ($ORIGIN-expanded rpath
first, then the host search directories).
"""

import json
import os
from pathlib import Path

import pytest

from libbundle import (
    ArtifactTree,
    Classifier,
    CommandError,
    DependencyInspector,
    NullSigner,
    Reference,
    ReferenceRewriter,
    RewriteRecord,
    Signer,
    SystemLibraries,
    Toolchain,
    relative_search_path,
)


def read_meta(path):
    with open(path, encoding="utf8") as f:
        return json.load(f)


def write_artifact(path, needed=(), rpath=(), executable=False):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps({"format": "fake-elf", "needed": list(needed), "rpath": list(rpath)}),
        encoding="utf8",
    )
    if executable:
        os.chmod(path, 0o755)
    return path


class FakeInspector(DependencyInspector):
    def __init__(self, classifier, search_dirs):
        super().__init__(classifier)
        self.search_dirs = [str(d) for d in search_dirs]

    def find(self, name, path, rpaths):
        if "/" in name:
            return Path(name) if os.path.exists(name) else None
        dirs = [r.replace("$ORIGIN", str(path.parent)) for r in rpaths]
        for d in dirs + self.search_dirs:
            candidate = Path(os.path.normpath(os.path.join(d, name)))
            if candidate.exists():
                return candidate
        return None

    def references(self, path):
        meta = read_meta(path)
        refs = []
        for name in meta["needed"]:
            resolved = self.find(name, path, meta["rpath"])
            system = self.classifier.is_system(resolved if resolved else name)
            refs.append(Reference(name, resolved, system))
        return refs

    def search_paths(self, path):
        return list(read_meta(path)["rpath"])


class FakeRewriter(ReferenceRewriter):
    def __init__(self, inspector, token="$ORIGIN"):
        super().__init__(inspector, token)
        self.calls = []
        self.failing = set()

    def rewrite(self, artifact, references, role, lib_dir):
        self.calls.append((artifact.name, role))
        if artifact.name in self.failing:
            raise CommandError(["patchelf", str(artifact)], 1, "cannot open file")
        meta = read_meta(artifact)
        records = []
        for ref in references:
            if "/" in ref.declared:
                meta["needed"] = [ref.name if n == ref.declared else n for n in meta["needed"]]
                records.append(RewriteRecord(artifact, "needed", ref.declared, ref.name))
        current = ":".join(meta["rpath"])
        wanted = relative_search_path(self.token, artifact, lib_dir)
        if current != wanted:
            meta["rpath"] = [wanted]
            records.append(RewriteRecord(artifact, "rpath", current, wanted))
        if records:
            artifact.write_text(json.dumps(meta), encoding="utf8")
        return records


class FakeSigner(Signer):
    def __init__(self):
        super().__init__()
        self.signed = []
        self.failing = set()
        self.invalid = set()

    def sign(self, path):
        if path.name in self.failing:
            raise CommandError(["codesign", "--force", "--sign", "-", str(path)], 1, "no identity")
        self.signed.append(path.name)

    def verify(self, path):
        if path.name in self.invalid:
            return "code object is not signed at all"
        return None


class FakeToolchain(Toolchain):
    def check(self, install=False):
        pass

    def is_artifact(self, path):
        try:
            return read_meta(path).get("format") == "fake-elf"
        except (OSError, ValueError):
            return False


def make_toolchain(search_dirs, signer=None):
    classifier = Classifier(SystemLibraries.for_platform("linux"))
    inspector = FakeInspector(classifier, search_dirs)
    return FakeToolchain(
        "linux",
        classifier,
        inspector,
        FakeRewriter(inspector),
        signer or NullSigner(),
    )


@pytest.fixture
def host(tmp_path):
    """A build host: a LibreDWG install prefix and the system library dir"""
    prefix = tmp_path / "prefix" / "lib"
    system = tmp_path / "system"
    write_artifact(system / "libc.so.6")
    write_artifact(system / "libm.so.6", needed=["libc.so.6"])
    write_artifact(prefix / "libiconv.so.2", needed=["libc.so.6"])
    write_artifact(prefix / "libredwg.so.0", needed=["libiconv.so.2", "libm.so.6", "libc.so.6"])
    return {"root": tmp_path, "prefix": prefix, "system": system}


@pytest.fixture
def toolchain(host):
    return make_toolchain([host["prefix"], host["system"]])


@pytest.fixture
def tree(tmp_path, host, toolchain):
    """artifacts/linux-x64 with dwg2dxf and dwgread built against the prefix"""
    root = tmp_path / "artifacts" / "linux-x64"
    write_artifact(root / "bin" / "dwg2dxf", needed=["libredwg.so.0", "libc.so.6"], executable=True)
    write_artifact(root / "bin" / "dwgread", needed=["libredwg.so.0", "libc.so.6"], executable=True)
    (root / "bin" / "README").write_text("not a binary", encoding="utf8")
    return ArtifactTree(root, toolchain)
