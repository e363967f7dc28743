"""Shared fixtures: a throwaway repository and a pipeline config driving it."""
import os
import shlex
import sys
import textwrap
from pathlib import Path

import pytest

from matrixci.artifacts import ArtifactStore
from matrixci.cache import CacheManager, CacheStore
from matrixci.config import CachePolicy, CodegenCheck, ImagePolicy, PipelineConfig
from matrixci.dsl import platform, sh, target
from matrixci.executor import JobRun
from matrixci.model import Job, JobKind
from matrixci.ui.console import Console, set_console

PY = shlex.quote(sys.executable)

PROTO = 'syntax = "proto3";\nmessage Ping { string id = 1; }\n'

GEN_SCRIPT = textwrap.dedent(
    """
    import pathlib, sys
    out = pathlib.Path(sys.argv[1]) / "generated"
    out.mkdir(parents=True, exist_ok=True)
    for p in sorted(pathlib.Path("proto").glob("*.proto")):
        (out / (p.stem + ".pb.txt")).write_text("// generated\\n" + p.read_text())
    """
)

BUILD_SCRIPT = textwrap.dedent(
    """
    import os, pathlib, sys
    triple = sys.argv[1]
    features = sys.argv[2] if len(sys.argv) > 2 else ""
    if os.environ.get("FAIL_BUILD") == triple:
        print("error: linker failed for " + triple)
        sys.exit(3)
    out = pathlib.Path("out") / triple
    out.mkdir(parents=True, exist_ok=True)
    (out / "app").write_text("binary " + triple + " " + features)
    pathlib.Path("target").mkdir(exist_ok=True)
    (pathlib.Path("target") / ("deps-" + triple + ".txt")).write_text("deps")
    print("built " + triple)
    """
)

IMAGE_SCRIPT = textwrap.dedent(
    """
    import os, sys
    arch, image = sys.argv[1], sys.argv[2]
    if os.environ.get("FAIL_ARCH") == arch:
        print("image build failed for " + arch)
        sys.exit(1)
    print("built image " + image)
    """
)

MARK_SCRIPT = textwrap.dedent(
    """
    import sys
    with open(sys.argv[1], "a") as f:
        f.write(" ".join(sys.argv[2:]) + "\\n")
    sys.exit(int(sys.argv[-1]) if sys.argv[-1].isdigit() else 0)
    """
)

SCENARIO_TARGETS = [
    target("linux", "x86_64", "jemalloc"),
    target("linux", "arm64"),
    target("macos", "arm64"),
]

TRIPLES = {
    ("linux", "x86_64"): "x86_64-unknown-linux-musl",
    ("linux", "arm64"): "aarch64-unknown-linux-musl",
    ("macos", "arm64"): "aarch64-apple-darwin",
}


@pytest.fixture(autouse=True)
def quiet_console():
    set_console(Console(debug=False))
    yield


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    root = tmp_path / "repo"
    (root / "proto").mkdir(parents=True)
    (root / "proto" / "api.proto").write_text(PROTO)
    (root / "generated").mkdir()
    (root / "generated" / "api.pb.txt").write_text("// generated\n" + PROTO)
    (root / "Cargo.lock").write_text('[[package]]\nname = "proxy"\nversion = "0.1.0"\n')
    (root / "gen.py").write_text(GEN_SCRIPT)
    (root / "build.py").write_text(BUILD_SCRIPT)
    (root / "image.py").write_text(IMAGE_SCRIPT)
    (root / "mark.py").write_text(MARK_SCRIPT)
    return root


def py(code: str) -> str:
    """Shell command running a python one-liner with this interpreter."""
    return f"{PY} -c {shlex.quote(code)}"


def make_config(**overrides) -> PipelineConfig:
    fields = dict(
        name="test",
        targets=list(SCENARIO_TARGETS),
        platforms=[
            platform("linux", "x86_64", triple=TRIPLES[("linux", "x86_64")]),
            platform("linux", "arm64", triple=TRIPLES[("linux", "arm64")], allowed_features=["default"]),
            platform("macos", "arm64", triple=TRIPLES[("macos", "arm64")]),
        ],
        build=[sh("Build", f"{PY} build.py {{triple}} '{{features}}'")],
        lint=[sh("Lint", py("print('lint ok')"))],
        test=[sh("Test", py("print('tests ok')")), sh("Validate", py("print('valid')"))],
        artifacts=["out/{triple}/app"],
        cache=CachePolicy(lock_files=("Cargo.lock",), paths=("target/",), namespace="cargo"),
        codegen=CodegenCheck(command=f"{PY} gen.py {{output}}", paths=("generated",)),
        images=None,
        default_timeout=60,
    )
    fields.update(overrides)
    return PipelineConfig(**fields)


def image_policy(**overrides) -> ImagePolicy:
    fields = dict(
        repository="example/proxy",
        architectures=("amd64", "arm64"),
        build=f"{PY} image.py {{arch}} {{image}}",
        manifest=py("import sys; print('manifest')") + " {image} {sources}",
        emulation=f"{PY} mark.py emulation.log {{arch}}",
        native_architecture="amd64",
        tools=(),
    )
    fields.update(overrides)
    return ImagePolicy(**fields)


@pytest.fixture
def config() -> PipelineConfig:
    return make_config()


@pytest.fixture
def store(tmp_path: Path) -> ArtifactStore:
    return ArtifactStore(tmp_path / "artifacts")


@pytest.fixture
def cache_store(tmp_path: Path) -> CacheStore:
    return CacheStore(tmp_path / "cache")


@pytest.fixture
def cache(cache_store: CacheStore, config: PipelineConfig) -> CacheManager:
    return CacheManager(cache_store, config.cache)


@pytest.fixture
def make_run(repo: Path):
    def _make(job: Job, **variables) -> JobRun:
        return JobRun(job=job, repo_root=repo, variables=dict(variables))
    return _make


def build_job(spec=None, timeout=30.0) -> Job:
    spec = spec or SCENARIO_TARGETS[0]
    return Job(id=f"build:{spec.slug}", kind=JobKind.BUILD, target=spec, timeout=timeout)


def truncate_entry(store: CacheStore, repo: Path, key: str) -> None:
    """Save a sizeable entry under key, then cut the archive in half."""
    (repo / "target").mkdir(exist_ok=True)
    (repo / "target" / "blob.bin").write_bytes(os.urandom(256 * 1024))
    store.save(key, ["target/"], repo_root=repo)
    art = store.artifact_path(key)
    data = art.read_bytes()
    art.write_bytes(data[: len(data) // 2])
