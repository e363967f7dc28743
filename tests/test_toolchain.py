"""Tests for the toolchain provisioner."""
import sys
import threading
import time
from pathlib import Path

import pytest

from conftest import PY, build_job, image_policy, make_config
from matrixci.config import Tool
from matrixci.dsl import platform, sh
from matrixci.errors import JobTimeout, ToolchainError
from matrixci.executor import BuildExecutor, JobRun, run_job, target_variables
from matrixci.model import Job, JobKind, JobStatus, TargetSpec
from matrixci.toolchain import Provisioner


def _marks(repo: Path, name: str) -> list[str]:
    p = repo / name
    return p.read_text().splitlines() if p.exists() else []


class TestTools:

    def test_present_tool(self, make_run):
        config = make_config(toolchain=[Tool(sys.executable)])
        job = build_job()
        chain = Provisioner(config).ensure(job, make_run(job))
        assert "Python" in chain.tools[sys.executable]

    def test_pinned_version_match(self, make_run):
        version = f"{sys.version_info.major}.{sys.version_info.minor}"
        config = make_config(toolchain=[Tool(sys.executable, version=version)])
        job = build_job()
        Provisioner(config).ensure(job, make_run(job))

    def test_pinned_version_mismatch(self, make_run):
        config = make_config(toolchain=[Tool(sys.executable, version="0.0.0-never")])
        job = build_job()
        with pytest.raises(ToolchainError, match="version mismatch"):
            Provisioner(config).ensure(job, make_run(job))

    def test_missing_tool(self, make_run):
        config = make_config(toolchain=[Tool("matrixci-no-such-tool")])
        job = build_job()
        with pytest.raises(ToolchainError, match="not available"):
            Provisioner(config).ensure(job, make_run(job))

    def test_failure_is_remembered(self, repo, make_run):
        tool = Tool("matrixci-no-such-tool", install=f"{PY} mark.py installs.log attempt 1")
        config = make_config(toolchain=[tool])
        prov = Provisioner(config)
        for spec in [TargetSpec("linux", "x86_64"), TargetSpec("linux", "arm64")]:
            job = build_job(spec)
            with pytest.raises(ToolchainError):
                prov.ensure(job, make_run(job))
        assert len(_marks(repo, "installs.log")) == 1

    def test_codegen_tool_only_for_drift_and_builds(self):
        config = make_config(codegen_tool=Tool("protoc"), toolchain=[Tool("cargo")])
        prov = Provisioner(config)
        drift = prov.requirements(Job(id="codegen-check", kind=JobKind.CODEGEN_CHECK), {})
        assert [k for k, _ in drift] == ["tool:protoc"]
        build = prov.requirements(build_job(), {})
        assert [k for k, _ in build] == ["tool:cargo", "tool:protoc"]


class TestSetup:

    def _config(self):
        setup = [sh("Add target", f"{PY} mark.py setup.log {{triple}}")]
        return make_config(platforms=[
            platform("linux", "x86_64", triple="x86_64-unknown-linux-musl", setup=setup),
            platform("linux", "arm64", triple="aarch64-unknown-linux-musl", setup=setup),
        ])

    def test_setup_is_idempotent_per_host(self, repo, make_run):
        config = self._config()
        prov = Provisioner(config)
        for _ in range(3):
            job = build_job(TargetSpec("linux", "x86_64"))
            prov.ensure(job, make_run(job, **target_variables(job, config)))
        assert _marks(repo, "setup.log") == ["x86_64-unknown-linux-musl"]

    def test_setup_resolved_from_target(self, repo, make_run):
        config = self._config()
        prov = Provisioner(config)
        for spec in [TargetSpec("linux", "x86_64"), TargetSpec("linux", "arm64"), TargetSpec("macos", "arm64")]:
            job = build_job(spec)
            prov.ensure(job, make_run(job, **target_variables(job, config)))
        assert sorted(_marks(repo, "setup.log")) == ["aarch64-unknown-linux-musl", "x86_64-unknown-linux-musl"]

    def test_emulation_only_for_foreign_architectures(self):
        prov = Provisioner(make_config(images=image_policy(native_architecture="amd64")))
        native = Job(id="image:amd64", kind=JobKind.IMAGE, target=TargetSpec("linux", "amd64"))
        foreign = Job(id="image:arm64", kind=JobKind.IMAGE, target=TargetSpec("linux", "arm64"))
        assert not [k for k, _ in prov.requirements(native, {"arch": "amd64"}) if k.startswith("setup:")]
        assert [k for k, _ in prov.requirements(foreign, {"arch": "arm64"}) if k.startswith("setup:")]

    def test_x86_64_counts_as_native_amd64(self):
        prov = Provisioner(make_config(images=image_policy(native_architecture="x86_64")))
        job = Job(id="image:amd64", kind=JobKind.IMAGE, target=TargetSpec("linux", "amd64"))
        assert not [k for k, _ in prov.requirements(job, {}) if k.startswith("setup:")]


def test_toolchain_failure_fails_the_job(repo, store, cache):
    config = make_config(toolchain=[Tool("matrixci-no-such-tool")])
    prov = Provisioner(config)
    executor = BuildExecutor(config, provisioner=prov, cache=cache, store=store)

    job = build_job()
    run_job(job, JobRun(job=job, repo_root=repo), executor.work, store)
    assert job.status is JobStatus.FAILED
    assert job.reason == "ToolchainError"


SLOW_SETUP = "import pathlib, time\npathlib.Path('slow.started').touch()\ntime.sleep(3)\n"


def _wait_for(path: Path, limit: float = 10.0) -> None:
    deadline = time.monotonic() + limit
    while not path.exists():
        assert time.monotonic() < deadline, f"{path.name} never appeared"
        time.sleep(0.05)


class TestConcurrentProvisioning:

    @pytest.fixture
    def config(self, repo):
        (repo / "slow.py").write_text(SLOW_SETUP)
        return make_config(platforms=[
            platform("linux", "x86_64", triple="x86_64-unknown-linux-musl",
                     setup=[sh("slow setup", f"{PY} slow.py")]),
            platform("linux", "arm64", triple="aarch64-unknown-linux-musl",
                     setup=[sh("fast setup", f"{PY} mark.py setup.log {{triple}}")]),
        ])

    def _start_slow(self, prov, config, make_run) -> threading.Thread:
        job = build_job(TargetSpec("linux", "x86_64"))
        run = make_run(job, **target_variables(job, config))
        worker = threading.Thread(target=prov.ensure, args=(job, run))
        worker.start()
        return worker

    def test_unrelated_setup_does_not_wait(self, repo, config, make_run):
        prov = Provisioner(config)
        worker = self._start_slow(prov, config, make_run)
        _wait_for(repo / "slow.started")

        job = build_job(TargetSpec("linux", "arm64"), timeout=2.0)
        prov.ensure(job, make_run(job, **target_variables(job, config)))
        assert _marks(repo, "setup.log") == ["aarch64-unknown-linux-musl"]
        worker.join()

    def test_wait_for_shared_setup_is_bounded_by_budget(self, repo, config, make_run):
        prov = Provisioner(config)
        worker = self._start_slow(prov, config, make_run)
        _wait_for(repo / "slow.started")

        job = build_job(TargetSpec("linux", "x86_64"), timeout=0.5)
        started = time.monotonic()
        with pytest.raises(JobTimeout):
            prov.ensure(job, make_run(job, **target_variables(job, config)))
        assert time.monotonic() - started < 2.0
        worker.join()

    def test_waiter_reuses_finished_setup(self, repo, config, make_run):
        prov = Provisioner(config)
        worker = self._start_slow(prov, config, make_run)
        _wait_for(repo / "slow.started")

        job = build_job(TargetSpec("linux", "x86_64"), timeout=30)
        chain = prov.ensure(job, make_run(job, **target_variables(job, config)))
        assert chain.setup == ["slow setup"]
        worker.join()
