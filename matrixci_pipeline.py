# matrixci_pipeline.py
# Pipeline for the proxy repo: native core (cargo), web UI bundle (npm),
# generated protobuf bindings (protoc/go), multi-arch container image.
from __future__ import annotations

from matrixci import (
    CachePolicy,
    CodegenCheck,
    ImagePolicy,
    JobKind,
    PipelineConfig,
    platform,
    sh,
    target,
    tool,
)

PROTOC = tool("protoc", install="scripts/install-protoc.sh {version}")
CARGO = tool("cargo", install="rustup toolchain install stable --profile minimal")
NPM = tool("npm")


def pipeline():
    return PipelineConfig(
        name="branch",
        targets=[
            # musl performance is poor without jemalloc
            target("linux", "x86_64", "jemalloc"),
            target("linux", "arm64"),
            target("macos", "arm64"),
        ],
        platforms=[
            platform(
                "linux", "x86_64",
                triple="x86_64-unknown-linux-musl",
                setup=[
                    sh("Install musl-tools", "sudo apt-get update && sudo apt-get install -y musl-tools"),
                    sh("Add cross target", "rustup target add {triple}"),
                ],
            ),
            platform(
                "linux", "arm64",
                triple="aarch64-unknown-linux-musl",
                # jemalloc does not build for this target yet
                allowed_features=["default"],
                setup=[
                    sh("Install musl-tools", "sudo apt-get update && sudo apt-get install -y musl-tools"),
                    sh("Add cross target", "rustup target add {triple}"),
                ],
            ),
            platform(
                "macos", "arm64",
                triple="aarch64-apple-darwin",
                setup=[sh("Add cross target", "rustup target add {triple}")],
            ),
        ],
        toolchain=[CARGO, NPM],
        codegen_tool=PROTOC,
        build=[
            sh("Build UI", "npm install && npm run build", cwd="ui"),
            sh("Build", "make build", env={"CARGO_BUILD_ARGS": "--target {triple} --features '{features}'"}),
        ],
        lint=[sh("Lint", "make lint")],
        test=[
            sh("Test", "make test"),
            sh("Validate", "make validate"),
        ],
        artifacts=["target/{triple}/release/proxy"],
        cache=CachePolicy(
            lock_files=("**/Cargo.lock",),
            paths=("target/",),
            namespace="cargo",
        ),
        codegen=CodegenCheck(
            command="make gen GEN_OUT={output}",
            paths=("pkg/api/generated", "crates/protos/src/generated"),
        ),
        images=ImagePolicy(
            repository="ghcr.io/example/proxy",
            architectures=("amd64", "arm64"),
            build="DOCKER_BUILDER='docker buildx' make docker PLATFORM={platform} IMAGE={image}",
        ),
        timeouts={JobKind.CODEGEN_CHECK: 20 * 60},
        fail_fast={JobKind.BUILD: True, JobKind.IMAGE: True, JobKind.CODEGEN_CHECK: False},
        env={"CARGO_TERM_COLOR": "always"},
    )
