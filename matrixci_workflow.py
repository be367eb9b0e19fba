# matrixci_workflow.py
# Build matrix for a Rust crate with optional std/alloc features:
# every platform x toolchain x feature set must check and test, and one
# extra job keeps formatting and docs clean.
from __future__ import annotations

from matrixci.dsl import axis, matrix, sh, single, wf


FEATURES = {
    "default": "--all --bins --examples",
    "no_std": "--no-default-features",
    "alloc": "--no-default-features --features alloc",
    "unstable": "--all --benches --bins --examples --tests",
}


# every job builds into its own scratch dir
CARGO_ENV = {"RUSTFLAGS": "-Dwarnings", "CARGO_TARGET_DIR": "{job_dir}/target"}


def workflow():
    return wf(
        matrix(
            "build-and-test",
            axis("os", ["ubuntu-latest", "windows-latest", "macOS-latest"]),
            axis("rust", ["stable"]),
            axis("features", FEATURES),
            steps=[
                sh("check", "cargo +{rust} check {features}", timeout=1800),
                sh("tests", "cargo +{rust} test --all", timeout=3600),
            ],
            env=CARGO_ENV,
            requires=["cargo"],
        ),
        single(
            "fmt-and-docs",
            sh("fmt", "cargo fmt --all -- --check"),
            sh("docs", "cargo doc"),
            env=CARGO_ENV,
            requires=["cargo", "rustfmt"],
        ),
    )
