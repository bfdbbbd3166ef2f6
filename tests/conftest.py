from __future__ import annotations

import sys

import pytest

from coderunner.config import Config
from coderunner.workspace import WorkspaceStore


@pytest.fixture
def config(tmp_path) -> Config:
    """A configuration confined to ``tmp_path`` that runs Python with this interpreter."""
    return Config(
        workspace_root=str(tmp_path / "workspaces"),
        python_bin=sys.executable,
        max_cpu_secs=20,
        max_memory_mb=0,
        wall_clock_ms=10_000,
        input_wait_ms=10_000,
        compile_timeout_secs=60,
    )


@pytest.fixture
def store(tmp_path) -> WorkspaceStore:
    return WorkspaceStore(tmp_path / "workspaces")
