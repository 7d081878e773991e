"""Pytest configuration and fixtures."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Project root
PROJECT_ROOT = Path(__file__).parent.parent

# Add src to the Python path
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from multi_consul_template.applier import GENERATED_MARK  # noqa: E402


class FakeReloader:
    """Records reload requests instead of signalling a process."""

    def __init__(self, alive: bool = True) -> None:
        self.alive = alive
        self.calls = 0

    def reload(self) -> bool:
        self.calls += 1
        return self.alive


@pytest.fixture
def reloader() -> FakeReloader:
    return FakeReloader()


@pytest.fixture
def template_dir(tmp_path: Path) -> Path:
    """Directory templates are materialized into."""
    directory = tmp_path / "templates"
    directory.mkdir()
    return directory


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """consul-template config with a hand-written head and a stale generated block."""
    path = tmp_path / "consul-template.hcl"
    path.write_text(
        'consul {\n  address = "127.0.0.1:8500"\n}\n'
        "log_level = \"info\"\n"
        f"{GENERATED_MARK}\n"
        'template {\nsource = "/stale.ctmpl"\ndestination = "/stale"\n}\n',
        encoding="utf-8",
    )
    return path


@pytest.fixture
def idle_reloader() -> FakeReloader:
    """Reloader with no renderer process behind it."""
    return FakeReloader(alive=False)
