"""
Shared test fixtures and configuration.
"""

import logging
import textwrap
from collections.abc import Callable
from pathlib import Path

import pytest

from hostconverge.adapters.mock import FakeHost
from hostconverge.adapters.registry import AdapterRegistry


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def host() -> FakeHost:
    """An empty in-memory host."""
    return FakeHost()


@pytest.fixture
def registry(host: FakeHost) -> AdapterRegistry:
    return AdapterRegistry.fake(host)


@pytest.fixture
def write_document(tmp_path: Path) -> Callable[..., Path]:
    """Write a converge.yml (dedented) into tmp_path and return its path."""

    def _write(content: str, name: str = "converge.yml") -> Path:
        path = tmp_path / name
        path.write_text(textwrap.dedent(content))
        return path

    return _write


@pytest.fixture
def restore_logging():
    """Put the root logger back the way pytest configured it."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield root
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
