"""
run-box - Test Configuration
"""
import pytest

from run_box.config import Config
from run_box.executor import CommandExecutor
from run_box.registry import ProcessRegistry


@pytest.fixture
def registry() -> ProcessRegistry:
    return ProcessRegistry()


@pytest.fixture
def executor(registry: ProcessRegistry) -> CommandExecutor:
    return CommandExecutor(registry)


@pytest.fixture
def config(tmp_path) -> Config:
    """Small limits so timeouts and truncation are quick to hit."""
    return Config(
        default_cwd=str(tmp_path),
        default_timeout_ms=5_000,
        max_output_bytes=1_024,
        shutdown_grace_ms=1_000,
    )
