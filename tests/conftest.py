"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from synoctl.config import AppConfig, load_config
from tests.fakes import NAS_URL, FakeDSM


@pytest.fixture
def dsm() -> FakeDSM:
    """Return a fresh simulated appliance."""
    return FakeDSM()


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., AppConfig]:
    """Return a factory for configs rooted under ``tmp_path``."""

    def _factory(**synology: object) -> AppConfig:
        settings: dict[str, object] = {
            "url": NAS_URL,
            "secret_ref": "garden/synology-admin",
            "storage_classes": {"iscsi": {"parameters": {"fsType": "ext4"}}},
        }
        settings.update(synology)
        return load_config(
            config_file=tmp_path / "missing.yml",
            env={},
            overrides={
                "state_dir": str(tmp_path / "state"),
                "logs_dir": str(tmp_path / "logs"),
                "templates_dir": str(tmp_path / "templates"),
                "synology": settings,
            },
        )

    return _factory
