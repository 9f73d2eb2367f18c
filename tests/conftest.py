"""Shared fixtures for the relayer test suite."""

from __future__ import annotations

import time

import pytest

from emailwallet_relayer.config import ImapConfig, PasswordAuth, Settings

from helpers import RELAYER_RAND, FakeChain, ScalarBlindPointService


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def blind_point_service() -> ScalarBlindPointService:
    return ScalarBlindPointService()


@pytest.fixture
def far_future() -> int:
    return int(time.time()) + 86_400


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        relayer_rand=RELAYER_RAND,
        database_url=f"sqlite:///{tmp_path / 'relayer.db'}",
        input_files_dir=str(tmp_path / "psi"),
    )


@pytest.fixture
def imap_config() -> ImapConfig:
    return ImapConfig(
        domain_name="imap.test.com",
        port=993,
        auth=PasswordAuth(user_id="relayer@test.com", password="testpass"),
    )
