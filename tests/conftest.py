"""Shared fixtures for room session tests."""

from __future__ import annotations

import pytest

from backend import RedisBackend
from connection_registry import ConnectionRegistry
from fakes import FakeRedis
from session_manager import RoomSessionManager


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def backend(fake_redis: FakeRedis) -> RedisBackend:
    return RedisBackend(fake_redis)


@pytest.fixture
def registry() -> ConnectionRegistry:
    return ConnectionRegistry()


@pytest.fixture
def manager(backend: RedisBackend, registry: ConnectionRegistry) -> RoomSessionManager:
    return RoomSessionManager(backend, registry)
