"""Shared pytest fixtures for azconverge tests.

The fakes themselves live in ``fakes.py`` so test modules can import them
directly.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

import pytest
from fakes import FakeAzure, FakeKubernetes, make_config

from azconverge.models.config import StackConfig
from azconverge.providers.base import ResourceProvider


@pytest.fixture
def fake_azure() -> FakeAzure:
    return FakeAzure()


@pytest.fixture
def fake_kubernetes() -> FakeKubernetes:
    return FakeKubernetes()


@pytest.fixture
def target_factory(
    fake_kubernetes: FakeKubernetes,
) -> Callable[[dict[str, Any]], Awaitable[ResourceProvider]]:
    async def _factory(descriptor: dict[str, Any]) -> ResourceProvider:
        fake_kubernetes.descriptors.append(descriptor)
        return fake_kubernetes

    return _factory


@pytest.fixture
def stack_config() -> StackConfig:
    return make_config()


@pytest.fixture
def config_factory() -> Callable[..., StackConfig]:
    return make_config
