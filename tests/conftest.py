"""Shared fixtures: a controllable clock and a throwaway project layout."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from klaude.config import AppConfig, WrapperConfig
from klaude.services.project_context import ProjectContext, prepare_project_context


class FakeClock:
    """Monotonic time that only moves when someone sleeps or calls advance()."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []
        self._epoch = datetime(2025, 1, 1, tzinfo=timezone.utc)

    def monotonic(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)

    def utcnow(self) -> datetime:
        return self._epoch + timedelta(seconds=self.now)

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def app_config(tmp_path):
    return AppConfig(
        wrapper=WrapperConfig(
            socket_dir=str(tmp_path / "run"),
            projects_dir=str(tmp_path / "projects"),
        ),
    )


@pytest.fixture
def project(tmp_path, app_config) -> ProjectContext:
    root = tmp_path / "repo"
    root.mkdir()
    return prepare_project_context(root, app_config)
