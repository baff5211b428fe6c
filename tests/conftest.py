"""Shared fixtures: fake clocks, request builders, an echo-engine config."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from chatgate.config.schema import Config
from chatgate.protocol.identifiers import new_id
from chatgate.protocol.types import IncomingRequest, Source


class FakeClock:
    """Seconds clock that only moves when told to."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeUtcClock:
    """Datetime clock for the session store."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays and returns at once."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def utc_clock() -> FakeUtcClock:
    return FakeUtcClock()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


def make_request(
    source: Source = Source.TELEGRAM,
    content: str = "hi",
    user_id: str | None = None,
    **kwargs,
) -> IncomingRequest:
    default_users = {Source.TELEGRAM: "42", Source.HTTP: "alice", Source.CLI: "cli-user-alice"}
    return IncomingRequest(
        id=kwargs.pop("id", new_id("req")),
        source=source,
        user_id=user_id if user_id is not None else default_users[source],
        content=content,
        chat_id=kwargs.pop("chat_id", "42" if source is Source.TELEGRAM else None),
        **kwargs,
    )


@pytest.fixture
def echo_config(tmp_path: Path) -> Config:
    return Config(workspace=tmp_path, engine={"kind": "echo"})
