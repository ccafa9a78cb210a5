from __future__ import annotations

from typing import List, Optional

import pytest

from pester.core.router import Router


class FakeTransport:
    """Records every event the core hands it."""

    def __init__(self, kind: str = "fake", *, alive: bool = True) -> None:
        self.kind = kind
        self.user_id: Optional[str] = None
        self.alive = alive
        self.sent: List[dict] = []
        self.closed = False

    def send(self, event: dict) -> bool:
        if not self.alive or self.closed:
            return False
        self.sent.append(event)
        return True

    def close(self) -> None:
        self.closed = True

    def types(self) -> List[str]:
        return [e["type"] for e in self.sent]

    def of_type(self, type_: str) -> List[dict]:
        return [e for e in self.sent if e["type"] == type_]

    def clear(self) -> None:
        self.sent.clear()


class ExplodingTransport(FakeTransport):
    def send(self, event: dict) -> bool:
        raise ConnectionResetError("peer went away")


class FixedClock:
    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.value = start

    def __call__(self) -> int:
        self.value += 1
        return self.value


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def router(clock):
    return Router.create(now=clock)


@pytest.fixture
def connect():
    """Factory for fake client connections."""

    def _connect(kind: str = "fake") -> FakeTransport:
        return FakeTransport(kind)

    return _connect
