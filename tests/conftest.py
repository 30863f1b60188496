"""Shared test fixtures and configuration."""

import asyncio
import random
from typing import Callable

import pytest

from sendrecv.signalling.coordinator import NegotiationCoordinator
from tests.fake_channel import FakeChannel
from tests.mock_media_engine import MockMediaEngine

PEER_ID = "4242"


@pytest.fixture
def peer_id() -> str:
    """Peer the test calls."""
    return PEER_ID


@pytest.fixture
def channel() -> FakeChannel:
    """Scripted signalling channel."""
    return FakeChannel()


@pytest.fixture
def media() -> MockMediaEngine:
    """Mock media engine."""
    return MockMediaEngine()


@pytest.fixture
def coordinator(peer_id: str, channel: FakeChannel, media: MockMediaEngine) -> NegotiationCoordinator:
    """Coordinator wired to the fake channel and mock engine."""
    return NegotiationCoordinator(
        peer_id=peer_id,
        channel=channel,
        media=media,
        rng=random.Random(1234)
    )


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the event loop until ``predicate`` holds."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0)
