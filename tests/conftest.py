import os

# Deterministic config for every test, set BEFORE any reunite import
os.environ["REUNITE_AI_MATCHING_DISABLED"] = "0"
os.environ["REUNITE_LLM_API_KEY"] = "test-key"
os.environ.pop("REUNITE_ORACLE_KEY", None)

import datetime as dt  # noqa: E402

import pytest  # noqa: E402

from reunite import events  # noqa: E402
from reunite.guard import get_guard  # noqa: E402
from reunite.models import Item  # noqa: E402


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_shared_state():
    """Fresh event handlers and oracle guard for every test."""
    events.clear()
    get_guard().reset()
    yield
    events.clear()
    get_guard().reset()


def make_item(item_id: str, **overrides) -> Item:
    """Build an Item with sensible defaults for tests."""
    data = {
        "id": item_id,
        "title": "Item " + item_id,
        "description": "",
        "category": "Misc",
        "location": "Somewhere",
        "date": dt.date(2024, 1, 10),
        "type": "found",
        "image_url": None,
        "user_id": "u-other",
    }
    data.update(overrides)
    return Item(**data)


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms
