"""
Pytest fixtures and configuration for tests.
"""

from datetime import datetime, timedelta, timezone

import pytest

from flowguard.config import Environment, Settings
from flowguard.config.settings import RetrySettings
from flowguard.retry.idempotency import InMemoryIdempotencyStore
from flowguard.retry.manager import CancellationToken, RetryManager


class RecordingSleep:
    """Stand-in for the backoff wait that records delays instead of sleeping."""

    def __init__(self, cancel_after: int = 0):
        self.delays: list[float] = []
        self.cancel_after = cancel_after

    async def __call__(self, seconds: float, token: CancellationToken) -> bool:
        self.delays.append(seconds)
        if self.cancel_after and len(self.delays) >= self.cancel_after:
            token.cancel()
        return token.cancelled

    @property
    def delays_ms(self) -> list[int]:
        return [round(d * 1000) for d in self.delays]


class FakeClock:
    """Manually advanced clock for TTL checks."""

    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings with deterministic retry delays."""
    return Settings(
        environment=Environment.TEST,
        debug=True,
        log_level="DEBUG",
        retry=RetrySettings(jitter_enabled=False),
    )


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def idempotency_store() -> InMemoryIdempotencyStore:
    return InMemoryIdempotencyStore()


@pytest.fixture
def retry_manager(
    test_settings: Settings,
    recording_sleep: RecordingSleep,
    idempotency_store: InMemoryIdempotencyStore,
) -> RetryManager:
    """Retry manager that never actually waits between attempts."""
    return RetryManager(store=idempotency_store, settings=test_settings, sleep=recording_sleep)


@pytest.fixture
def scenario_graph() -> dict:
    """Cron trigger feeding an email send that has no recipient."""
    return {
        "id": "g1",
        "name": "Daily digest",
        "nodes": [
            {
                "id": "a",
                "type": "trigger.time.cron",
                "params": {"schedule": "0 9 * * *"},
            },
            {
                "id": "b",
                "type": "action.gmail.send",
                "params": {"subject": "Daily digest", "body": "Here is your digest"},
            },
        ],
        "edges": [{"id": "e1", "source": "a", "target": "b"}],
    }


@pytest.fixture
def linear_graph() -> dict:
    """Valid graph: schedule -> append row -> send email."""
    return {
        "id": "g2",
        "name": "Sheet logger",
        "nodes": [
            {
                "id": "trigger",
                "type": "trigger.time.schedule",
                "params": {"schedule": "*/15 * * * *"},
                "position": {"x": 0, "y": 0},
            },
            {
                "id": "append",
                "type": "action.sheets.append",
                "params": {"spreadsheetId": "sheet-123", "range": "A1"},
            },
            {
                "id": "notify",
                "type": "action.gmail.send",
                "params": {"recipient": "ops@example.com", "subject": "Row added"},
            },
        ],
        "edges": [
            {"id": "e1", "source": "trigger", "target": "append"},
            {"id": "e2", "source": "append", "target": "notify"},
        ],
    }


@pytest.fixture
def cyclic_graph() -> dict:
    """Graph with a cycle: a -> b -> c -> a."""
    return {
        "id": "g3",
        "name": "Loop",
        "nodes": [
            {"id": "a", "type": "transform.data.map", "params": {}},
            {"id": "b", "type": "transform.data.map", "params": {}},
            {"id": "c", "type": "transform.data.map", "params": {}},
        ],
        "edges": [
            {"id": "e1", "source": "a", "target": "b"},
            {"id": "e2", "source": "b", "target": "c"},
            {"id": "e3", "source": "c", "target": "a"},
        ],
    }


@pytest.fixture
def mapping_context() -> dict:
    """Outputs of prior nodes plus variables and user context."""
    return {
        "node_outputs": {
            "form": {
                "name": "Ada Lovelace",
                "email": "ada@example.com",
                "age": 36,
                "score": 0,
                "nickname": "",
                "tags": ["math", "engines"],
            },
            "orders": {
                "items": [
                    {"sku": "A-1", "price": 5, "qty": 2},
                    {"sku": "B-2", "price": 12.5, "qty": 1},
                    {"sku": "C-3", "price": 40, "qty": 3},
                ],
                "created": "2024-03-05T14:07:09Z",
            },
        },
        "current_node": "notify",
        "global_variables": {"company": "Analytical Engines Ltd", "region": "eu"},
        "user_context": {"timezone": "Europe/London", "region": "us"},
    }
