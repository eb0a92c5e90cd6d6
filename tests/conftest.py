"""Shared fixtures."""

import pytest
import pytest_asyncio

from platewise.db.migrations import run_migrations
from platewise.db.repository import Repository
from platewise.engine.push import PreparedNotification, SendResult


class FakeTransport:
    """Records every payload; tokens in failing_tokens fail delivery."""

    def __init__(self):
        self.sent: list[PreparedNotification] = []
        self.failing_tokens: set[str] = set()

    async def send(self, notification: PreparedNotification) -> SendResult:
        self.sent.append(notification)
        if notification.push_token in self.failing_tokens:
            return SendResult(success=False, error="UNREGISTERED")
        return SendResult(success=True)


@pytest_asyncio.fixture
async def repo(tmp_path):
    """A migrated, connected repository on a temporary database."""
    db_path = tmp_path / "platewise.db"
    await run_migrations(db_path)
    repository = Repository(db_path)
    await repository.connect()
    yield repository
    await repository.drain_background_tasks()
    await repository.close()


@pytest.fixture
def transport():
    return FakeTransport()
