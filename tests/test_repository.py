"""Tests for repository transactions."""

import pytest

from platewise.db.models import UserState
from platewise.utils.time_utils import utcnow


@pytest.mark.asyncio
async def test_transaction_rolls_back_on_error(repo):
    async def apply(conn):
        await repo.save_user(UserState(user_id="u1", timezone="UTC"), utcnow(), conn)
        raise ValueError("abort")

    with pytest.raises(ValueError):
        await repo.run_in_transaction(apply)

    assert await repo.get_user("u1") is None


@pytest.mark.asyncio
async def test_original_error_survives_ended_transaction(repo):
    """If the transaction is already gone, the caller still sees the real error."""

    async def apply(conn):
        await repo.save_user(UserState(user_id="u1", timezone="UTC"), utcnow(), conn)
        await conn.execute("ROLLBACK")
        raise ValueError("abort after rollback")

    with pytest.raises(ValueError, match="abort after rollback"):
        await repo.run_in_transaction(apply)

    assert await repo.get_user("u1") is None
