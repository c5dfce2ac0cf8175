"""メンバー在籍履歴レポート テスト"""

from unittest.mock import AsyncMock

import pytest

from dashboard_sync.services.connectwise.member_history import (
    fetch_member_history,
    render_member_history,
)


@pytest.fixture
def history_client(client):
    client.get_members.return_value = [
        {"id": 1, "identifier": "old", "firstName": "Old", "lastName": "Timer", "inactiveFlag": True},
        {"id": 2, "identifier": "new", "firstName": "New", "lastName": "Hire", "inactiveFlag": False},
        {"id": 3, "identifier": "none", "firstName": "No", "lastName": "Entries"},
        {"id": 4, "identifier": "broken", "firstName": "Err", "lastName": "Or"},
    ]

    async def bounds(member_id):
        if member_id == 4:
            raise RuntimeError("boom")
        return {
            1: ("2019-03-01T09:00:00Z", "2021-12-20T17:00:00Z"),
            2: ("2024-01-08T09:00:00Z", "2024-05-30T17:00:00Z"),
            3: (None, None),
        }[member_id]

    client.get_time_entry_bounds = AsyncMock(side_effect=bounds)
    return client


@pytest.mark.asyncio
async def test_fetch_member_history(history_client):
    """エントリー無し・失敗したメンバーは除外、最終エントリーの新しい順"""
    rows = await fetch_member_history(history_client, batch_size=2)

    assert [r["identifier"] for r in rows] == ["new", "old"]
    assert rows[1]["active"] is False
    assert rows[0]["name"] == "New Hire"
    history_client.get_members.assert_awaited_once_with(include_inactive=True)
    assert history_client.get_time_entry_bounds.await_count == 4


@pytest.mark.asyncio
async def test_render_member_history(history_client):
    rows = await fetch_member_history(history_client)

    report = render_member_history(rows)

    lines = report.splitlines()
    assert lines[0] == "# Member History Report"
    assert lines[4] == "| New Hire | new | Yes | 2024-01-08 | 2024-05-30 |"
    assert lines[5] == "| Old Timer | old | No | 2019-03-01 | 2021-12-20 |"
