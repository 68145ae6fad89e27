"""Tests for the SQLite repository."""

import asyncio

import pytest

from tasklink.core.db_client import SQLiteRepository, build_json_set, build_where
from tasklink.core.repository import ChangeType, DuplicateRecordError, RecordNotFoundError


@pytest.fixture
async def repo(tmp_path):
    repository = SQLiteRepository(str(tmp_path / "test.db"))
    yield repository
    await repository.close()


@pytest.mark.unit
class TestQueryBuilders:
    """Tests for the WHERE / json_set builders."""

    def test_build_where_empty(self):
        assert build_where(None) == ("", [])

    def test_build_where_fields(self):
        clause, params = build_where({"status": "posted", "provider_id": None, "id": "t1"})

        assert "json_extract(data, '$.status') = ?" in clause
        assert "json_extract(data, '$.provider_id') IS NULL" in clause
        assert "id = ?" in clause
        assert params == ["posted", "t1"]

    def test_build_where_rejects_injection(self):
        with pytest.raises(ValueError, match="Invalid field name"):
            build_where({"status') OR 1=1 --": "x"})

    def test_build_json_set(self):
        expr, params = build_json_set({"is_booked": True, "task_id": "t1"})

        assert expr == "json_set(data, '$.is_booked', json(?), '$.task_id', json(?))"
        assert params == ["true", '"t1"']


@pytest.mark.unit
class TestSQLiteRepository:
    """Tests for CRUD, versions, and conditional updates."""

    @pytest.mark.asyncio
    async def test_insert_and_get_one(self, repo):
        created = await repo.insert("tasks", {"title": "Paint fence", "status": "posted", "skills": {"b", "a"}})

        assert created["version"] == 1
        fetched = await repo.get_one("tasks", created["id"])
        assert fetched["title"] == "Paint fence"
        assert fetched["skills"] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_get_one_missing_raises(self, repo):
        with pytest.raises(RecordNotFoundError):
            await repo.get_one("tasks", "missing")

    @pytest.mark.asyncio
    async def test_unknown_table_rejected(self, repo):
        with pytest.raises(ValueError, match="Invalid table name"):
            await repo.get("users")

    @pytest.mark.asyncio
    async def test_get_filters_on_json_fields(self, repo):
        await repo.insert("time_slots", {"provider_id": "p1", "is_booked": False})
        await repo.insert("time_slots", {"provider_id": "p1", "is_booked": True})
        await repo.insert("time_slots", {"provider_id": "p2", "is_booked": False})

        free = await repo.get("time_slots", {"provider_id": "p1", "is_booked": False})

        assert len(free) == 1
        assert free[0]["provider_id"] == "p1"

    @pytest.mark.asyncio
    async def test_update_bumps_version(self, repo):
        created = await repo.insert("tasks", {"status": "posted"})

        updated = await repo.update("tasks", created["id"], {"status": "applications", "provider_id": "p1"})

        assert updated["version"] == 2
        assert updated["status"] == "applications"
        assert updated["provider_id"] == "p1"

    @pytest.mark.asyncio
    async def test_update_missing_raises(self, repo):
        with pytest.raises(RecordNotFoundError):
            await repo.update("tasks", "missing", {"status": "posted"})

    @pytest.mark.asyncio
    async def test_update_if_guard(self, repo):
        slot = await repo.insert("time_slots", {"is_booked": False, "is_available": True})
        expected = {"is_booked": False, "is_available": True}

        first = await repo.update_if("time_slots", slot["id"], expected, {"is_booked": True, "task_id": "t1"})
        second = await repo.update_if("time_slots", slot["id"], expected, {"is_booked": True, "task_id": "t2"})

        assert first is not None
        assert first["task_id"] == "t1"
        assert second is None
        stored = await repo.get_one("time_slots", slot["id"])
        assert stored["task_id"] == "t1"
        assert stored["version"] == 2

    @pytest.mark.asyncio
    async def test_concurrent_update_if_single_winner(self, repo):
        slot = await repo.insert("time_slots", {"is_booked": False, "is_available": True})
        expected = {"is_booked": False, "is_available": True}

        results = await asyncio.gather(
            *(
                repo.update_if("time_slots", slot["id"], expected, {"is_booked": True, "task_id": f"t{i}"})
                for i in range(5)
            )
        )

        assert sum(r is not None for r in results) == 1

    @pytest.mark.asyncio
    async def test_time_slot_natural_key_is_unique(self, repo):
        key = {"provider_id": "p1", "date": "2026-03-05", "start_time": "10:00", "end_time": "12:00"}
        first = await repo.insert("time_slots", {**key, "is_booked": False})

        with pytest.raises(DuplicateRecordError):
            await repo.insert("time_slots", {**key, "is_booked": False})
        await repo.insert("time_slots", {**key, "end_time": "11:00"})

        stored = await repo.get("time_slots", key)
        assert [s["id"] for s in stored] == [first["id"]]

    @pytest.mark.asyncio
    async def test_delete(self, repo):
        created = await repo.insert("tasks", {"status": "draft"})

        await repo.delete("tasks", created["id"])

        with pytest.raises(RecordNotFoundError):
            await repo.get_one("tasks", created["id"])
        with pytest.raises(RecordNotFoundError):
            await repo.delete("tasks", created["id"])

    @pytest.mark.asyncio
    async def test_subscribe_receives_committed_writes(self, repo):
        events = []
        created = await repo.insert("tasks", {"status": "posted"})
        subscription = repo.subscribe("tasks", {"id": created["id"]}, events.append)

        await repo.update("tasks", created["id"], {"status": "cancelled"})
        await repo.insert("tasks", {"status": "posted"})
        subscription.unsubscribe()
        await repo.update("tasks", created["id"], {"status": "cancelled"})

        assert len(events) == 1
        assert events[0].change == ChangeType.UPDATE
        assert events[0].record["status"] == "cancelled"
        assert events[0].record["version"] == 2
