import sqlite3

import pytest

from polymath.memory import InMemoryStateStore, SQLiteStateStore


@pytest.fixture
def sqlite_store(tmp_path):
    store = SQLiteStateStore(str(tmp_path / "nested" / "polymath.db"))
    yield store
    store.close()


def test_in_memory_round_trip_is_a_copy():
    store = InMemoryStateStore()
    state = {"phase": "intake", "answers": {"q3": "x"}}
    store.save("user-1", "goal-1", state)
    loaded = store.load("user-1", "goal-1")
    loaded["answers"]["q3"] = "changed"
    assert store.load("user-1", "goal-1")["answers"] == {"q3": "x"}
    assert store.load("user-1", "goal-2") is None
    assert store.saves == 1


class TestSQLiteStateStore:
    def test_missing_record(self, sqlite_store):
        assert sqlite_store.load("user-1", "goal-1") is None

    def test_save_overwrites_single_row(self, sqlite_store):
        sqlite_store.save("user-1", "goal-1", {"phase": "intake"})
        sqlite_store.save("user-1", "goal-1", {"phase": "curriculum", "title": "热力学"})
        assert sqlite_store.load("user-1", "goal-1") == {"phase": "curriculum", "title": "热力学"}
        rows = sqlite_store._conn.execute("SELECT id FROM thesis").fetchall()
        assert rows == [("state-user-1-goal-1",)]

    def test_sessions_are_independent(self, sqlite_store):
        sqlite_store.save("user-1", "goal-1", {"phase": "intake"})
        sqlite_store.save("user-1", "goal-2", {"phase": "learning"})
        assert sqlite_store.load("user-1", "goal-1")["phase"] == "intake"
        assert sqlite_store.load("user-1", "goal-2")["phase"] == "learning"

    def test_corrupt_payload_is_ignored(self, sqlite_store):
        sqlite_store._conn.execute(
            "INSERT INTO thesis (id, user_id, goal_id, payload, updated_at) VALUES (?, ?, ?, ?, ?)",
            ("state-user-1-goal-1", "user-1", "goal-1", "{not json", 1),
        )
        sqlite_store._conn.commit()
        assert sqlite_store.load("user-1", "goal-1") is None

    def test_persists_across_connections(self, tmp_path):
        path = str(tmp_path / "polymath.db")
        first = SQLiteStateStore(path)
        first.save("user-1", "goal-1", {"phase": "learning"})
        first.close()
        second = SQLiteStateStore(path)
        assert second.load("user-1", "goal-1") == {"phase": "learning"}
        second.close()
        with sqlite3.connect(path) as conn:
            assert conn.execute("SELECT COUNT(*) FROM thesis").fetchone() == (1,)
