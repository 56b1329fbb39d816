import asyncio
import json

import psycopg
import pytest

import repo_profiles
from models import ScoreEntry
from repo_profiles import FileProfileRepo, StorePersistError, StoreReadError


@pytest.fixture
def repo(tmp_path):
    return FileProfileRepo(tmp_path / "store.json", tmp_path / "store-backup.json")


def set_score(score_type, value):
    def mutate(record, now):
        record.scores[score_type] = ScoreEntry(value=value, state="high", updated_at=now)
    return mutate


def test_missing_document_reads_as_empty(repo):
    assert asyncio.run(repo.load_all()) == {}


def test_update_creates_record_with_defaults(repo):
    record = asyncio.run(repo.update("emp-1", lambda record, now: None))

    assert record.profile_id == "sahha-emp-1"
    assert record.department is None
    assert record.created_at == record.last_updated
    stored = json.loads(repo.path.read_text())
    assert stored["emp-1"]["externalId"] == "emp-1"
    assert stored["emp-1"]["scores"] == {}
    assert stored["emp-1"]["biomarkers"] == {}


def test_created_at_kept_on_later_updates(repo):
    async def run():
        first = await repo.update("emp-1", set_score("sleep", 0.5))
        await asyncio.sleep(0.01)
        second = await repo.update("emp-1", set_score("activity", 0.6))
        return first, second

    first, second = asyncio.run(run())
    assert second.created_at == first.created_at
    assert second.last_updated >= first.last_updated
    assert set(second.scores) == {"sleep", "activity"}


def test_unknown_fields_survive_rewrite(repo):
    repo.path.write_text(json.dumps({
        "emp-1": {"externalId": "emp-1", "profileId": "p-1", "accountId": "acct-9", "department": "HR"},
    }))
    asyncio.run(repo.update("emp-1", set_score("sleep", 0.5)))

    stored = json.loads(repo.path.read_text())["emp-1"]
    assert stored["accountId"] == "acct-9"
    assert stored["department"] == "HR"


def test_legacy_record_shapes_upgraded_on_update(repo):
    repo.path.write_text(json.dumps({
        "emp-1": {
            "externalId": "emp-1",
            "scores": {
                "sleep": {"value": 0.5, "state": "medium", "scoreDateTime": "2025-09-01T00:00:00Z"},
                "activity": {"value": 0.4, "state": "low"},
            },
            "biomarkers": {
                "sleep_duration": {"value": 7, "unit": "hour", "updatedAt": "2025-09-02T00:00:00Z"},
            },
        },
    }))

    record = asyncio.run(repo.update("emp-1", set_score("readiness", 0.6)))

    stored = json.loads(repo.path.read_text())["emp-1"]
    assert stored["profileId"] == "sahha-emp-1"
    assert [r["timestamp"] for r in stored["biomarkers"]["sleep_duration"]] == ["2025-09-02T00:00:00Z"]
    assert stored["biomarkers"]["sleep_duration"][0]["value"] == 7
    assert stored["scores"]["sleep"]["updatedAt"] == "2025-09-01T00:00:00Z"
    assert stored["scores"]["activity"]["updatedAt"] == record.last_updated
    assert set(stored["scores"]) == {"sleep", "activity", "readiness"}


@pytest.mark.parametrize("bad_record", [
    {"externalId": "emp-1", "scores": {"sleep": {"state": "high"}}},
    "not a record",
])
def test_invalid_stored_record_is_read_error_for_that_profile_only(repo, bad_record):
    repo.path.write_text(json.dumps({"emp-1": bad_record}))

    async def run():
        with pytest.raises(StoreReadError, match="emp-1"):
            await repo.update("emp-1", set_score("sleep", 0.5))
        return await asyncio.wait_for(repo.update("emp-2", set_score("sleep", 0.3)), timeout=2)

    record = asyncio.run(run())
    assert record.external_id == "emp-2"
    assert json.loads(repo.path.read_text())["emp-1"] == bad_record


def test_concurrent_updates_to_different_profiles_are_not_lost(repo):
    async def run():
        await asyncio.gather(*[
            repo.update(f"emp-{i}", set_score("sleep", i / 100)) for i in range(25)
        ])
        return await repo.load_all()

    document = asyncio.run(run())
    assert sorted(document) == sorted(f"emp-{i}" for i in range(25))
    assert all(document[f"emp-{i}"]["scores"]["sleep"]["value"] == i / 100 for i in range(25))


def test_load_merge_save_cycles_never_overlap(repo):
    active = []
    overlaps = []
    original_write = repo._write_document

    def tracking_write(document):
        overlaps.append(len(active))
        original_write(document)

    async def tracked_load():
        active.append(1)
        return await FileProfileRepo.load_all(repo)

    def mutate(record, now):
        record.scores["sleep"] = ScoreEntry(value=0.5, state="medium", updated_at=now)

    async def run():
        async def one(i):
            await repo.update(f"emp-{i}", mutate)
            active.pop()
        await asyncio.gather(*(one(i) for i in range(5)))

    repo._write_document = tracking_write
    repo.load_all = tracked_load
    asyncio.run(run())

    assert overlaps == [1, 1, 1, 1, 1]


def test_failing_mutation_releases_lock_and_writes_nothing(repo):
    def boom(record, now):
        raise ValueError("bad mutation")

    async def run():
        with pytest.raises(ValueError):
            await repo.update("emp-1", boom)
        assert not repo.path.exists()
        return await asyncio.wait_for(repo.update("emp-2", set_score("sleep", 0.3)), timeout=2)

    record = asyncio.run(run())
    assert record.external_id == "emp-2"


def test_persist_failure_raises_and_leaves_previous_document(repo, monkeypatch):
    asyncio.run(repo.update("emp-1", set_score("sleep", 0.5)))
    before = repo.path.read_text()

    def disk_full(src, dst):
        raise OSError("No space left on device")

    monkeypatch.setattr(repo_profiles.os, "replace", disk_full)
    with pytest.raises(StorePersistError):
        asyncio.run(repo.update("emp-2", set_score("sleep", 0.7)))
    monkeypatch.undo()

    assert repo.path.read_text() == before
    assert not repo.path.with_name(repo.path.name + ".tmp").exists()
    record = asyncio.run(asyncio.wait_for(repo.update("emp-3", set_score("sleep", 0.1)), timeout=2))
    assert record.external_id == "emp-3"
    assert "emp-2" not in asyncio.run(repo.load_all())


def test_backup_written_and_used_when_main_is_corrupt(repo):
    async def run():
        await repo.update("emp-1", set_score("sleep", 0.5))
        await repo.update("emp-2", set_score("sleep", 0.6))

    asyncio.run(run())
    assert set(json.loads(repo.backup_path.read_text())) == {"emp-1"}

    repo.path.write_text("{ not json")
    assert set(asyncio.run(repo.load_all())) == {"emp-1"}


def test_corrupt_document_without_backup_is_read_error(repo):
    repo.path.write_text("[1, 2, 3]")
    with pytest.raises(StoreReadError):
        asyncio.run(repo.load_all())
    with pytest.raises(StoreReadError):
        asyncio.run(repo.update("emp-1", set_score("sleep", 0.5)))


def test_clear_removes_all_profiles(repo):
    async def run():
        await repo.update("emp-1", set_score("sleep", 0.5))
        await repo.update("emp-2", set_score("sleep", 0.5))
        removed = await repo.clear()
        return removed, await repo.load_all()

    removed, document = asyncio.run(run())
    assert removed == 2
    assert document == {}


def test_build_repo_rejects_unknown_backend(cfg):
    cfg.store_backend = "redis"
    with pytest.raises(ValueError):
        repo_profiles.build_repo(cfg)


def test_build_repo_postgres_backend(cfg):
    cfg.store_backend = "postgres"
    assert isinstance(repo_profiles.build_repo(cfg), repo_profiles.PostgresProfileRepo)


class FakeDatabase:
    """In-memory stand-in for the `wellness_store` table."""

    def __init__(self, fail_on=None):
        self.rows = {}
        self.statements = []
        self.fail_on = fail_on


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn
        self._row = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def execute(self, sql, params=()):
        db = self.conn.db
        db.statements.append(sql)
        if db.fail_on and db.fail_on in sql:
            raise psycopg.OperationalError("connection lost")
        rows = {**db.rows, **self.conn.pending}
        if sql.startswith("SELECT"):
            doc = rows.get(params[0])
            self._row = (json.loads(json.dumps(doc)),) if doc is not None else None
        elif "DO NOTHING" in sql:
            if params[0] not in rows:
                self.conn.pending[params[0]] = {}
        elif "DO UPDATE" in sql:
            self.conn.pending[params[0]] = json.loads(json.dumps(params[1].obj))

    async def fetchone(self):
        return self._row


class FakeTransaction:
    def __init__(self, conn):
        self.conn = conn

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.conn.db.rows.update(self.conn.pending)
        self.conn.pending = {}
        return False


class FakeConnection:
    def __init__(self, db):
        self.db = db
        self.pending = {}

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def transaction(self):
        return FakeTransaction(self)

    def cursor(self):
        return FakeCursor(self)


@pytest.fixture
def pg(monkeypatch):
    db = FakeDatabase()

    async def connect(db_url=None):
        return FakeConnection(db)

    monkeypatch.setattr(repo_profiles, "get_async_conn", connect)
    return db, repo_profiles.PostgresProfileRepo("postgresql://test")


def test_postgres_update_cycle_locks_seeded_row(pg):
    db, repo = pg

    async def run():
        assert await repo.load_all() == {}
        await repo.update("emp-1", set_score("sleep", 0.5))
        await repo.update("emp-2", set_score("activity", 0.7))
        return await repo.load_all()

    document = asyncio.run(run())

    assert set(document) == {"emp-1", "emp-2"}
    assert document["emp-2"]["scores"]["activity"]["value"] == 0.7
    locked = [i for i, sql in enumerate(db.statements) if "FOR UPDATE" in sql]
    assert len(locked) == 2
    assert all("DO NOTHING" in db.statements[i - 1] for i in locked)


def test_postgres_failed_mutation_writes_nothing(pg):
    db, repo = pg
    asyncio.run(repo.update("emp-1", set_score("sleep", 0.5)))
    before = json.loads(json.dumps(db.rows))

    def boom(record, now):
        raise ValueError("bad mutation")

    with pytest.raises(ValueError):
        asyncio.run(repo.update("emp-1", boom))

    assert db.rows == before
    assert sum("DO UPDATE" in sql for sql in db.statements) == 1


def test_postgres_write_failure_is_persist_error(pg):
    db, repo = pg
    db.fail_on = "DO UPDATE"

    with pytest.raises(StorePersistError):
        asyncio.run(repo.update("emp-1", set_score("sleep", 0.5)))
    assert asyncio.run(repo.load_all()) == {}


def test_postgres_read_failure_is_read_error(pg):
    db, repo = pg
    db.fail_on = "SELECT"

    with pytest.raises(StoreReadError):
        asyncio.run(repo.load_all())
    with pytest.raises(StoreReadError):
        asyncio.run(repo.update("emp-1", set_score("sleep", 0.5)))
