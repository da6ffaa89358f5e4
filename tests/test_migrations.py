from pathlib import Path

import allure
from sqlalchemy import inspect, text

import cli_relay
from cli_relay.storage.alembic_runner import MIGRATIONS_DIR
from cli_relay.storage.db_store import DatabaseJobStore

pytestmark = [
    allure.epic("Provider Jobs"),
    allure.feature("Job State Storage"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    store = DatabaseJobStore(tmp_path / "state" / "jobs.db")

    with store.engine.connect() as connection:
        version = connection.execute(
            text("SELECT version_num FROM alembic_version LIMIT 1"),
        ).scalar_one()
        journal_mode = connection.execute(text("PRAGMA journal_mode")).scalar_one()

    assert version == "20261018_0001"
    assert str(journal_mode).lower() == "wal"

    inspector = inspect(store.engine)
    columns = {column["name"] for column in inspector.get_columns("jobs")}
    assert {
        "provider",
        "job_id",
        "status",
        "pid",
        "used_fallback",
        "fallback_model",
        "killed_by_user",
    } <= columns
    assert inspector.get_pk_constraint("jobs")["constrained_columns"] == ["provider", "job_id"]
    index_names = {index["name"] for index in inspector.get_indexes("jobs")}
    assert "idx_jobs_provider_status" in index_names
    store.close()


def test_upgrade_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "jobs.db"
    DatabaseJobStore(db_path).close()

    reopened = DatabaseJobStore(db_path)

    with reopened.engine.connect() as connection:
        count = connection.execute(text("SELECT COUNT(*) FROM alembic_version")).scalar_one()
    assert count == 1
    reopened.close()


def test_migrations_ship_inside_the_package(tmp_path: Path, monkeypatch) -> None:
    package_dir = Path(cli_relay.__file__).resolve().parent

    assert MIGRATIONS_DIR.is_relative_to(package_dir)
    assert (MIGRATIONS_DIR / "env.py").is_file()
    assert (MIGRATIONS_DIR / "script.py.mako").is_file()
    assert list((MIGRATIONS_DIR / "versions").glob("*_relay_jobs.py"))

    elsewhere = tmp_path / "elsewhere"
    elsewhere.mkdir()
    monkeypatch.chdir(elsewhere)
    store = DatabaseJobStore(tmp_path / "state" / "jobs.db")
    with store.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
    store.close()

    assert version == "20261018_0001"
