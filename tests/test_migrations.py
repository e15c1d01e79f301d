from pathlib import Path

import allure
from sqlalchemy import inspect, text

from backlog_planner.storage.repository import WorkspaceRepository
from backlog_planner.storage.sqlmodel_models import (
    REQUIRED_ORDERING_TABLES,
    REQUIRED_TELEMETRY_TABLES,
)

pytestmark = [
    allure.epic("Workspace Storage"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = WorkspaceRepository(tmp_path / "migrations.db")
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
    tables = set(inspect(repository.engine).get_table_names())
    repository.close()

    assert version == "20261017_0002"
    assert set(REQUIRED_ORDERING_TABLES) <= tables
    assert set(REQUIRED_TELEMETRY_TABLES) <= tables
    assert "task_comments" in tables


def test_init_schema_is_repeatable(tmp_path: Path) -> None:
    db_path = tmp_path / "nested" / "workspace.db"
    repository = WorkspaceRepository(db_path)
    repository.init_schema()
    repository.init_schema()

    assert repository.missing_tables(REQUIRED_ORDERING_TABLES) == []
    repository.close()
