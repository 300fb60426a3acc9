import importlib.util
from pathlib import Path

from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import create_engine, inspect

from docsrag.db import Base
import docsrag.models  # noqa: F401

VERSIONS_DIR = Path(__file__).resolve().parents[1] / "alembic" / "versions"


def _load_migration(name: str):
    spec = importlib.util.spec_from_file_location(name, VERSIONS_DIR / f"{name}.py")
    assert spec is not None and spec.loader is not None
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_initial_migration_matches_models(tmp_path: Path) -> None:
    migration = _load_migration("20261018_0001_create_rag_tables")
    engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'migrations.db'}")

    with engine.begin() as connection:
        with Operations.context(MigrationContext.configure(connection)):
            migration.upgrade()

    inspector = inspect(engine)
    assert set(inspector.get_table_names()) == set(Base.metadata.tables)
    for table_name, table in Base.metadata.tables.items():
        columns = {column["name"] for column in inspector.get_columns(table_name)}
        assert columns == set(table.columns.keys())

    with engine.begin() as connection:
        with Operations.context(MigrationContext.configure(connection)):
            migration.downgrade()

    assert inspect(engine).get_table_names() == []
    engine.dispose()
