import os
from pathlib import Path
from typing import Any, Iterable

from sqlalchemy import create_engine
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session, sessionmaker

from fitcoach.db.models import Base

# Override with DB_PATH when needed.
DB_PATH = os.getenv("DB_PATH", "/var/data/fitcoach.db")

connect_args = {"check_same_thread": False}


def _build_engine(db_path: str):
    # Ensure parent directory exists when a nested path is configured.
    db_parent = Path(db_path).expanduser().resolve().parent
    db_parent.mkdir(parents=True, exist_ok=True)
    database_url = f"sqlite:///{db_path}"
    return create_engine(database_url, connect_args=connect_args)


engine = _build_engine(DB_PATH)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def configure_database(db_path: str) -> None:
    global DB_PATH, engine
    DB_PATH = db_path
    engine = _build_engine(DB_PATH)
    SessionLocal.configure(bind=engine)


def create_tables() -> None:
    Base.metadata.create_all(bind=engine)


def get_db():
    db: Session = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def upsert_row(
    db: Session,
    model,
    values: dict[str, Any],
    conflict_columns: Iterable[str],
    update_columns: Iterable[str],
) -> None:
    """Single-statement INSERT .. ON CONFLICT DO UPDATE; last write wins."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(model).values(**values)
    elif dialect == "sqlite":
        stmt = sqlite.insert(model).values(**values)
    else:
        raise NotImplementedError(f"upsert not supported for dialect {dialect}")
    update_columns = list(update_columns)
    if not update_columns:
        stmt = stmt.on_conflict_do_nothing(index_elements=list(conflict_columns))
    else:
        stmt = stmt.on_conflict_do_update(
            index_elements=list(conflict_columns),
            set_={name: stmt.excluded[name] for name in update_columns},
        )
    db.execute(stmt)
