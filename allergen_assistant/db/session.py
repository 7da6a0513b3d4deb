import os
import threading
from datetime import datetime
from pathlib import Path

from sqlalchemy import create_engine, event, select
from sqlalchemy.orm import Session, sessionmaker

from allergen_assistant.core.validation import ALLERGEN_LABELS
from allergen_assistant.db.models import Base, OitAllergen

# Override with DB_PATH when needed.
DB_PATH = os.getenv("DB_PATH", "./data/allergen_assistant.db")

connect_args = {"check_same_thread": False}

_schema_lock = threading.Lock()
_schema_ready = False


def _enable_foreign_keys(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _build_engine(db_path: str):
    # Ensure parent directory exists when a nested path is configured.
    db_parent = Path(db_path).expanduser().resolve().parent
    db_parent.mkdir(parents=True, exist_ok=True)
    database_url = f"sqlite:///{db_path}"
    built = create_engine(database_url, connect_args=connect_args)
    event.listen(built, "connect", _enable_foreign_keys)
    return built


engine = _build_engine(DB_PATH)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def reset_schema_state() -> None:
    global _schema_ready
    with _schema_lock:
        _schema_ready = False


def configure_database(db_path: str) -> None:
    global DB_PATH, engine
    DB_PATH = db_path
    engine.dispose()
    engine = _build_engine(DB_PATH)
    SessionLocal.configure(bind=engine)
    reset_schema_state()


def _seed_allergens(db: Session) -> None:
    existing = {row.code: row for row in db.execute(select(OitAllergen)).scalars()}
    now = datetime.utcnow()
    for code, label in ALLERGEN_LABELS.items():
        row = existing.get(code)
        if row is None:
            db.add(OitAllergen(code=code, label=label))
        elif row.label != label:
            row.label = label
            row.updated_at = now
    db.commit()


def create_tables() -> None:
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        _seed_allergens(db)
    finally:
        db.close()


def ensure_schema() -> None:
    """Create and seed the schema once per process; later calls are no-ops."""
    global _schema_ready
    if _schema_ready:
        return
    with _schema_lock:
        if _schema_ready:
            return
        create_tables()
        _schema_ready = True


def get_db():
    ensure_schema()
    db: Session = SessionLocal()
    try:
        yield db
    finally:
        db.close()
