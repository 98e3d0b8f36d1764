"""Datenbank-Anbindung.

SQLite ist Standard (data/app.db), PostgreSQL über DATABASE_URL:
  - nicht gesetzt: SQLite unter backend/data/
  - sqlite:///pfad.db: SQLite an anderem Ort (Tests)
  - postgresql://...: PostgreSQL mit Connection-Pool

Das Security-Log hängt Einträge mit fortlaufender Sequenznummer an. Unter
SQLite warten konkurrierende Schreiber deshalb per busy_timeout aufeinander,
statt sofort mit "database is locked" abzubrechen. Die Pragmas werden pro
Verbindung gesetzt, weil sie nicht in der Datei gespeichert werden.

Schema: Alembic-Baseline unter alembic/versions; `init_db()` legt fehlende
Tabellen an und ergänzt Spalten, die nach der ersten Version dazukamen.
"""

import os
from pathlib import Path

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.orm import DeclarativeBase, sessionmaker

_DATABASE_URL = os.getenv("DATABASE_URL", "").strip()

if _DATABASE_URL:
    DB_URL = _DATABASE_URL
else:
    DATA_DIR = Path(__file__).resolve().parents[1] / "data"
    DATA_DIR.mkdir(exist_ok=True)
    DB_URL = f"sqlite:///{(DATA_DIR / 'app.db').as_posix()}"

_IS_SQLITE = DB_URL.startswith("sqlite")

if _IS_SQLITE:
    engine = create_engine(DB_URL, connect_args={"check_same_thread": False})

    @event.listens_for(engine, "connect")
    def _sqlite_pragmas(dbapi_conn, _record) -> None:
        cur = dbapi_conn.cursor()
        cur.execute("PRAGMA journal_mode=WAL")
        cur.execute("PRAGMA synchronous=NORMAL")
        cur.execute("PRAGMA busy_timeout=5000")
        cur.close()
else:
    engine = create_engine(
        DB_URL,
        pool_pre_ping=True,
        pool_size=int(os.getenv("DB_POOL_SIZE", "5")),
        max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
    )

SessionLocal = sessionmaker(bind=engine, autoflush=False)


class Base(DeclarativeBase):
    pass


# Spalten, die nach der Baseline dazukamen: (Tabelle, Spalte, Typ)
_LATE_COLUMNS = (
    ("user", "email", "TEXT"),
    ("user", "password_hash", "TEXT"),
    ("user", "locked_until", "TEXT"),
    ("user", "failed_login_count", "INTEGER"),
    ("user", "last_login_at", "TEXT"),
    ("security_alert", "dispatched_channels", "TEXT"),
    ("security_alert", "dispatch_error", "TEXT"),
    ("security_alert", "suppression_reason", "TEXT"),
)


def init_db() -> None:
    import app.models  # noqa: F401  Tabellen registrieren

    Base.metadata.create_all(bind=engine)
    _add_late_columns()


def _add_late_columns() -> None:
    insp = inspect(engine)
    tables = set(insp.get_table_names())
    existing = {t: {c["name"] for c in insp.get_columns(t)} for t in tables}
    with engine.begin() as conn:
        for table, column, col_type in _LATE_COLUMNS:
            if table in tables and column not in existing[table]:
                conn.execute(text(f'ALTER TABLE "{table}" ADD COLUMN {column} {col_type}'))
