import os
from pathlib import Path

from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, sessionmaker

from aura_coach.db.models import Base

DB_PATH = os.getenv("DB_PATH", "/var/data/aura_coach.db")

connect_args = {"check_same_thread": False, "timeout": 15}


def _build_engine(db_path: str):
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
    # Column upgrades for databases created before plan tiers existed.
    with engine.begin() as conn:
        user_columns = {row[1] for row in conn.execute(text("PRAGMA table_info(users)")).fetchall()}
        if "plan_tier" not in user_columns:
            conn.execute(text("ALTER TABLE users ADD COLUMN plan_tier VARCHAR(16) NOT NULL DEFAULT 'free'"))

        log_columns = {row[1] for row in conn.execute(text("PRAGMA table_info(conversation_logs)")).fetchall()}
        if "tool_name" not in log_columns:
            conn.execute(text("ALTER TABLE conversation_logs ADD COLUMN tool_name VARCHAR(64)"))


def get_db():
    db: Session = SessionLocal()
    try:
        yield db
    finally:
        db.close()
