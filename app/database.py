# In app/database.py
import os

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.models import Base

load_dotenv()

DEFAULT_DATABASE_URL = "sqlite:///./hs_reports.db"
EXTERNAL_CALL_TIMEOUT_SEC = float(os.getenv("EXTERNAL_CALL_TIMEOUT_SEC", "30"))


def _normalize_database_url(url: str) -> str:
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


DATABASE_URL = _normalize_database_url(os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL))
IS_SQLITE = DATABASE_URL.startswith("sqlite")

if IS_SQLITE:
    connect_args = {"check_same_thread": False, "timeout": EXTERNAL_CALL_TIMEOUT_SEC}
else:
    # statement_timeout is in milliseconds
    connect_args = {
        "connect_timeout": int(EXTERNAL_CALL_TIMEOUT_SEC),
        "options": f"-c statement_timeout={int(EXTERNAL_CALL_TIMEOUT_SEC * 1000)}",
    }

engine = create_engine(DATABASE_URL, pool_pre_ping=True, connect_args=connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def create_db_and_tables():
    Base.metadata.create_all(bind=engine)
