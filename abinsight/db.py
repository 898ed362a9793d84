# abinsight/db.py
import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from dotenv import load_dotenv

# Load .env file (DATABASE_URL, etc.)
load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./abinsight.db")


def make_engine(url: str = DATABASE_URL, **kwargs):
    """
    Engine for the test/visitor/conversion store. SQLite needs
    check_same_thread off because FastAPI serves sync routes from a threadpool.
    """
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args, **kwargs)


def make_session_factory(bind):
    return sessionmaker(autocommit=False, autoflush=False, bind=bind)


engine = make_engine()
SessionLocal = make_session_factory(engine)

# Base class for models
Base = declarative_base()


# Dependency that gives a DB session to routes; the engine only reads from it
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
