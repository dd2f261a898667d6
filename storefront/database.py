import os
from contextlib import contextmanager
from pathlib import Path
from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.orm.exc import StaleDataError

from storefront.errors import ConcurrentModification

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH)

DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL is not set. Check your .env file.")


def make_engine(url: str):
    return create_engine(
        url,
        connect_args={"check_same_thread": False} if url.startswith("sqlite") else {}
    )


def make_session_factory(bind):
    # Objects stay readable after the unit of work that loaded them closes.
    return sessionmaker(bind=bind, autocommit=False, autoflush=False, expire_on_commit=False)


@contextmanager
def unit_of_work(session_factory):
    """One transaction: commit when the block succeeds, roll back on any error.

    A version-column conflict (another transaction updated the same row first)
    surfaces as ConcurrentModification.
    """
    try:
        with session_factory.begin() as db:
            yield db
    except StaleDataError as exc:
        raise ConcurrentModification(str(exc)) from exc


engine = make_engine(DATABASE_URL)

SessionLocal = make_session_factory(engine)
Base = declarative_base()
