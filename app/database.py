from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from app.config import load_settings
from app.models import Base

# SQLite by default (PostgreSQL works too, the upsert picks the dialect)
DATABASE_URL = load_settings().database_url


def make_engine(url: str) -> Engine:
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args)


def make_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


def init_db(bind: Engine) -> None:
    Base.metadata.create_all(bind=bind)


engine = make_engine(DATABASE_URL)

SessionLocal = make_session_factory(engine)
