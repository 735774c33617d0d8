from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from study_designer.config import settings

_engine_options = {"pool_pre_ping": True}
if settings.DATABASE_URL.startswith("sqlite"):
    _engine_options["connect_args"] = {"check_same_thread": False}
else:
    _engine_options["pool_size"] = 5

engine = create_engine(settings.DATABASE_URL, **_engine_options)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


class Base(DeclarativeBase):
    pass


def get_db():
    """FastAPI dependency that yields a database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
