from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

from sella import config  # settings

Base = declarative_base()


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        options = {"connect_args": {"check_same_thread": False}}
        # in-memory database: one shared connection, otherwise every
        # connection would see its own empty database
        if url in ("sqlite://", "sqlite:///:memory:"):
            options["poolclass"] = StaticPool
        return options
    return {"pool_pre_ping": True, "pool_size": 10, "max_overflow": 20}


engine = create_engine(config.DATABASE_URL, **_engine_options(config.DATABASE_URL))

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


# FastAPI dependency
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
