# consensus_engine/db/session.py
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from consensus_engine.core.config import settings

# SQLite needs this to be shared across worker threads
engine = create_engine(
    settings.DATABASE_URL,
    connect_args={"check_same_thread": False} if "sqlite" in settings.DATABASE_URL else {},
    pool_pre_ping=True,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
