# consensus_engine/db/deps.py
from typing import Generator

from sqlalchemy.orm import Session

from consensus_engine.db.session import SessionLocal


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
