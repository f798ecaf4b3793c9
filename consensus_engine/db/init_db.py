# consensus_engine/db/init_db.py
from consensus_engine.db.base import Base
from consensus_engine.db.session import engine


def init_db():
    Base.metadata.create_all(bind=engine)
