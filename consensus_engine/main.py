# consensus_engine/main.py
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from consensus_engine.core.config import settings
from consensus_engine.core.logging_config import configure_logging
from consensus_engine.db.init_db import init_db
from consensus_engine.api.v1.endpoints import admin, consensus, health, votes

app = FastAPI(title=settings.PROJECT_NAME)

origins = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup():
    configure_logging()
    init_db()


app.include_router(health.router, prefix="/api/v1/health", tags=["health"])
app.include_router(consensus.router, prefix="/api/v1/consensus", tags=["consensus"])
app.include_router(votes.router, prefix="/api/v1/votes", tags=["votes"])
app.include_router(admin.router, prefix="/api/v1/admin", tags=["admin"])
