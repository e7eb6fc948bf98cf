from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from syncengine.database import Base, engine
from syncengine.logging_config import setup_logging
from syncengine.app.routes import connections, ingestion_jobs


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    # Schema migrations are managed outside the service; this only creates missing tables
    Base.metadata.create_all(bind=engine)
    yield


app = FastAPI(
    title="Sync Engine API",
    description="Provider synchronization for bank connections, accounts and transactions",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(connections.router, prefix="/api")
app.include_router(ingestion_jobs.router, prefix="/api")


@app.get("/api/health")
def health_check():
    return {"status": "healthy"}
