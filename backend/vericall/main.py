import logging
import os
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from .db import engine, Base
from .errors import StorageError
from . import models  # noqa: F401  registers tables on Base
from .logging_config import configure_logging
from .routes import decisions as r_decisions, witness as r_witness, verify as r_verify
from .services.chain import RegistryClient
from .services.decisions import DecisionStore
from .services.pipeline import AttestationPipeline, MODE_CELERY, PIPELINE_MODE
from .services.storage import archive_enabled, archive_witness
from .services.vlayer import VlayerClient
from .services.witness_store import InMemoryWitnessStore, SqlWitnessStore, WitnessStore

logger = logging.getLogger(__name__)

_ORIGINS = [o.strip() for o in os.getenv("ALLOWED_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",") if o.strip()]


@asynccontextmanager
async def _lifespan(app: FastAPI):
    try:
        purged = app.state.decisions.purge_expired()
        if purged:
            logger.info("purged %d expired decision record(s)", purged)
    except StorageError as e:
        logger.warning("could not purge expired decisions: %s", e)
    yield
    pending = app.state.pipeline.in_flight
    if pending:
        logger.warning("shutting down: waiting on %d witness pipeline(s)", pending)
        await app.state.pipeline.wait_idle()


def create_app(
    *,
    decisions: DecisionStore | None = None,
    witnesses: WitnessStore | None = None,
    pipeline: AttestationPipeline | None = None,
    registry: RegistryClient | None = None,
) -> FastAPI:
    """Build the stores and the pipeline once and hang them on app.state."""
    configure_logging()
    # Auto-create tables (use Alembic later)
    Base.metadata.create_all(bind=engine)

    registry = registry or RegistryClient()
    decisions = decisions or DecisionStore()
    if pipeline is None:
        if PIPELINE_MODE == MODE_CELERY:
            from .workers import celery_app  # noqa: F401  binds shared tasks to the broker
            witnesses = witnesses or SqlWitnessStore()
        else:
            witnesses = witnesses or InMemoryWitnessStore()
        pipeline = AttestationPipeline(
            witnesses,
            proofs=VlayerClient(),
            registry=registry,
            archiver=archive_witness if archive_enabled() else None,
        )

    app = FastAPI(title="VeriCall API", version="0.1.0", lifespan=_lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.decisions = decisions
    app.state.witnesses = pipeline.store
    app.state.pipeline = pipeline
    app.state.registry = registry

    app.include_router(r_decisions.router)
    app.include_router(r_witness.router)
    app.include_router(r_verify.router)

    @app.get("/")
    @app.get("/api/health")
    def health():
        return {"ok": True}

    logger.info("VeriCall API ready (pipeline mode: %s)", pipeline.mode)
    return app


app = create_app()
