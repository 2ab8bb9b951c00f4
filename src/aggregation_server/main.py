"""
FastAPI adapter exposing the round coordinator over HTTP
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry
import uvicorn

from .blob_store import create_blob_store, deserialize_weights
from .coordinator import RoundCoordinator
from .errors import (
    AggregationError, BlobNotFoundError, InsufficientSubmissionsError, ShapeMismatchError, StoreUnavailableError
)
from .models import (
    AggregationResponse,
    HealthResponse,
    HistoryResponse,
    StatusResponse,
    SubmissionRequest,
    SubmitResponse
)
from .storage import create_model_store
from .verification import AllowAllVerificationGateway, SignatureVerificationGateway
from ..common.config import AppConfig, config_manager, get_config
from ..monitoring.metrics import FederatedLearningMetrics

logger = logging.getLogger(__name__)


def build_coordinator(config: AppConfig, metrics: Optional[FederatedLearningMetrics] = None) -> RoundCoordinator:
    """Wire a coordinator from the application config"""
    if config.verification.gateway == "allow_all":
        gateway = AllowAllVerificationGateway()
    else:
        gateway = SignatureVerificationGateway()

    return RoundCoordinator(
        config=config.to_aggregation_config(),
        verification_gateway=gateway,
        store=create_model_store(config.storage),
        blob_store=create_blob_store(config.storage),
        metrics=metrics,
        verification_timeout=config.verification.timeout_seconds,
        save_retries=config.storage.save_retries,
        retry_backoff=config.storage.retry_backoff_seconds,
    )


def _apply_log_level(new_config: AppConfig):
    """Reload callback; only the log level is applied to a running server"""
    level = getattr(logging, new_config.monitoring.log_level.upper(), logging.INFO)
    logging.getLogger().setLevel(level)
    logger.info(f"Log level set to {new_config.monitoring.log_level.upper()} after config reload")


def _get_coordinator(request: Request) -> RoundCoordinator:
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Server not initialized"
        )
    return coordinator


def _summary(result) -> AggregationResponse:
    return AggregationResponse(**result.to_dict(include_weights=False))


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    """Create the FastAPI application; ``config`` defaults to the loaded app config"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager"""
        app_config = config or get_config()
        logging.basicConfig(level=getattr(logging, app_config.monitoring.log_level.upper(), logging.INFO))
        metrics = FederatedLearningMetrics(CollectorRegistry()) if app_config.monitoring.enable_metrics else None

        # Startup
        coordinator = build_coordinator(app_config, metrics)
        await coordinator.initialize()
        app.state.coordinator = coordinator
        app.state.metrics = metrics
        app.state.start_time = datetime.now(timezone.utc)

        if app_config.hot_reload:
            config_manager.add_reload_callback(_apply_log_level)
            config_manager.enable_hot_reloading()
        logger.info("Aggregation server initialized")

        yield

        # Shutdown
        if app_config.hot_reload:
            config_manager.disable_hot_reloading()
            config_manager.remove_reload_callback(_apply_log_level)
        await coordinator.shutdown()
        app.state.coordinator = None
        logger.info("Aggregation server shutdown complete")

    app = FastAPI(
        title="Federated Learning Aggregation Server",
        description="Round coordination and model aggregation for federated learning",
        version="1.0.0",
        lifespan=lifespan
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request):
        """Health check endpoint"""
        coordinator = _get_coordinator(request)
        coordinator_status = await coordinator.get_status()
        now = datetime.now(timezone.utc)

        return HealthResponse(
            status="healthy",
            timestamp=now,
            version="1.0.0",
            uptime=(now - request.app.state.start_time).total_seconds(),
            current_round=coordinator_status['current_round'],
            pool_size=coordinator_status['pool_size'],
            last_aggregation=coordinator_status['last_aggregation']
        )

    @app.post("/api/fl/submit", response_model=SubmitResponse)
    async def submit_model(request: Request, submission_request: SubmissionRequest):
        """Submit trained model weights"""
        coordinator = _get_coordinator(request)

        weights = None
        if submission_request.model_weights is None and submission_request.weights_cid:
            if coordinator.blob_store is None:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="Blob storage is not configured, send weights inline"
                )
            try:
                weights = deserialize_weights(await coordinator.blob_store.get(submission_request.weights_cid))
            except BlobNotFoundError as e:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
            except (ValueError, KeyError, TypeError) as e:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail=f"Unreadable weights blob: {e}"
                )

        outcome = await coordinator.submit(submission_request.to_submission(weights))
        response = SubmitResponse(**outcome.to_dict())

        if not outcome.accepted:
            return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=response.model_dump())

        return response

    @app.get("/api/fl/status", response_model=StatusResponse)
    async def get_status(request: Request):
        """Get current round status"""
        coordinator = _get_coordinator(request)
        return StatusResponse(**await coordinator.get_status())

    @app.get("/api/fl/global-model")
    async def get_global_model(request: Request):
        """Download the latest global model"""
        coordinator = _get_coordinator(request)
        global_model = await coordinator.get_global_model()

        if global_model is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="No global model available yet"
            )

        logger.info(f"Global model v{global_model.version} downloaded")
        return global_model.to_dict()

    @app.get("/api/fl/history", response_model=HistoryResponse)
    async def get_history(request: Request, limit: Optional[int] = Query(None, ge=1)):
        """Get aggregation history"""
        coordinator = _get_coordinator(request)
        history = await coordinator.get_history(limit)
        return HistoryResponse(history=[_summary(result) for result in history])

    @app.post("/api/fl/aggregate", response_model=AggregationResponse)
    async def trigger_aggregation(request: Request):
        """Manually trigger aggregation of the current pool"""
        coordinator = _get_coordinator(request)

        try:
            result = await coordinator.aggregate()
        except InsufficientSubmissionsError as e:
            raise HTTPException(status_code=422, detail=str(e))
        except ShapeMismatchError as e:
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
        except StoreUnavailableError as e:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
        except AggregationError as e:
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

        if result is None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Already aggregating")

        return _summary(result)

    @app.post("/api/fl/persist/retry", response_model=AggregationResponse)
    async def retry_persist(request: Request):
        """Retry saving an aggregated but unpersisted model"""
        coordinator = _get_coordinator(request)

        try:
            result = await coordinator.retry_persist()
        except StoreUnavailableError as e:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

        if result is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Nothing waiting to be persisted")

        return _summary(result)

    @app.post("/api/fl/reset")
    async def reset(request: Request):
        """Reset aggregation state (demo purposes)"""
        coordinator = _get_coordinator(request)

        try:
            reset_done = await coordinator.reset()
        except StoreUnavailableError as e:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

        if not reset_done:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Aggregation in progress")

        return {"success": True, "message": "Aggregation state reset"}

    @app.get("/metrics")
    async def metrics(request: Request):
        """Prometheus metrics"""
        collector = getattr(request.app.state, "metrics", None)
        if collector is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Metrics disabled")
        return Response(content=collector.get_metrics(), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()


if __name__ == "__main__":
    config = get_config()
    uvicorn.run(
        "src.aggregation_server.main:app",
        host=config.network.host,
        port=config.network.port,
        reload=config.debug,
        log_level=config.monitoring.log_level.lower()
    )
