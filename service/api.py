"""
FastAPI Personalization Service.

This module exposes the content personalization engine over HTTP.

Endpoints:
- POST /recommendations: Personalized recommendations for a session
- POST /interactions: Log an interaction (always 200 with an ack)
- GET /insights/{session_id}: What the engine learned about a session
- POST /profile/{session_id}: Merge explicit preferences
- GET /history/{session_id}: Past interactions, most recent first
- GET /anomalies: Flagged interactions, optionally for one session
- POST /feedback: Feedback on a recommended item
- POST /train, GET /train/{job_id}, POST /train/{job_id}/cancel: Training jobs
- GET /metrics: Engine statistics over a time range
- GET /clustering, POST /clustering/retrain: Cluster analysis and retraining
- POST /ab-tests, GET /ab-tests/{name}/results, POST /ab-tests/{name}/stop
- POST /content: Content upsert plus invalidation
- POST /cache/clear: Drop every cache entry
- GET /health: Health check

Usage:
    uvicorn service.api:app --host 0.0.0.0 --port 8000
"""

from typing import Dict, List, Optional, Any
from datetime import datetime
from contextlib import asynccontextmanager
import asyncio
import logging
import time
import os
import numpy as np
from dataclasses import asdict, is_dataclass

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field, ConfigDict
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from recsys.personalization.config import load_config
from recsys.personalization.errors import EngineError
from service.recommender import RecommendationEngine

# ============================================================================
# Logging Setup
# ============================================================================

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("personalization_service")

# ============================================================================
# Security Configuration
# ============================================================================

ENV = os.getenv("ENV", "development")
ALLOWED_ORIGINS = os.getenv(
    "ALLOWED_ORIGINS",
    "http://localhost:3000,http://localhost:8000,http://127.0.0.1:3000"
).split(",")

RATE_LIMIT = os.getenv("RATE_LIMIT", "60/minute")
TRAIN_RATE_LIMIT = os.getenv("TRAIN_RATE_LIMIT", "10/minute")

limiter = Limiter(
    key_func=get_remote_address,
    enabled=os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true",
)

MAX_REQUEST_SIZE = 10 * 1024 * 1024  # 10MB


# ============================================================================
# Global State
# ============================================================================

# Built by the lifespan handler unless a caller installed one beforehand
engine: Optional[RecommendationEngine] = None


def get_engine() -> RecommendationEngine:
    if engine is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return engine


# ============================================================================
# Lifespan Handler
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the engine on startup, release it on shutdown."""
    global engine

    logger.info("Starting Personalization Service...")
    owned = engine is None
    if owned:
        engine = RecommendationEngine(load_config())

    health = engine.health()
    logger.info(
        f"Engine ready: model v{health['model_version']}, "
        f"items={health['num_items']}, status={health['status']}"
    )
    if health['status'] != 'healthy':
        logger.warning(
            "SERVICE RUNNING WITHOUT A TRAINED MODEL - ingest content via POST /content, "
            "then call POST /train"
        )

    yield

    logger.info("Shutting down Personalization Service...")
    if owned and engine is not None:
        engine.close()
        engine = None


# ============================================================================
# FastAPI App
# ============================================================================

app = FastAPI(
    title="Content Personalization Service",
    description="Session-based content recommendations with online profile learning",
    version="1.0.0",
    lifespan=lifespan
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS middleware - only specific origins in production
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS if ENV == "production" else ["*"],
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    """Add security headers to all responses."""
    response = await call_next(request)

    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

    request_id = request.headers.get("X-Request-ID", f"req_{int(time.time() * 1000)}")
    response.headers["X-Request-ID"] = request_id

    return response


@app.middleware("http")
async def limit_request_size(request: Request, call_next):
    """Reject request bodies over MAX_REQUEST_SIZE."""
    if request.headers.get("content-length"):
        try:
            size = int(request.headers["content-length"])
        except (ValueError, TypeError):
            size = 0
        if size > MAX_REQUEST_SIZE:
            logger.warning(f"Request too large: {size} bytes from {get_remote_address(request)}")
            return Response(
                content='{"detail": "Request body too large. Maximum size is 10MB."}',
                status_code=413,
                media_type="application/json"
            )

    return await call_next(request)


# ============================================================================
# Error Handling
# ============================================================================

def sanitize_error_message(error: Exception, endpoint: str = "") -> str:
    """
    Sanitize error messages for production.

    In production, don't expose internal error details.
    In development, show full error for debugging.
    """
    if ENV == "production":
        if "not initialized" in str(error).lower():
            return "Service temporarily unavailable"
        return "An error occurred processing your request"
    return str(error)


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    if exc.http_status >= 500:
        logger.error(f"{request.url.path} failed [{exc.code}]: {exc.message}")
    else:
        logger.info(f"{request.url.path} rejected [{exc.code}]: {exc.message}")
    body = exc.to_response()
    if ENV == "production":
        body.pop('cause', None)
    return JSONResponse(status_code=exc.http_status, content=body)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies share the engine's validation error shape."""
    return JSONResponse(
        status_code=422,
        content={
            'success': False,
            'error': 'Invalid request body',
            'error_code': 'INVALID_PARAMETER',
            'kind': 'validation',
            'severity': 'low',
            'context': {'errors': jsonable_encoder(exc.errors())},
        },
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            'success': False,
            'error': sanitize_error_message(exc, request.url.path),
            'error_code': 'INTERNAL_ERROR',
        },
    )


# ============================================================================
# Request/Response Models
# ============================================================================

class APIBaseModel(BaseModel):
    """Base model with JSON encoders for numpy types."""
    model_config = ConfigDict(
        json_encoders={
            np.integer: int,
            np.floating: float,
            np.ndarray: lambda v: v.tolist(),
            np.bool_: bool,
        }
    )


def _sanitize_numpy_types(value: Any) -> Any:
    """
    Recursively convert numpy/scalar-like values into native Python types.
    """
    if isinstance(value, np.integer):
        return int(value)
    if isinstance(value, np.floating):
        return float(value)
    if isinstance(value, np.bool_):
        return bool(value)
    if isinstance(value, np.ndarray):
        return [_sanitize_numpy_types(v) for v in value.tolist()]
    if isinstance(value, datetime):
        return value.isoformat()
    if is_dataclass(value):
        return _sanitize_numpy_types(asdict(value))
    if isinstance(value, dict):
        return {k: _sanitize_numpy_types(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_sanitize_numpy_types(v) for v in value]
    return value


class RecommendationRequest(APIBaseModel):
    """Recommendation request; unset fields use engine defaults or A/B variant config."""
    session_id: str = Field(..., description="Caller-supplied session id")
    current_item: Optional[int] = Field(default=None, description="Item currently viewed")
    limit: Optional[int] = Field(default=None, description="Number of recommendations")
    algorithm: Optional[str] = Field(
        default=None,
        description="content | collaborative | popularity | hybrid"
    )
    diversity_boost: Optional[float] = Field(default=None, description="0 (relevance) .. 1 (spread)")
    explain: bool = Field(default=False, description="Attach a signal breakdown per item")
    exclude_items: List[int] = Field(default_factory=list)
    user_id: Optional[int] = None


class RecommendedItemModel(APIBaseModel):
    id: int
    score: float
    explanation: Optional[Dict[str, Any]] = None


class RecommendationResponse(APIBaseModel):
    session_id: str
    items: List[RecommendedItemModel]
    count: int
    algorithm: str
    diversity_boost: float
    model_version: int
    latency_ms: float
    diversity_score: float
    num_candidates: int
    experiments: Dict[str, str] = Field(default_factory=dict)


class InteractionRequest(APIBaseModel):
    """Interaction log request. Fields are checked by the engine, which acks every call."""
    session_id: Any = None
    item_id: Any = None
    interaction_type: Any = None
    weight: Any = None
    metadata: Any = None
    user_id: Optional[int] = None


class InteractionResponse(APIBaseModel):
    success: bool
    event_id: Optional[str] = None
    profile_updated: bool = False
    weight: Optional[float] = None
    error: Optional[Dict[str, Any]] = None
    anomaly: Optional[Dict[str, Any]] = None


class ProfileUpdateRequest(APIBaseModel):
    explicit_preferences: Dict[str, float] = Field(
        ...,
        description="Term -> weight in [-1, 1], e.g. {'cat:tech': 1.0}; 0 removes a term"
    )


class FeedbackRequest(APIBaseModel):
    item_id: int
    feedback_type: str = Field(..., description="helpful | not_helpful | not_interested | irrelevant | inappropriate")
    session_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class TrainRequest(APIBaseModel):
    model_config = ConfigDict(populate_by_name=True)

    mode: str = Field(default="full", description="full | incremental")
    batch_size: Optional[int] = None
    k: Optional[int] = Field(default=None, description="Number of clusters (default sqrt(n))")
    run_async: bool = Field(default=True, alias="async")
    clear_cache: bool = False
    notify: bool = Field(default=False, description="Log a notification when the job ends")
    timeout_seconds: Optional[float] = None


class TrainResponse(APIBaseModel):
    job_id: str
    status: str
    job: Dict[str, Any]


class ClusteringRetrainRequest(APIBaseModel):
    model_config = ConfigDict(populate_by_name=True)

    k: Optional[int] = None
    run_async: bool = Field(default=True, alias="async")


class VariantModel(APIBaseModel):
    name: str
    weight: Optional[float] = None
    config: Dict[str, Any] = Field(default_factory=dict)


class ABTestRequest(APIBaseModel):
    name: str
    description: str = ""
    variants: List[VariantModel]


class ContentRequest(APIBaseModel):
    id: int
    title: str = ""
    body: str = ""
    categories: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    author: Optional[str] = None
    published_at: Optional[str] = None
    updated_at: Optional[str] = None


class HealthResponse(APIBaseModel):
    status: str
    model_version: int
    model_id: Optional[str] = None
    last_trained_at: Optional[str] = None
    num_items: int
    num_profiles: int
    training_in_progress: List[str] = Field(default_factory=list)
    uptime_seconds: float
    timestamp: str


# ============================================================================
# Endpoints: Serving
# ============================================================================

@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Service health: 'healthy' once a trained model is published, else 'degraded'."""
    payload = _sanitize_numpy_types(get_engine().health())
    payload['timestamp'] = datetime.now().isoformat()
    return HealthResponse(**payload)


@app.post("/recommendations", response_model=RecommendationResponse)
@limiter.limit(RATE_LIMIT)
async def recommendations(request: Request, body: RecommendationRequest):
    """
    Personalized recommendations for one session.

    Example:
        POST /recommendations
        {"session_id": "guest_4f1c", "limit": 10, "algorithm": "hybrid", "diversity_boost": 0.3}
    """
    result = get_engine().recommend(
        body.session_id,
        current_item=body.current_item,
        limit=body.limit,
        algorithm=body.algorithm,
        diversity_boost=body.diversity_boost,
        explain_results=body.explain,
        exclude_items=body.exclude_items,
        user_id=body.user_id,
    )
    logger.info(
        f"session_id={result.session_id}, algorithm={result.algorithm}, "
        f"count={result.count}, latency={result.latency_ms:.1f}ms"
    )
    return RecommendationResponse(**_sanitize_numpy_types(result.to_dict()))


@app.post("/interactions", response_model=InteractionResponse)
@limiter.limit(RATE_LIMIT)
async def interactions(request: Request, body: InteractionRequest):
    """Log an interaction. Always answers 200; failures are reported in the ack."""
    ack = get_engine().log_interaction(
        body.session_id,
        body.item_id,
        body.interaction_type,
        weight=body.weight,
        metadata=body.metadata,
        user_id=body.user_id,
    )
    return InteractionResponse(**_sanitize_numpy_types(ack.to_dict()))


@app.get("/insights/{session_id}")
@limiter.limit(RATE_LIMIT)
async def insights(request: Request, session_id: str):
    return _sanitize_numpy_types(get_engine().get_insights(session_id))


@app.post("/profile/{session_id}")
@limiter.limit(RATE_LIMIT)
async def update_profile(request: Request, session_id: str, body: ProfileUpdateRequest):
    return get_engine().update_profile(session_id, body.explicit_preferences)


@app.get("/history/{session_id}")
@limiter.limit(RATE_LIMIT)
async def history(request: Request, session_id: str, limit: int = Query(default=20)):
    items = get_engine().get_history(session_id, limit)
    return {'session_id': session_id, 'count': len(items), 'history': _sanitize_numpy_types(items)}


@app.get("/anomalies")
@limiter.limit(RATE_LIMIT)
async def anomalies(request: Request, session_id: Optional[str] = Query(default=None), limit: int = Query(default=100)):
    return _sanitize_numpy_types(get_engine().get_anomalies(session_id, limit))


@app.post("/feedback")
@limiter.limit(RATE_LIMIT)
async def feedback(request: Request, body: FeedbackRequest):
    return get_engine().submit_feedback(
        body.item_id, body.feedback_type, body.metadata, session_id=body.session_id
    )


# ============================================================================
# Endpoints: Operator
# ============================================================================

def _log_job_finished(job) -> None:
    logger.info(f"Training job {job.job_id} finished: status={job.status.value}, model_v={job.model_version}")


@app.post("/train", response_model=TrainResponse)
@limiter.limit(TRAIN_RATE_LIMIT)
async def train(request: Request, body: TrainRequest):
    """
    Start a training job.

    Example:
        POST /train
        {"mode": "incremental", "batch_size": 200, "async": true}
    """
    eng = get_engine()
    job_id = eng.train(
        mode=body.mode,
        batch_size=body.batch_size,
        run_async=True,
        clear_cache=body.clear_cache,
        notify=_log_job_finished if body.notify else None,
        k=body.k,
        timeout_seconds=body.timeout_seconds,
    )
    if not body.run_async:
        await asyncio.wrap_future(eng.job_future(job_id))
    job = _sanitize_numpy_types(eng.get_job(job_id))
    logger.info(f"Training job {job_id} submitted: mode={body.mode}, async={body.run_async}")
    return TrainResponse(job_id=job_id, status=job['status'], job=job)


@app.get("/train/{job_id}")
async def training_job(job_id: str):
    return _sanitize_numpy_types(get_engine().get_job(job_id))


@app.post("/train/{job_id}/cancel")
async def cancel_training_job(job_id: str):
    eng = get_engine()
    cancelled = eng.cancel_job(job_id)
    return {'job_id': job_id, 'cancelled': cancelled, 'status': eng.get_job(job_id)['status']}


@app.get("/metrics")
async def metrics(time_range: str = Query(default="24h", description="1h | 24h | 7d | 30d")):
    return _sanitize_numpy_types(get_engine().get_metrics(time_range))


@app.get("/clustering")
async def clustering():
    return _sanitize_numpy_types(get_engine().get_clustering_analysis())


@app.post("/clustering/retrain", response_model=TrainResponse)
@limiter.limit(TRAIN_RATE_LIMIT)
async def retrain_clustering(request: Request, body: Optional[ClusteringRetrainRequest] = None):
    body = body or ClusteringRetrainRequest()
    eng = get_engine()
    job_id = eng.retrain_clustering(k=body.k, run_async=True)
    if not body.run_async:
        await asyncio.wrap_future(eng.job_future(job_id))
    job = _sanitize_numpy_types(eng.get_job(job_id))
    return TrainResponse(job_id=job_id, status=job['status'], job=job)


@app.post("/ab-tests")
async def create_ab_test(body: ABTestRequest):
    definition = body.model_dump(exclude_none=True)
    test_id = get_engine().create_ab_test(definition)
    return {'success': True, 'test_id': test_id, 'name': body.name}


@app.get("/ab-tests/{name}/results")
async def ab_test_results(name: str):
    return _sanitize_numpy_types(get_engine().get_ab_test_results(name))


@app.post("/ab-tests/{name}/stop")
async def stop_ab_test(name: str):
    return {'name': name, 'stopped': get_engine().stop_ab_test(name)}


@app.post("/content")
@limiter.limit(RATE_LIMIT)
async def content(request: Request, body: ContentRequest):
    """Upsert a content item; it is vectorized immediately and cached lists are invalidated."""
    return get_engine().ingest_content(body.model_dump(exclude_none=True))


@app.post("/cache/clear")
async def clear_cache():
    cleared = get_engine().clear_caches()
    logger.info(f"Cache cleared: {cleared} entries")
    return {'success': True, 'cleared': cleared}


# ============================================================================
# Run Server
# ============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "service.api:app",
        host="0.0.0.0",
        port=8000,
        reload=False,
        log_level="info"
    )
