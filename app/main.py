import logging
import uuid
from time import monotonic

from fastapi import FastAPI, Request
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.responses import Response

from app.api.orders import router as orders_router
from app.api.payments import router as payments_router
from app.api.step_up import limiter as step_up_limiter
from app.api.step_up import router as step_up_router
from app.api.subscriptions import router as subscriptions_router
from app.errors import register_error_handlers
from app.logging import configure_logging
from app.metrics import REQUEST_COUNT, REQUEST_LATENCY

app = FastAPI(title="fanclub_payments API")
logger = logging.getLogger(__name__)
app.state.limiter = step_up_limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

configure_logging()
register_error_handlers(app)


@app.middleware("http")
async def observability_middleware(request: Request, call_next):
    request.state.request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
    start = monotonic()
    status = "500"
    try:
        response = await call_next(request)
        status = str(response.status_code)
    finally:
        route = request.scope.get("route")
        path = getattr(route, "path", request.url.path)
        duration = monotonic() - start
        REQUEST_COUNT.labels(method=request.method, path=path, status=status).inc()
        REQUEST_LATENCY.labels(method=request.method, path=path, status=status).observe(duration)
    response.headers["X-Request-ID"] = request.state.request_id
    return response


app.include_router(payments_router, prefix="/api/v1")
app.include_router(orders_router, prefix="/api/v1")
app.include_router(subscriptions_router, prefix="/api/v1")
app.include_router(step_up_router, prefix="/api/v1")


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.get("/metrics")
def metrics():
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
