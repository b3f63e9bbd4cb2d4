"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded

from membella.core.config import settings
from membella.core.database import engine
from membella.core.exceptions import register_exception_handlers
from membella.core.logging import setup_logging
from membella.core.metrics import get_content_type, get_metrics, set_app_info
from membella.core.middleware import (
    CorrelationIdMiddleware,
    MetricsMiddleware,
    RequestLoggingMiddleware,
)
from membella.core.rate_limit import limiter, rate_limit_exceeded_handler
from membella.modules.payment.router import router as payment_router
from membella.modules.subscription.router import router as subscription_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await engine.dispose()


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description="""
## Membella Payments API

Subscription checkout for Membella organisations: members buy their owner's
plans by card or PromptPay, and successful payments activate subscriptions.

### Authentication

All member endpoints require a JWT Bearer token.

```
Authorization: Bearer <access_token>
```

The gateway webhook (`POST /payments/webhook`) is authenticated by the
gateway's signature headers instead.
    """,
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    openapi_tags=[
        {"name": "health", "description": "Health check endpoints"},
        {"name": "payments", "description": "Checkout, payment status, polling, history and gateway webhooks"},
        {"name": "subscriptions", "description": "Member subscriptions"},
    ],
    lifespan=lifespan,
)

setup_logging(
    level="DEBUG" if settings.DEBUG else settings.LOG_LEVEL,
    json_format=settings.LOG_JSON,
    include_stack_trace=True,
)

set_app_info(version=settings.VERSION, environment=settings.ENVIRONMENT)

register_exception_handlers(app)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(MetricsMiddleware)


@app.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    """Prometheus scrape endpoint."""
    return Response(content=get_metrics(), media_type=get_content_type())


app.include_router(payment_router, prefix=settings.API_V1_PREFIX)
app.include_router(subscription_router, prefix=settings.API_V1_PREFIX)
