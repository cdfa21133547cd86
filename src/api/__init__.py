"""CutIntake API layer: routes, schemas, and middleware."""

from src.api.middleware import (
    ErrorHandlingMiddleware,
    RequestLoggingMiddleware,
    configure_cors,
)
from src.api.routes import router
from src.api.schemas import (
    CancelResponse,
    ErrorResponse,
    HealthResponse,
    MetricsResponse,
    ParseAcceptedResponse,
    ParseResponse,
    ParseTextRequest,
    SessionProgressResponse,
)

__all__ = [
    "ErrorHandlingMiddleware",
    "RequestLoggingMiddleware",
    "configure_cors",
    "router",
    "CancelResponse",
    "ErrorResponse",
    "HealthResponse",
    "MetricsResponse",
    "ParseAcceptedResponse",
    "ParseResponse",
    "ParseTextRequest",
    "SessionProgressResponse",
]
