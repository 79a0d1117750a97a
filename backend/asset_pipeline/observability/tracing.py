"""
Observability Tracing — job and vector-store spans
══════════════════════════════════════════════════

Every job is traced end-to-end:
  job.extract    → csv / pdf extraction
  job.vectorize  → chunking → vectorstore.add_document_chunks → embeddings
  job.add / job.update / job.remove
  vectorstore.search_assets / search_document_chunks / hybrid_search

Decorator `@traced(name)`:
  Times the wrapped coroutine and logs one line per call. Python logging is
  the baseline and is always active. When OTEL export is configured the same
  call is also recorded as an OpenTelemetry span.

Span attributes are read off the call's arguments:
  a Job    → job.id, job.type, asset.id, job.attempt
  an Asset → asset.id, asset.type, user.id

Optional backend:
  OTEL_ENABLED=true
  OTEL_EXPORTER_OTLP_ENDPOINT=http://otel-collector:4318
  Requires the `otel` extra (opentelemetry-sdk, opentelemetry-exporter-otlp).
"""

from __future__ import annotations

import functools
import logging
import time
from typing import Any, Callable, Coroutine, Optional, TypeVar

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Coroutine[Any, Any, Any]])

TRACER_NAME = "asset_pipeline"

# Set by TracingConfig once an OTLP exporter is installed
_tracer: Optional[Any] = None


# ---------------------------------------------------------------------------
# TracingConfig — initialise at worker startup
# ---------------------------------------------------------------------------

class TracingConfig:
    """
    Install the OTLP span exporter when enabled in settings.

    Call once at worker startup::

        from asset_pipeline.observability.tracing import TracingConfig
        TracingConfig.init()
    """

    _initialised: bool = False

    @classmethod
    def init(cls) -> None:
        if cls._initialised:
            return
        cls._initialised = True
        cls._init_otel()

    @classmethod
    def reset(cls) -> None:
        """Forget the exporter so init() runs again (tests, reconfiguration)."""
        global _tracer
        cls._initialised = False
        _tracer = None

    @staticmethod
    def _init_otel() -> None:
        global _tracer
        from asset_pipeline.core.config import settings

        endpoint = settings.otel_exporter_otlp_endpoint
        if not settings.otel_enabled or not endpoint:
            logger.debug("OTEL tracing disabled")
            return

        try:
            from opentelemetry import trace                                       # type: ignore
            from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter  # type: ignore
            from opentelemetry.sdk.resources import Resource                      # type: ignore
            from opentelemetry.sdk.trace import TracerProvider                    # type: ignore
            from opentelemetry.sdk.trace.export import BatchSpanProcessor        # type: ignore
        except ImportError:
            logger.warning(
                "opentelemetry-sdk / opentelemetry-exporter-otlp not installed. "
                "Run: pip install asset-vector-pipeline[otel]"
            )
            return

        provider = TracerProvider(resource=Resource.create({
            "service.name":           "asset-pipeline-worker",
            "deployment.environment": settings.app_env,
        }))
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
        trace.set_tracer_provider(provider)
        _tracer = trace.get_tracer(TRACER_NAME)
        logger.info("OTEL tracing enabled | endpoint=%s", endpoint)


# ---------------------------------------------------------------------------
# Span attributes
# ---------------------------------------------------------------------------

def span_attributes(args: tuple, kwargs: dict) -> dict[str, Any]:
    """Pick job / asset identifiers out of a traced call's arguments."""
    attrs: dict[str, Any] = {}
    for value in (*args, *kwargs.values()):
        if hasattr(value, "asset_id") and hasattr(value, "attempts"):
            attrs["job.id"]      = value.id
            attrs["job.type"]    = getattr(value.type, "value", str(value.type))
            attrs["asset.id"]    = value.asset_id
            attrs["job.attempt"] = value.attempts + 1
        elif hasattr(value, "asset_metadata") and hasattr(value, "user_id"):
            attrs.setdefault("asset.id", value.id)
            attrs["asset.type"] = value.type
            attrs["user.id"]    = value.user_id
    return {k: v for k, v in attrs.items() if v is not None}


# ---------------------------------------------------------------------------
# @traced decorator
# ---------------------------------------------------------------------------

def traced(name: str | None = None) -> Callable[[F], F]:
    """
    Decorator that instruments an async function with timing and error logging.

    Usage::

        @traced("job.extract")
        async def _handle_extract(self, job: Job) -> None:
            ...

        @traced()   # uses function name as span name
        async def embed(text: str) -> list[float]:
            ...
    """
    def decorator(func: F) -> F:
        span_name = name or func.__qualname__

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            attrs = span_attributes(args, kwargs)
            asset = attrs.get("asset.id", "-")
            t0 = time.perf_counter()
            try:
                if _tracer is None:
                    result = await func(*args, **kwargs)
                else:
                    # The span records the exception and error status itself
                    with _tracer.start_as_current_span(span_name, attributes=attrs):
                        result = await func(*args, **kwargs)
            except Exception as exc:
                elapsed_ms = (time.perf_counter() - t0) * 1000
                logger.error(
                    "trace | span=%s asset=%s elapsed_ms=%.1f error=%s",
                    span_name, asset, elapsed_ms, exc,
                )
                raise

            elapsed_ms = (time.perf_counter() - t0) * 1000
            logger.debug("trace | span=%s asset=%s elapsed_ms=%.1f ok", span_name, asset, elapsed_ms)
            return result

        return wrapper  # type: ignore[return-value]
    return decorator
