from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from marketplace.core.config import settings


def get_tracer(name: str) -> trace.Tracer:
    # No-op tracer until a provider is installed.
    return trace.get_tracer(name)


def _install_provider(component: str) -> bool:
    if not settings.telemetry_enabled:
        return False
    resource = Resource.create({
        "service.name": settings.service_name,
        "service.namespace": "marketplace",
        "service.instance.role": component,
        "deployment.environment": settings.env,
    })
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=f"{settings.otlp_endpoint}/v1/traces")))
    trace.set_tracer_provider(provider)
    return True


def setup_telemetry(app) -> None:
    """API process: request spans plus queries on the shared engine."""
    if not _install_provider("api"):
        return
    from marketplace.core.db import engine

    FastAPIInstrumentor.instrument_app(app)
    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def setup_worker_telemetry() -> None:
    """Celery worker process: tasks build their own engines, so instrument globally."""
    if not _install_provider("worker"):
        return
    SQLAlchemyInstrumentor().instrument()
