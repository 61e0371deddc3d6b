"""OpenTelemetry logging and tracing for vector database operations"""

import contextlib
import logging
from collections.abc import Iterator
from datetime import datetime, timezone
from typing import Any

from opentelemetry import trace
from opentelemetry._logs import SeverityNumber, set_logger_provider
from opentelemetry.exporter.otlp.proto.http._log_exporter import OTLPLogExporter
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk._logs import LoggerProvider
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from vault_vectors.config import VectorStorageConfig, config

logger = logging.getLogger(__name__)


class TelemetryService:
    """Handle OpenTelemetry logging and tracing for database operations"""

    def __init__(self, storage_config: VectorStorageConfig | None = None):
        self.config = storage_config or config
        self.logging_enabled = self.config.otel_enabled
        self.tracing_enabled = self.config.otel_tracing_enabled
        self.logger_provider = None
        self.tracer_provider = None
        self.otel_logger = None
        self.tracer = None

        if self.logging_enabled:
            try:
                self._initialize_logging()
            except Exception as e:
                logger.warning(f"Failed to initialize OTel logging: {e}. Logging disabled.")
                self.logging_enabled = False

        if self.tracing_enabled:
            try:
                self._initialize_tracing()
            except Exception as e:
                logger.warning(f"Failed to initialize OTel tracing: {e}. Tracing disabled.")
                self.tracing_enabled = False

    def _resource(self) -> Resource:
        return Resource(
            attributes={
                SERVICE_NAME: self.config.otel_service_name,
                SERVICE_VERSION: self.config.otel_service_version,
            }
        )

    def _initialize_logging(self) -> None:
        """Initialize OpenTelemetry logging with OTLP log exporter"""
        self.logger_provider = LoggerProvider(resource=self._resource())

        log_endpoint = self.config.otel_endpoint
        if not log_endpoint.endswith("/v1/logs"):
            log_endpoint = f"{log_endpoint.rstrip('/')}/v1/logs"

        self.logger_provider.add_log_record_processor(
            BatchLogRecordProcessor(OTLPLogExporter(endpoint=log_endpoint))
        )
        set_logger_provider(self.logger_provider)
        self.otel_logger = self.logger_provider.get_logger(__name__)

        logger.info(f"OpenTelemetry logging initialized with endpoint: {log_endpoint}")

    def _initialize_tracing(self) -> None:
        """Initialize OpenTelemetry tracing with OTLP trace exporter"""
        self.tracer_provider = TracerProvider(resource=self._resource())

        trace_endpoint = self.config.otel_endpoint
        if not trace_endpoint.endswith("/v1/traces"):
            trace_endpoint = f"{trace_endpoint.rstrip('/')}/v1/traces"

        self.tracer_provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=trace_endpoint))
        )
        trace.set_tracer_provider(self.tracer_provider)
        self.tracer = trace.get_tracer(__name__)

        logger.info(f"OpenTelemetry tracing initialized with endpoint: {trace_endpoint}")

    @contextlib.contextmanager
    def span(self, operation: str, **attributes: str | int | float | bool) -> Iterator[None]:
        """Wrap a database operation in a span when tracing is enabled"""
        if not self.tracing_enabled or self.tracer is None:
            yield
            return
        with self.tracer.start_as_current_span(f"vector_db.{operation}") as current_span:
            for key, value in attributes.items():
                current_span.set_attribute(f"vector_db.{key}", value)
            yield

    def log_operation(
        self,
        operation: str,
        parameters: dict[str, Any] | None = None,
        elapsed_ms: float | None = None,
        result_count: int | None = None,
        error: Exception | None = None,
    ) -> None:
        """
        Log a database operation to OpenTelemetry

        Args:
            operation: Name of the operation (store, retrieve, compact, ...)
            parameters: Low-cardinality parameters (model name, batch size)
            elapsed_ms: Operation latency
            result_count: Entries stored, returned or affected
            error: The error (if failed)
        """
        if not self.logging_enabled or not self.otel_logger:
            return

        try:
            attributes: dict[str, str | int | float | bool] = {
                "vector_db.operation": operation,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "response.success": error is None,
            }
            for key, value in (parameters or {}).items():
                if isinstance(value, (str, int, float, bool)):
                    attributes[f"operation.param.{key}"] = value
            if elapsed_ms is not None:
                attributes["response.elapsed_ms"] = float(elapsed_ms)
            if result_count is not None:
                attributes["response.result_count"] = int(result_count)

            if error:
                attributes["error.type"] = type(error).__name__
                error_message = str(error)
                if len(error_message) > 500:
                    error_message = error_message[:500] + "..."
                attributes["error.message"] = error_message

            log_body_parts = [f"[{operation}]", "SUCCESS" if error is None else "FAILED"]
            if result_count is not None:
                log_body_parts.append(f"count={result_count}")
            if elapsed_ms is not None:
                log_body_parts.append(f"time={elapsed_ms:.1f}ms")
            if error:
                log_body_parts.append(f"error={type(error).__name__}")

            severity = logging.ERROR if error else logging.INFO
            self.otel_logger.emit(
                body=" ".join(log_body_parts),
                severity_number=SeverityNumber(self._severity_to_number(severity)),
                attributes=attributes,
                timestamp=int(datetime.now(timezone.utc).timestamp() * 1e9),
            )

        except Exception as e:
            # Don't let telemetry errors break the database
            logger.warning(f"Failed to log telemetry: {e}")

    def _severity_to_number(self, level: int) -> int:
        """Convert Python logging level to OpenTelemetry severity number"""
        if level >= logging.CRITICAL:
            return 21  # FATAL
        elif level >= logging.ERROR:
            return 17  # ERROR
        elif level >= logging.WARNING:
            return 13  # WARN
        elif level >= logging.INFO:
            return 9  # INFO
        else:
            return 5  # DEBUG

    def shutdown(self) -> None:
        """Flush and stop the exporters"""
        if self.logger_provider is not None:
            self.logger_provider.shutdown()
        if self.tracer_provider is not None:
            self.tracer_provider.shutdown()

