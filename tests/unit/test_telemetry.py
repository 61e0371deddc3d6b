"""Unit tests for telemetry service"""

from unittest.mock import MagicMock, patch

from vault_vectors.services.telemetry import TelemetryService


def _enable(mock_config, logging_enabled: bool, tracing_enabled: bool) -> None:
    mock_config.otel_enabled = logging_enabled
    mock_config.otel_tracing_enabled = tracing_enabled
    mock_config.otel_endpoint = "http://localhost:4318"
    mock_config.otel_service_name = "test-service"
    mock_config.otel_service_version = "1.0.0"


class TestTelemetryService:
    """Test telemetry service initialization and operation logging"""

    @patch("vault_vectors.services.telemetry.config")
    def test_telemetry_service_disabled(self, mock_config):
        """Test that telemetry can be disabled"""
        _enable(mock_config, False, False)

        service = TelemetryService()

        assert service.logging_enabled is False
        assert service.tracing_enabled is False
        assert service.otel_logger is None
        assert service.tracer is None

    @patch("vault_vectors.services.telemetry.config")
    @patch("vault_vectors.services.telemetry.set_logger_provider")
    def test_telemetry_service_enabled(self, mock_set_logger_provider, mock_config):
        """Test that OTel logging initializes when enabled"""
        _enable(mock_config, True, False)

        service = TelemetryService()

        assert service.logging_enabled is True
        assert service.tracing_enabled is False
        assert service.logger_provider is not None
        mock_set_logger_provider.assert_called_once_with(service.logger_provider)

    @patch("vault_vectors.services.telemetry.config")
    @patch("vault_vectors.services.telemetry.trace.set_tracer_provider")
    def test_telemetry_tracing_enabled(self, mock_set_tracer_provider, mock_config):
        """Test that tracing initializes when enabled"""
        _enable(mock_config, False, True)

        service = TelemetryService()

        assert service.logging_enabled is False
        assert service.tracing_enabled is True
        assert service.tracer_provider is not None
        assert service.tracer is not None

    @patch("vault_vectors.services.telemetry.config")
    @patch("vault_vectors.services.telemetry.set_logger_provider")
    def test_initialization_failure_disables_logging(self, mock_set_logger_provider, mock_config):
        """Test that a failing exporter setup disables logging instead of raising"""
        _enable(mock_config, True, False)
        mock_set_logger_provider.side_effect = RuntimeError("no provider")

        service = TelemetryService()

        assert service.logging_enabled is False

    @patch("vault_vectors.services.telemetry.config")
    def test_log_operation_when_disabled(self, mock_config):
        """Test that logging does nothing when disabled"""
        _enable(mock_config, False, False)

        service = TelemetryService()
        # Should not raise any errors
        service.log_operation("store", parameters={"model": "m1"}, elapsed_ms=1.5)

    @patch("vault_vectors.services.telemetry.config")
    @patch("vault_vectors.services.telemetry.set_logger_provider")
    def test_log_operation_success(self, mock_set_logger_provider, mock_config):
        """Test logging a successful operation"""
        _enable(mock_config, True, False)
        mock_otel_logger = MagicMock()

        service = TelemetryService()
        service.otel_logger = mock_otel_logger

        service.log_operation(
            "store_batch",
            parameters={"batch_size": 10, "model": "m1", "ignored": ["not", "scalar"]},
            elapsed_ms=12.25,
            result_count=10,
        )

        assert mock_otel_logger.emit.called
        call_kwargs = mock_otel_logger.emit.call_args.kwargs
        assert "[store_batch]" in call_kwargs["body"]
        assert "SUCCESS" in call_kwargs["body"]
        assert "count=10" in call_kwargs["body"]

        attrs = call_kwargs["attributes"]
        assert attrs["vector_db.operation"] == "store_batch"
        assert attrs["operation.param.batch_size"] == 10
        assert attrs["operation.param.model"] == "m1"
        assert "operation.param.ignored" not in attrs
        assert attrs["response.success"] is True
        assert attrs["response.result_count"] == 10
        assert attrs["response.elapsed_ms"] == 12.25

    @patch("vault_vectors.services.telemetry.config")
    @patch("vault_vectors.services.telemetry.set_logger_provider")
    def test_log_operation_with_error(self, mock_set_logger_provider, mock_config):
        """Test logging a failed operation truncates long error messages"""
        _enable(mock_config, True, False)
        mock_otel_logger = MagicMock()

        service = TelemetryService()
        service.otel_logger = mock_otel_logger

        service.log_operation("compact", error=ValueError("x" * 600))

        call_kwargs = mock_otel_logger.emit.call_args.kwargs
        assert "FAILED" in call_kwargs["body"]
        assert "ValueError" in call_kwargs["body"]
        attrs = call_kwargs["attributes"]
        assert attrs["response.success"] is False
        assert attrs["error.type"] == "ValueError"
        assert attrs["error.message"].endswith("...")
        assert len(attrs["error.message"]) == 503

    @patch("vault_vectors.services.telemetry.config")
    @patch("vault_vectors.services.telemetry.set_logger_provider")
    def test_log_operation_emit_failure_is_not_raised(self, mock_set_logger_provider, mock_config):
        """Test that telemetry errors never break the calling operation"""
        _enable(mock_config, True, False)
        mock_otel_logger = MagicMock()
        mock_otel_logger.emit.side_effect = RuntimeError("exporter down")

        service = TelemetryService()
        service.otel_logger = mock_otel_logger

        service.log_operation("retrieve", elapsed_ms=0.5)

    @patch("vault_vectors.services.telemetry.config")
    def test_span_is_noop_when_tracing_disabled(self, mock_config):
        """Test that span() yields without a tracer"""
        _enable(mock_config, False, False)
        service = TelemetryService()

        with service.span("store", model="m1"):
            pass

    @patch("vault_vectors.services.telemetry.config")
    def test_span_sets_attributes(self, mock_config):
        """Test that span() prefixes operation attributes"""
        _enable(mock_config, False, False)
        service = TelemetryService()
        service.tracing_enabled = True
        service.tracer = MagicMock()
        current_span = service.tracer.start_as_current_span.return_value.__enter__.return_value

        with service.span("store", model="m1"):
            pass

        service.tracer.start_as_current_span.assert_called_once_with("vector_db.store")
        current_span.set_attribute.assert_called_once_with("vector_db.model", "m1")

    def test_severity_mapping(self):
        """Test Python logging levels map to OTel severity numbers"""
        service = TelemetryService.__new__(TelemetryService)

        assert service._severity_to_number(50) == 21
        assert service._severity_to_number(40) == 17
        assert service._severity_to_number(30) == 13
        assert service._severity_to_number(20) == 9
        assert service._severity_to_number(10) == 5
