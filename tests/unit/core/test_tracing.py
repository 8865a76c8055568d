from unittest.mock import MagicMock, patch

from oobscan.core.tracing import get_current_trace_id, setup_tracing


class TestTracing:
    def test_setup_tracing_without_exporter(self):
        with patch("oobscan.core.tracing.get_settings") as mock_settings:
            mock_settings.return_value.OTEL_EXPORTER_OTLP_ENDPOINT = None
            with patch("oobscan.core.tracing.trace.set_tracer_provider"), \
                 patch("oobscan.core.tracing.TracerProvider") as mock_provider, \
                 patch("oobscan.core.tracing.BatchSpanProcessor") as mock_processor:
                setup_tracing()
                assert mock_provider.called
                assert not mock_processor.called

    def test_setup_tracing_console(self):
        with patch("oobscan.core.tracing.get_settings") as mock_settings:
            mock_settings.return_value.OTEL_EXPORTER_OTLP_ENDPOINT = None
            with patch("oobscan.core.tracing.trace.set_tracer_provider"), \
                 patch("oobscan.core.tracing.TracerProvider"), \
                 patch("oobscan.core.tracing.BatchSpanProcessor") as mock_processor, \
                 patch("oobscan.core.tracing.ConsoleSpanExporter") as mock_exporter:
                setup_tracing(console_fallback=True)
                assert mock_processor.called
                assert mock_exporter.called

    def test_setup_tracing_otlp(self):
        with patch("oobscan.core.tracing.get_settings") as mock_settings:
            mock_settings.return_value.OTEL_EXPORTER_OTLP_ENDPOINT = "http://jaeger:4317"
            mock_settings.return_value.OTEL_EXPORTER_OTLP_INSECURE = True
            with patch("oobscan.core.tracing.trace.set_tracer_provider"), \
                 patch("oobscan.core.tracing.OTLPSpanExporter") as mock_exporter, \
                 patch("oobscan.core.tracing.TracerProvider") as mock_provider, \
                 patch("oobscan.core.tracing.BatchSpanProcessor"):
                setup_tracing()
                mock_exporter.assert_called_once_with(endpoint="http://jaeger:4317", insecure=True)
                assert mock_provider.return_value.add_span_processor.called

    def test_get_current_trace_id_valid(self):
        mock_span = MagicMock()
        mock_span.get_span_context.return_value.is_valid = True
        mock_span.get_span_context.return_value.trace_id = 0x1234567890abcdef1234567890abcdef

        with patch("opentelemetry.trace.get_current_span", return_value=mock_span):
            assert get_current_trace_id() == "1234567890abcdef1234567890abcdef"

    def test_get_current_trace_id_invalid(self):
        mock_span = MagicMock()
        mock_span.get_span_context.return_value.is_valid = False
        with patch("opentelemetry.trace.get_current_span", return_value=mock_span):
            assert get_current_trace_id() is None
