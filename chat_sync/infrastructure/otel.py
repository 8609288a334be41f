import logging
import queue
from logging.handlers import QueueHandler, QueueListener

from opentelemetry import metrics, trace
from opentelemetry._logs import set_logger_provider
from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.instrumentation.pymongo import PymongoInstrumentor
from opentelemetry.instrumentation.redis import RedisInstrumentor
from opentelemetry.instrumentation.system_metrics import SystemMetricsInstrumentor
from opentelemetry.propagate import set_global_textmap
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

logger = logging.getLogger(__name__)


class OTELManager:
    """Centralized OpenTelemetry setup for tracing, logging, and metrics."""

    def __init__(
        self,
        service_name: str = "chat-sync",
        otlp_grpc_endpoint: str = "otel-collector:4317",
        metric_export_interval_ms: int = 10_000,
    ):
        self.service_name = service_name
        self.otlp_grpc_endpoint = otlp_grpc_endpoint
        self.metric_export_interval_ms = metric_export_interval_ms

        self.resource = Resource(attributes={"service.name": self.service_name})

        self._init_trace()
        self._init_logging()
        self._init_metrics()
        self._init_instrumentations()

        logger.info("OTEL initialized")

    def _init_trace(self) -> None:
        tracer_provider = TracerProvider(resource=self.resource)
        tracer_provider.add_span_processor(
            BatchSpanProcessor(
                OTLPSpanExporter(endpoint=self.otlp_grpc_endpoint, insecure=True)
            )
        )
        trace.set_tracer_provider(tracer_provider)
        set_global_textmap(TraceContextTextMapPropagator())
        self.tracer = trace.get_tracer(self.service_name)

    def _init_logging(self) -> None:
        """root 로거 -> 큐 -> (OTLP, 콘솔)"""
        self.logger_provider = LoggerProvider(resource=self.resource)
        set_logger_provider(self.logger_provider)
        self.logger_provider.add_log_record_processor(
            BatchLogRecordProcessor(
                OTLPLogExporter(endpoint=self.otlp_grpc_endpoint, insecure=True)
            )
        )

        otlp_handler = LoggingHandler(
            logger_provider=self.logger_provider, level=logging.INFO
        )

        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.INFO)
        console_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
        )

        # 요청 경로에서 export I/O를 하지 않도록 큐를 거침
        self.log_queue = queue.Queue(maxsize=10_000)
        self.queue_listener = QueueListener(
            self.log_queue, otlp_handler, console_handler, respect_handler_level=True
        )
        self.queue_listener.start()

        root_logger = logging.getLogger()
        root_logger.handlers.clear()
        root_logger.setLevel(logging.INFO)
        root_logger.addHandler(QueueHandler(self.log_queue))

        self.logging_instrumentor = LoggingInstrumentor()
        self.logging_instrumentor.instrument(
            set_logging_format=False, log_level=logging.INFO
        )

    def _init_metrics(self) -> None:
        metric_reader = PeriodicExportingMetricReader(
            OTLPMetricExporter(endpoint=self.otlp_grpc_endpoint, insecure=True),
            export_interval_millis=self.metric_export_interval_ms,
        )
        meter_provider = MeterProvider(
            resource=self.resource, metric_readers=[metric_reader]
        )
        metrics.set_meter_provider(meter_provider)

        self.meter = metrics.get_meter(self.service_name)

        self.messages_appended_counter = self.meter.create_counter(
            "chat.messages.appended",
            unit="1",
            description="Messages durably appended to room histories",
        )
        self.send_latency_histogram = self.meter.create_histogram(
            "chat.send.latency",
            unit="ms",
            description="Append + publish latency of ChatService.send",
        )
        self.active_subscriptions_counter = self.meter.create_up_down_counter(
            "chat.subscriptions.active",
            unit="1",
            description="Live room subscriptions",
        )
        self.lagged_subscriptions_counter = self.meter.create_counter(
            "chat.subscriptions.lagged",
            unit="1",
            description="Subscriptions evicted for falling behind",
        )

    def _init_instrumentations(self) -> None:
        """Attach system, Redis, and MongoDB instrumentors."""
        self.system_instrumentor = SystemMetricsInstrumentor()
        self.redis_instrumentor = RedisInstrumentor()
        self.mongodb_instrumentor = PymongoInstrumentor()

        self.system_instrumentor.instrument()
        self.redis_instrumentor.instrument()
        self.mongodb_instrumentor.instrument()

    async def stop(self) -> None:
        """Gracefully shut down all OTEL components."""
        self.system_instrumentor.uninstrument()
        self.redis_instrumentor.uninstrument()
        self.mongodb_instrumentor.uninstrument()

        self.logger_provider.force_flush(timeout_millis=30_000)
        trace.get_tracer_provider().force_flush(timeout_millis=30_000)
        metrics.get_meter_provider().force_flush(timeout_millis=30_000)

        self.logger_provider.shutdown()
        trace.get_tracer_provider().shutdown()
        metrics.get_meter_provider().shutdown()

        if self.queue_listener:
            self.queue_listener.stop()

        logger.info("OTEL stopped")
