from asyncio import iscoroutinefunction
from contextlib import contextmanager
from enum import Enum
from functools import wraps
from os import environ

from azure.monitor.opentelemetry import configure_azure_monitor
from opentelemetry import metrics, trace
from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor
from opentelemetry.metrics._internal.instrument import Counter, Gauge
from opentelemetry.semconv.attributes import service_attributes
from opentelemetry.trace import Status, StatusCode
from opentelemetry.trace.span import INVALID_SPAN
from opentelemetry.util.types import Attributes, AttributeValue
from structlog.contextvars import bind_contextvars, get_contextvars

MODULE_NAME = "com.github.event-reminder"
VERSION = environ.get("VERSION", "0.0.0-unknown")


class SpanAttributeEnum(str, Enum):
    """
    OpenTelemetry attributes.

    These attributes are used to track an event notification in the logs and metrics.
    """

    DELIVERY_STATUS = "delivery.status"
    """Outcome of a push delivery (delivered, transient_failure, permanent_failure)."""
    EVENT_ID = "event.id"
    """Technical event identifier."""
    PUSH_ENDPOINT = "push.endpoint"
    """Push service endpoint of a subscription."""
    USER_ID = "user.id"
    """Technical identifier of the event owner."""

    def attribute(
        self,
        value: AttributeValue,
    ) -> None:
        """
        Set an attribute on the current span.
        """
        # Enrich logging
        bind_contextvars(**{self.value: value})

        # Enrich span
        span = trace.get_current_span()
        if span == INVALID_SPAN:
            return
        span.set_attribute(self.value, value)


class SpanMeterEnum(str, Enum):
    EVENT_NOTIFIED = "event.notified"
    """Events marked as notified."""
    PUSH_DELIVERY = "push.delivery"
    """Push deliveries attempted, by status."""
    SUBSCRIPTION_REMOVED = "subscription.removed"
    """Subscriptions removed after a permanent failure."""
    SWEEP_EVENTS = "sweep.events"
    """Due events found by the last sweep."""
    SWEEP_LATENCY = "sweep.latency"
    """Duration of the last sweep in seconds."""

    def counter(
        self,
        unit: str,
    ) -> Counter:
        """
        Create a counter metric to track a span counter.
        """
        return meter.create_counter(
            description=self.__doc__ or "",
            name=self.value,
            unit=unit,
        )

    def gauge(
        self,
        unit: str,
    ) -> Gauge:
        """
        Create a gauge metric to track a span counter.
        """
        return meter.create_gauge(
            description=self.__doc__ or "",
            name=self.value,
            unit=unit,
        )


try:
    # Configure Azure Application Insights exporter
    configure_azure_monitor()
    # Instrument aiohttp
    AioHttpClientInstrumentor().instrument()
except ValueError as e:
    print(  # noqa: T201
        "Azure Application Insights instrumentation failed, likely due to a missing APPLICATIONINSIGHTS_CONNECTION_STRING environment variable.",
        e,
    )

# Attributes
_default_attributes = {
    service_attributes.SERVICE_NAME: MODULE_NAME,
    service_attributes.SERVICE_VERSION: VERSION,
}

# Create a tracer and meter that will be used across the application
tracer = trace.get_tracer(
    attributes=_default_attributes,
    instrumenting_module_name=MODULE_NAME,
)
meter = metrics.get_meter(
    name=MODULE_NAME,
)

# Init metrics
event_notified = SpanMeterEnum.EVENT_NOTIFIED.counter("events")
push_delivery = SpanMeterEnum.PUSH_DELIVERY.counter("deliveries")
subscription_removed = SpanMeterEnum.SUBSCRIPTION_REMOVED.counter("subscriptions")
sweep_events = SpanMeterEnum.SWEEP_EVENTS.gauge("events")
sweep_latency = SpanMeterEnum.SWEEP_LATENCY.gauge("s")


def gauge_set(
    metric: Gauge,
    value: float | int,
):
    """
    Set a gauge metric value with context attributes.
    """
    metric.set(
        amount=value,
        attributes={
            # First, set default attributes
            **_default_attributes,
            # Then, set context attributes, they can override default attributes
            **get_contextvars(),
        },
    )


def counter_add(
    metric: Counter,
    value: float | int,
    attributes: Attributes = None,
):
    """
    Add a counter metric value with context attributes.

    Extra attributes are applied last, they describe the measure itself (e.g. the delivery status).
    """
    metric.add(
        amount=value,
        attributes={
            # First, set default attributes
            **_default_attributes,
            # Then, set context attributes, they can override default attributes
            **get_contextvars(),
            **(attributes or {}),
        },
    )


def start_as_current_span(
    name: str,
    attributes: Attributes = None,
):
    """
    Decorator to start an OTEL span for the function and set it as the current.
    """

    def _wrapper(func):
        @wraps(func)
        def _inner(*args, **kwargs):
            # Start a span
            with tracer.start_as_current_span(
                attributes=attributes,
                name=name,
            ):
                # Call the function
                return func(*args, **kwargs)

        @wraps(func)
        async def _async_inner(*args, **kwargs):
            # Start a span
            with tracer.start_as_current_span(
                attributes=attributes,
                name=name,
            ):
                # Call the function
                return await func(*args, **kwargs)

        return _async_inner if iscoroutinefunction(func) else _inner

    return _wrapper


@contextmanager
def suppress(*exceptions):
    """
    Context manager to suppress exceptions, while also logging them properly in OTEL.

    OTEL span will always be set to OK status, even if an exception occurs. But exception will still be recorded.
    """
    try:
        # Try executing the block
        yield
    # If an exception occurs, set the span status to OK and record the exception
    except exceptions as e:
        span = trace.get_current_span()
        span.set_status(Status(StatusCode.OK))
        span.record_exception(e)
