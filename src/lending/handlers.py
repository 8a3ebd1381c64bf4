from __future__ import annotations

from typing import Any

from aws_lambda_powertools import Logger, Tracer
from aws_lambda_powertools.metrics import Metrics, MetricUnit
from aws_lambda_powertools.utilities.typing import LambdaContext
from mangum import Mangum

from lending.api import app, service
from lending.sweeper import send_due_reminders, sweep_expired

logger = Logger()
tracer = Tracer()
metrics = Metrics(namespace="EquipmentLending")

http_handler = Mangum(app)


def lambda_handler(event: dict[str, Any], context: LambdaContext) -> Any:
    """HTTP API entry point."""
    # Bare HTTP API v2.0 events from local invokes lack the context Mangum reads
    if isinstance(event, dict) and event.get("version") == "2.0":
        request_context = event.setdefault("requestContext", {})
        http_ctx = request_context.setdefault("http", {})
        http_ctx.setdefault("sourceIp", "127.0.0.1")
        request_context.setdefault("stage", "$default")

    return http_handler(event, context)


@tracer.capture_lambda_handler
@metrics.log_metrics
def maintenance_handler(event: dict[str, Any], context: LambdaContext) -> dict[str, int]:
    """Scheduled run: expire overdue reservations and send pickup reminders."""
    expired = sweep_expired(service)
    reminders = send_due_reminders(service)
    metrics.add_metric(name="ReservationsExpired", value=expired, unit=MetricUnit.Count)
    metrics.add_metric(name="RemindersSent", value=reminders, unit=MetricUnit.Count)
    logger.info("Maintenance run finished", extra={"expired": expired, "reminders": reminders})
    return {"expired": expired, "reminders": reminders}
