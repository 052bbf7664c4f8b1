"""
Usage-based billing reporter (Stripe Billing meter events).
"""

import asyncio
import time

import stripe
import structlog

from services.errors import BillingReportError

logger = structlog.get_logger("billing")


class StripeUsageReporter:
    """Reports overage units to a Stripe meter. The SDK is blocking, so calls run in a thread."""

    def __init__(self, api_key: str):
        self.api_key = api_key

    def _create_event(self, customer_id: str, meter_event_name: str, quantity: int):
        return stripe.billing.MeterEvent.create(
            event_name=meter_event_name,
            payload={
                "value": str(quantity),
                "stripe_customer_id": customer_id,
            },
            timestamp=int(time.time()),
            api_key=self.api_key,
        )

    async def report_usage(self, customer_id: str, meter_event_name: str, quantity: int = 1) -> None:
        try:
            await asyncio.to_thread(self._create_event, customer_id, meter_event_name, quantity)
        except stripe.StripeError as e:
            raise BillingReportError(f"Meter event rejected: {e}") from e

        logger.info("Usage reported", customer=customer_id, meter=meter_event_name, quantity=quantity)
