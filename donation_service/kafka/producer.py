import json
from typing import Optional

import structlog
from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaError

from donation_service.core.config import get_settings
from donation_service.models import Donation

logger = structlog.get_logger(__name__)
settings = get_settings()


def donation_completed_event(donation: Donation) -> dict:
    return {
        "event_type": "donation_completed",
        "donation_id": donation.id,
        "receipt_number": donation.receipt_number,
        "donor_name": None if donation.is_anonymous else donation.donor_name,
        "amount": float(donation.amount),
        "purpose": donation.purpose.value,
        "donation_type": donation.donation_type.value,
        "event_id": donation.event_id,
        "event_item_id": donation.event_item_id,
        "item_quantity": donation.item_quantity,
        "donation_link_slug": donation.donation_link_slug,
        "gateway_order_id": donation.gateway_order_id,
        "gateway_payment_id": donation.gateway_payment_id,
        "timestamp": donation.created_at.isoformat() if donation.created_at else None,
    }


class DonationEventProducer:
    """Kafka producer for donation lifecycle events"""

    def __init__(self, enabled: bool = None, bootstrap_servers: str = None, topic: str = None):
        self.producer: Optional[AIOKafkaProducer] = None
        self.enabled = settings.kafka_enabled if enabled is None else enabled
        self.bootstrap_servers = bootstrap_servers or settings.kafka_bootstrap_servers
        self.topic = topic or settings.kafka_topic_donation_completed

    async def start(self):
        """Initialize and start Kafka producer; a broker outage leaves publishing disabled"""
        if not self.enabled:
            logger.info("Kafka producer disabled")
            return
        try:
            self.producer = AIOKafkaProducer(
                bootstrap_servers=self.bootstrap_servers,
                value_serializer=lambda v: json.dumps(v).encode('utf-8'),
                compression_type='gzip',
                acks='all',
                retry_backoff_ms=500,
                request_timeout_ms=30000,
            )
            await self.producer.start()
            logger.info("Kafka producer started", bootstrap_servers=self.bootstrap_servers)
        except KafkaError as e:
            logger.error("Failed to start Kafka producer", error=str(e))
            self.producer = None

    async def stop(self):
        """Stop Kafka producer gracefully"""
        if self.producer:
            try:
                await self.producer.stop()
                logger.info("Kafka producer stopped")
            except KafkaError as e:
                logger.error("Error stopping Kafka producer", error=str(e))
            finally:
                self.producer = None

    async def publish_donation_completed(self, donation: Donation):
        """
        Publish donation_completed for the notification dispatcher.

        Best effort: the donation is already committed, so a publish failure
        is logged and never surfaced to the payment caller.
        """
        if not self.producer:
            return

        event = donation_completed_event(donation)
        try:
            await self.producer.send_and_wait(
                self.topic,
                value=event,
                key=donation.receipt_number.encode('utf-8')
            )
            logger.info(
                "Published donation_completed event",
                receipt_number=donation.receipt_number,
                topic=self.topic
            )
        except KafkaError as e:
            logger.error(
                "Failed to publish donation_completed event",
                receipt_number=donation.receipt_number,
                error=str(e)
            )


# Global producer instance
donation_event_producer = DonationEventProducer()


async def get_event_producer() -> DonationEventProducer:
    """Get Kafka producer instance"""
    return donation_event_producer
