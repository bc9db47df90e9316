import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from mailrelay.core.config import settings
from mailrelay.models.outbox import OutboxRecord, OutboxStatus
from mailrelay.repositories.employee import EmployeeRepository
from mailrelay.repositories.outbox import OutboxRepository
from mailrelay.schemas.notification import Destination, WelcomeNotification

logger = logging.getLogger(__name__)


class EntityNotFoundError(LookupError):
    pass


class OutboxRecordNotFoundError(LookupError):
    pass


class InvalidOutboxStateError(ValueError):
    pass


class PayloadBuildError(ValueError):
    """The entity exists but cannot be turned into a valid notification."""


class EntitySource(Protocol):
    async def fetch(self, entity_ref: str) -> Optional[WelcomeNotification]: ...


class BrokerClient(Protocol):
    def send(self, destination: Destination, payload: bytes, correlation_id: str) -> None: ...


class EmployeeSource:
    """Builds the welcome payload from the current state of an employee row."""

    def __init__(self, repository: EmployeeRepository) -> None:
        self.repository = repository

    async def fetch(self, entity_ref: str) -> Optional[WelcomeNotification]:
        try:
            employee_id = int(entity_ref)
        except ValueError:
            return None

        employee = await self.repository.get_by_id(employee_id)
        if not employee:
            return None

        try:
            return WelcomeNotification(
                employee_id=employee.id,
                recipient=employee.email,
                name=employee.name,
                position_name=employee.position_name,
                job_level_name=employee.job_level_name,
                department_name=employee.department_name
            )
        except ValidationError as e:
            raise PayloadBuildError(f"Employee {employee.id} cannot be notified: {e.error_count()} invalid field(s)") from e


def employee_source(session: AsyncSession) -> EmployeeSource:
    return EmployeeSource(EmployeeRepository(session))


def welcome_destination() -> Destination:
    return Destination(exchange=settings.mail_exchange, routing_key=settings.mail_routing_key)


class NotificationPublisher:
    def __init__(
        self,
        outbox_repository: OutboxRepository,
        entity_source: EntitySource,
        broker_client: BrokerClient,
        ack_timeout_seconds: int = settings.ack_timeout_seconds
    ) -> None:
        self.outbox_repository = outbox_repository
        self.entity_source = entity_source
        self.broker_client = broker_client
        self.ack_timeout_seconds = ack_timeout_seconds

    async def publish(self, entity_ref: str, destination: Destination) -> str:
        """Record a PENDING outbox entry, then hand the message to the broker.

        The outbox row is committed together with whatever the caller already
        flushed on the same session, so the entity and its notification are
        stored atomically. Raises ``EntityNotFoundError`` when the entity
        cannot be fetched and ``PayloadBuildError`` when it cannot be turned
        into a payload; this call commits nothing in either case. A broker failure
        after the durable write is left to the retry scheduler.
        """
        payload = await self.entity_source.fetch(entity_ref)
        if payload is None:
            raise EntityNotFoundError(f"Entity {entity_ref} not found")

        now = datetime.now(timezone.utc)
        record = OutboxRecord(
            message_id=str(uuid.uuid4()),
            entity_ref=entity_ref,
            exchange=destination.exchange,
            routing_key=destination.routing_key,
            status=OutboxStatus.PENDING.value,
            attempt_count=1,
            next_retry_at=now + timedelta(seconds=self.ack_timeout_seconds),
            created_at=now,
            updated_at=now
        )
        try:
            await self.outbox_repository.create(record)
            await self.outbox_repository.commit()
        except Exception:
            await self.outbox_repository.rollback()
            raise
        logger.info(f"Outbox record {record.message_id} created for {entity_ref}")

        self.dispatch(record.message_id, payload, destination)
        return record.message_id

    def dispatch(self, message_id: str, payload: WelcomeNotification, destination: Destination) -> bool:
        try:
            self.broker_client.send(destination, payload.model_dump_json().encode(), message_id)
        except Exception as e:
            logger.warning(
                f"Broker send failed for message {message_id}, left PENDING for retry: "
                f"{type(e).__name__}: {str(e)}"
            )
            return False
        return True

    async def republish(self, message_id: str) -> str:
        """Start a fresh attempt chain for a FAILED record under a new message id."""
        record = await self.outbox_repository.get_by_message_id(message_id)
        if not record:
            raise OutboxRecordNotFoundError(f"Outbox record {message_id} not found")
        if record.status != OutboxStatus.FAILED.value:
            raise InvalidOutboxStateError(
                f"Outbox record {message_id} is {record.status}, only FAILED records can be republished"
            )

        new_message_id = await self.publish(
            record.entity_ref,
            Destination(exchange=record.exchange, routing_key=record.routing_key)
        )
        logger.info(f"Outbox record {message_id} republished as {new_message_id}")
        return new_message_id
