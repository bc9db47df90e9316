import logging
from typing import Optional, Protocol
from aio_pika import connect_robust, ExchangeType
from aio_pika.abc import AbstractIncomingMessage, AbstractRobustConnection
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mailrelay.core.config import settings
from mailrelay.core.database import async_session_maker
from mailrelay.models.outbox import MESSAGE_ID_LENGTH
from mailrelay.repositories.dedup import DedupRepository
from mailrelay.schemas.notification import WelcomeNotification
from mailrelay.services.mailer import (
    NotificationSender,
    PermanentNotificationError,
    SmtpNotificationSender,
    TransientNotificationError,
)

logger = logging.getLogger(__name__)


class AckHandle(Protocol):
    async def ack(self) -> None: ...

    async def nack(self, requeue: bool = True) -> None: ...


class NotificationConsumer:
    """Idempotent handler for one delivered notification message.

    A dedup entry for the message id means the side effect already ran, so
    the delivery is acknowledged without sending. Otherwise the notification
    is sent, the dedup entry recorded, and only then is the message acked.

    In the default mode a crash between send and record, or two concurrent
    duplicates passing the check together, can send twice. With ``strict``
    the dedup row is inserted inside an open transaction before sending and
    committed after; a concurrent duplicate fails the insert and acks.
    """

    def __init__(
        self,
        dedup_repository: DedupRepository,
        sender: NotificationSender,
        strict: bool = settings.dedup_strict
    ) -> None:
        self.dedup_repository = dedup_repository
        self.sender = sender
        self.strict = strict

    async def on_delivery(self, message_id: str, payload: WelcomeNotification, ack_handle: AckHandle) -> None:
        if self.strict:
            await self._deliver_strict(message_id, payload, ack_handle)
            return

        if await self.dedup_repository.exists(message_id):
            logger.info(f"Message {message_id} already processed, acknowledging duplicate")
            await ack_handle.ack()
            return

        if not await self._send(message_id, payload, ack_handle):
            return

        await self.dedup_repository.record(message_id)
        await ack_handle.ack()
        logger.info(f"Processed message {message_id} for employee {payload.employee_id}")

    async def _deliver_strict(self, message_id: str, payload: WelcomeNotification, ack_handle: AckHandle) -> None:
        if not await self.dedup_repository.claim(message_id):
            logger.info(f"Message {message_id} already claimed, acknowledging duplicate")
            await ack_handle.ack()
            return

        try:
            sent = await self._send(message_id, payload, ack_handle)
        except Exception:
            await self.dedup_repository.release_claim()
            raise

        if not sent:
            await self.dedup_repository.release_claim()
            return

        await self.dedup_repository.commit_claim()
        await ack_handle.ack()
        logger.info(f"Processed message {message_id} for employee {payload.employee_id}")

    async def _send(self, message_id: str, payload: WelcomeNotification, ack_handle: AckHandle) -> bool:
        try:
            await self.sender.send(payload.recipient, payload.template_vars())
        except TransientNotificationError as e:
            logger.warning(f"Transient send failure for message {message_id}, requeueing: {e}")
            await ack_handle.nack(requeue=True)
            return False
        except PermanentNotificationError as e:
            logger.error(f"Permanent send failure for message {message_id}, dead-lettering: {e}")
            await ack_handle.nack(requeue=False)
            return False
        return True


class MessageConsumer:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession] = async_session_maker,
        sender: Optional[NotificationSender] = None,
        strict: bool = settings.dedup_strict
    ) -> None:
        self.connection: AbstractRobustConnection | None = None
        self.session_maker = session_maker
        self.sender = sender or SmtpNotificationSender()
        self.strict = strict

    async def start(self) -> None:
        self.connection = await connect_robust(settings.rabbitmq_url)
        channel = await self.connection.channel()
        await channel.set_qos(prefetch_count=settings.rabbitmq_prefetch_count)

        exchange = await channel.declare_exchange(settings.mail_exchange, ExchangeType.DIRECT, durable=True)

        dlx = await channel.declare_exchange(settings.mail_dead_letter_exchange, ExchangeType.DIRECT, durable=True)

        dlq = await channel.declare_queue(
            f"{settings.mail_queue}.failed",
            durable=True
        )
        await dlq.bind(dlx, routing_key=settings.mail_dead_letter_routing_key)

        queue = await channel.declare_queue(
            settings.mail_queue,
            durable=True,
            arguments={
                "x-dead-letter-exchange": settings.mail_dead_letter_exchange,
                "x-dead-letter-routing-key": settings.mail_dead_letter_routing_key
            }
        )

        await queue.bind(exchange, routing_key=settings.mail_routing_key)

        await queue.consume(self._process_message)
        logger.info(f"Started consuming {settings.mail_queue}")

    async def _process_message(self, message: AbstractIncomingMessage) -> None:
        message_id = message.message_id or message.correlation_id
        if not message_id:
            logger.error("Received message without message id, dead-lettering")
            await message.nack(requeue=False)
            return

        if len(message_id) > MESSAGE_ID_LENGTH:
            logger.error(f"Message id longer than {MESSAGE_ID_LENGTH} characters, dead-lettering: {message_id[:64]}...")
            await message.nack(requeue=False)
            return

        try:
            payload = WelcomeNotification.model_validate_json(message.body)
        except ValidationError as e:
            logger.error(f"Validation error processing message {message_id}: {e}", exc_info=True)
            await message.nack(requeue=False)
            return

        try:
            async with self.session_maker() as session:
                handler = NotificationConsumer(DedupRepository(session), self.sender, strict=self.strict)
                await handler.on_delivery(message_id, payload, message)
        except Exception as e:
            logger.error(f"Error processing message {message_id}: {e}", exc_info=True)
            await message.nack(requeue=False)

    async def stop(self) -> None:
        if self.connection:
            await self.connection.close()
            logger.info("Stopped message consumer")


consumer = MessageConsumer()
