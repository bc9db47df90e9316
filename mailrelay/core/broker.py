import asyncio
import logging
from typing import Awaitable, Callable, Optional
import aio_pika
from aio_pika import ExchangeType
from aio_pika.abc import AbstractRobustConnection, AbstractRobustChannel

from mailrelay.core.config import settings
from mailrelay.schemas.notification import Destination

logger = logging.getLogger(__name__)

ConfirmCallback = Callable[[str, bool, Optional[str]], Awaitable[None]]


class RabbitMQBroker:
    """Fire-and-forget publisher with asynchronous publisher confirms.

    ``send`` schedules the publish on the running loop and returns at once.
    The publish task waits for the broker's confirm and reports the outcome
    to the registered confirm callback as ``(message_id, accepted, cause)``.
    """

    def __init__(self, confirm_timeout: float = settings.publish_confirm_timeout_seconds) -> None:
        self.connection: Optional[AbstractRobustConnection] = None
        self.channel: Optional[AbstractRobustChannel] = None
        self.confirm_timeout = confirm_timeout
        self._confirm_callback: Optional[ConfirmCallback] = None
        self._pending: set[asyncio.Task] = set()

    def set_confirm_callback(self, callback: ConfirmCallback) -> None:
        self._confirm_callback = callback

    @property
    def is_connected(self) -> bool:
        return self.connection is not None and not self.connection.is_closed

    async def connect(self) -> None:
        self.connection = await aio_pika.connect_robust(settings.rabbitmq_url)
        # Unroutable messages come back as DeliveryError and count as not accepted.
        self.channel = await self.connection.channel(publisher_confirms=True, on_return_raises=True)
        await self.channel.set_qos(prefetch_count=settings.rabbitmq_prefetch_count)

        await self.channel.declare_exchange(
            settings.mail_exchange,
            ExchangeType.DIRECT,
            durable=True
        )

        await self.channel.declare_exchange(
            settings.mail_dead_letter_exchange,
            ExchangeType.DIRECT,
            durable=True
        )

        logger.info("Connected to RabbitMQ")

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        if self.channel:
            await self.channel.close()
        if self.connection:
            await self.connection.close()
        logger.info("Disconnected from RabbitMQ")

    def send(self, destination: Destination, payload: bytes, correlation_id: str) -> None:
        if not self.channel or self.channel.is_closed:
            raise RuntimeError("Channel is not initialized")

        task = asyncio.create_task(self._publish(destination, payload, correlation_id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _publish(self, destination: Destination, payload: bytes, correlation_id: str) -> None:
        accepted, cause = True, None
        try:
            exchange = await self.channel.get_exchange(destination.exchange)
            await exchange.publish(
                aio_pika.Message(
                    body=payload,
                    message_id=correlation_id,
                    correlation_id=correlation_id,
                    content_type="application/json",
                    delivery_mode=aio_pika.DeliveryMode.PERSISTENT
                ),
                routing_key=destination.routing_key,
                mandatory=True,
                timeout=self.confirm_timeout
            )
            logger.info(f"Broker confirmed message {correlation_id} to {destination.routing_key}")
        except Exception as e:
            accepted = False
            cause = f"{type(e).__name__}: {str(e)}"

        await self._notify(correlation_id, accepted, cause)

    async def _notify(self, message_id: str, accepted: bool, cause: Optional[str]) -> None:
        if self._confirm_callback is None:
            logger.warning(f"No confirm callback registered, dropping confirm for {message_id}")
            return

        try:
            await self._confirm_callback(message_id, accepted, cause)
        except Exception as e:
            logger.error(f"Confirm callback failed for message {message_id}: {e}", exc_info=True)


broker = RabbitMQBroker()
