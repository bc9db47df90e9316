import pytest
from datetime import datetime, timedelta, timezone

from mailrelay.models.outbox import OutboxStatus
from mailrelay.repositories.dedup import DedupRepository
from mailrelay.repositories.outbox import OutboxRepository
from mailrelay.schemas.notification import WelcomeNotification
from mailrelay.services.confirm_listener import ConfirmListener
from mailrelay.services.consumer import NotificationConsumer
from mailrelay.services.publisher import NotificationPublisher, employee_source, welcome_destination
from mailrelay.services.retry_scheduler import RetryScheduler

from conftest import RecordingAckHandle

ACK_TIMEOUT = 60


class Pipeline:
    """Wires the components around a fake broker that hands sends to the test."""

    def __init__(self, session_maker, fake_broker, sender) -> None:
        self.session_maker = session_maker
        self.broker = fake_broker
        self.sender = sender
        self.listener = ConfirmListener(session_maker)
        self.scheduler = RetryScheduler(session_maker, fake_broker, ack_timeout_seconds=ACK_TIMEOUT, max_attempts=3)

    async def publish(self, employee_id: int) -> str:
        async with self.session_maker() as session:
            publisher = NotificationPublisher(
                OutboxRepository(session),
                employee_source(session),
                self.broker,
                ack_timeout_seconds=ACK_TIMEOUT
            )
            return await publisher.publish(str(employee_id), welcome_destination())

    async def deliver(self, index: int) -> RecordingAckHandle:
        sent = self.broker.sent[index]
        ack_handle = RecordingAckHandle()
        async with self.session_maker() as session:
            consumer = NotificationConsumer(DedupRepository(session), self.sender, strict=False)
            await consumer.on_delivery(
                sent["correlation_id"],
                WelcomeNotification.model_validate_json(sent["payload"]),
                ack_handle
            )
        return ack_handle


@pytest.fixture
def pipeline(test_async_session_maker, fake_broker, recording_sender):
    return Pipeline(test_async_session_maker, fake_broker, recording_sender)


@pytest.mark.asyncio
async def test_first_try_success(pipeline, employee, load_record):
    message_id = await pipeline.publish(employee.id)
    await pipeline.listener.on_confirm(message_id, True)
    ack_handle = await pipeline.deliver(0)

    record = await load_record(message_id)
    assert record.status == OutboxStatus.CONFIRMED.value
    assert record.attempt_count == 1
    assert ack_handle.acks == 1
    assert len(pipeline.sender.calls) == 1


@pytest.mark.asyncio
async def test_lost_confirm_is_retried_and_deduplicated(pipeline, employee, load_record):
    message_id = await pipeline.publish(employee.id)
    first_ack = await pipeline.deliver(0)

    await pipeline.scheduler.sweep(datetime.now(timezone.utc) + timedelta(seconds=ACK_TIMEOUT + 1))
    await pipeline.listener.on_confirm(message_id, True)
    second_ack = await pipeline.deliver(1)

    record = await load_record(message_id)
    assert record.status == OutboxStatus.CONFIRMED.value
    assert record.attempt_count == 2
    assert [sent["correlation_id"] for sent in pipeline.broker.sent] == [message_id, message_id]
    assert first_ack.acks == 1
    assert second_ack.acks == 1
    assert len(pipeline.sender.calls) == 1


@pytest.mark.asyncio
async def test_exhausted_attempts_never_reach_consumer(pipeline, employee, load_record):
    pipeline.broker.fail_sends = True
    message_id = await pipeline.publish(employee.id)

    now = datetime.now(timezone.utc)
    for step in range(1, 5):
        await pipeline.scheduler.sweep(now + timedelta(seconds=step * (ACK_TIMEOUT + 1)))

    record = await load_record(message_id)
    assert record.status == OutboxStatus.FAILED.value
    assert record.attempt_count == 3
    assert pipeline.broker.sent == []
    assert pipeline.sender.calls == []

    async with pipeline.session_maker() as session:
        counts = await OutboxRepository(session).count_by_status()
    assert counts[OutboxStatus.FAILED.value] == 1
