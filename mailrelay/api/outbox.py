from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from mailrelay.api.dependencies import get_publisher
from mailrelay.core.database import get_db
from mailrelay.models.outbox import OutboxStatus
from mailrelay.repositories.outbox import OutboxRepository
from mailrelay.schemas.outbox import OutboxRecordResponse, OutboxStats, RepublishResponse
from mailrelay.services.publisher import (
    EntityNotFoundError,
    InvalidOutboxStateError,
    NotificationPublisher,
    OutboxRecordNotFoundError,
    PayloadBuildError,
)

router = APIRouter(prefix="/outbox", tags=["outbox"])


@router.get("/stats", response_model=OutboxStats)
async def get_outbox_stats(db: AsyncSession = Depends(get_db)) -> OutboxStats:
    counts = await OutboxRepository(db).count_by_status()
    return OutboxStats(
        pending=counts[OutboxStatus.PENDING.value],
        confirmed=counts[OutboxStatus.CONFIRMED.value],
        failed=counts[OutboxStatus.FAILED.value]
    )


@router.get("/{message_id}", response_model=OutboxRecordResponse)
async def get_outbox_record(message_id: str, db: AsyncSession = Depends(get_db)) -> OutboxRecordResponse:
    record = await OutboxRepository(db).get_by_message_id(message_id)
    if not record:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Outbox record {message_id} not found"
        )
    return OutboxRecordResponse.model_validate(record)


@router.post("/{message_id}/republish", response_model=RepublishResponse, status_code=status.HTTP_201_CREATED)
async def republish_outbox_record(
    message_id: str,
    publisher: NotificationPublisher = Depends(get_publisher)
) -> RepublishResponse:
    try:
        new_message_id = await publisher.republish(message_id)
    except (OutboxRecordNotFoundError, EntityNotFoundError) as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidOutboxStateError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except PayloadBuildError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    return RepublishResponse(message_id=new_message_id, republished_from=message_id)
