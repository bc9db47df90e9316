from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from mailrelay.api.dependencies import get_publisher
from mailrelay.core.database import get_db
from mailrelay.models.employee import Employee
from mailrelay.repositories.employee import EmployeeRepository
from mailrelay.schemas.employee import EmployeeCreate, EmployeeResponse
from mailrelay.services.publisher import (
    EntityNotFoundError,
    NotificationPublisher,
    PayloadBuildError,
    welcome_destination,
)

router = APIRouter(prefix="/employees", tags=["employees"])


@router.post("", response_model=EmployeeResponse, status_code=status.HTTP_201_CREATED)
async def create_employee(
    employee_data: EmployeeCreate,
    db: AsyncSession = Depends(get_db),
    publisher: NotificationPublisher = Depends(get_publisher)
) -> EmployeeResponse:
    repository = EmployeeRepository(db)
    employee = await repository.create(Employee(**employee_data.model_dump()))

    # The employee is only flushed here; publish commits it with the outbox row.
    try:
        message_id = await publisher.publish(str(employee.id), welcome_destination())
    except (EntityNotFoundError, PayloadBuildError) as e:
        await db.rollback()
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    return EmployeeResponse(
        id=employee.id,
        name=employee.name,
        email=employee.email,
        position_name=employee.position_name,
        job_level_name=employee.job_level_name,
        department_name=employee.department_name,
        created_at=employee.created_at,
        notification_message_id=message_id
    )
