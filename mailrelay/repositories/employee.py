from typing import Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mailrelay.models.employee import Employee


class EmployeeRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create(self, employee: Employee) -> Employee:
        self.session.add(employee)
        await self.session.flush()
        await self.session.refresh(employee)
        return employee

    async def get_by_id(self, employee_id: int) -> Optional[Employee]:
        result = await self.session.execute(
            select(Employee)
            .where(Employee.id == employee_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def update(self, employee: Employee) -> Employee:
        await self.session.commit()
        await self.session.refresh(employee)
        return employee
