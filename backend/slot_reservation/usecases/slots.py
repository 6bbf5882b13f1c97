from datetime import datetime
from typing import List, Optional

from ..domain.errors import NotAuthorizedError, ProviderNotFoundError, ServiceNotFoundError
from ..domain.repositories import CatalogRepository, SlotRepository
from ..models import Slot, SlotStatus


async def list_slots(
    slot_repo: SlotRepository,
    *,
    service_id: Optional[int],
    provider_id: Optional[int],
    start: Optional[datetime],
    end: Optional[datetime],
    status: Optional[SlotStatus] = None,
) -> List[Slot]:
    rows = await slot_repo.list_slots(service_id=service_id, provider_id=provider_id, start=start, end=end)
    return [slot for slot in rows if status is None or slot.status == status]


async def create_slot(
    slot_repo: SlotRepository,
    catalog_repo: CatalogRepository,
    *,
    provider_id: int,
    service_id: int,
    user_id: int,
    start_time: datetime,
    end_time: datetime,
) -> Slot:
    if start_time >= end_time:
        raise ValueError("start_time must be earlier than end_time")
    provider = await catalog_repo.get_provider(provider_id)
    if provider is None:
        raise ProviderNotFoundError("provider not found")
    if provider.owner_user_id != user_id:
        raise NotAuthorizedError("only the provider's owner can publish slots")
    service = await catalog_repo.get_service(service_id)
    if service is None or service.provider_id != provider_id:
        raise ServiceNotFoundError("service not found for this provider")
    return await slot_repo.create(
        provider_id=provider_id,
        service_id=service_id,
        start_time=start_time,
        end_time=end_time,
    )
