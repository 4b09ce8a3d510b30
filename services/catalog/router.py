"""
services/catalog/router.py
Provider service catalog. A service carries the rates booking prices
are computed from: an hourly rate, a fixed package price, or both.
"""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.exceptions import AuthorizationError, NotFoundError, ValidationError
from shared.middleware.auth import require_provider
from shared.models.models import PricingType, Service, User
from shared.schemas.schemas import ServiceCreateRequest, ServiceResponse, ServiceUpdateRequest

router = APIRouter(prefix="/services", tags=["Catalog"])


async def _get_service_or_404(db: AsyncSession, service_id: UUID) -> Service:
    service = await db.get(Service, service_id)
    if not service:
        raise NotFoundError("Service not found")
    return service


@router.post("", response_model=ServiceResponse, status_code=status.HTTP_201_CREATED)
async def create_service(
    data: ServiceCreateRequest,
    current_user: User = Depends(require_provider),
    db: AsyncSession = Depends(get_db),
):
    service = Service(provider_id=current_user.id, **data.model_dump())
    db.add(service)
    await db.commit()
    return service


@router.get("", response_model=List[ServiceResponse])
async def list_services(
    provider_id: Optional[UUID] = Query(None),
    include_inactive: bool = Query(False),
    db: AsyncSession = Depends(get_db),
):
    query = select(Service).order_by(Service.created_at.desc())
    if provider_id:
        query = query.where(Service.provider_id == provider_id)
    if not include_inactive:
        query = query.where(Service.is_active.is_(True))
    result = await db.execute(query.limit(100))
    return list(result.scalars())


@router.get("/{service_id}", response_model=ServiceResponse)
async def get_service(service_id: UUID, db: AsyncSession = Depends(get_db)):
    return await _get_service_or_404(db, service_id)


@router.patch("/{service_id}", response_model=ServiceResponse)
async def update_service(
    service_id: UUID,
    data: ServiceUpdateRequest,
    current_user: User = Depends(require_provider),
    db: AsyncSession = Depends(get_db),
):
    """Only fields present in the body change. Existing bookings keep their price."""
    service = await _get_service_or_404(db, service_id)
    if service.provider_id != current_user.id:
        raise AuthorizationError("You can only edit your own services")

    for field, value in data.model_dump(exclude_unset=True).items():
        setattr(service, field, value)

    if service.pricing_type == PricingType.HOURLY and service.hourly_rate is None:
        raise ValidationError("hourly_rate is required for hourly services")
    if service.pricing_type == PricingType.PACKAGE and service.package_price is None:
        raise ValidationError("package_price is required for package services")

    await db.commit()
    return service
