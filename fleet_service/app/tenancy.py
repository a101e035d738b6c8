"""Привязка к организации: любой запрос к велосипедам и броням фильтруется по organization_id.

Чужой объект неотличим от несуществующего: в обоих случаях NotFound.
"""
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from . import config, models
from .errors import NotFound

logger = logging.getLogger(__name__)


async def ensure_organization(db: AsyncSession, org_id: int) -> models.Organization:
    """Организации создаются при регистрации во внешнем auth-сервисе, здесь заводим локальную копию."""
    organization = await db.get(models.Organization, org_id)
    if organization is None:
        organization = models.Organization(
            id=org_id,
            plan=config.DEFAULT_PLAN,
            bikes_limit=config.DEFAULT_BIKES_LIMIT
        )
        db.add(organization)
        try:
            await db.commit()
        except IntegrityError:
            # Параллельный первый запрос уже завел эту организацию
            await db.rollback()
            organization = await db.get(models.Organization, org_id)
        else:
            logger.info(f"Organization {org_id} registered locally with plan {organization.plan}")
    return organization


async def get_bike(db: AsyncSession, org_id: int, bike_id: int, for_update: bool = False) -> models.Bike:
    query = select(models.Bike).where(
        models.Bike.id == bike_id,
        models.Bike.organization_id == org_id,
        models.Bike.is_deleted == False  # noqa: E712
    )
    if for_update:
        # Блокировка строки велосипеда сериализует запись броней по одному велосипеду
        query = query.with_for_update()

    result = await db.execute(query)
    bike = result.scalar_one_or_none()
    if bike is None:
        raise NotFound("Bike")
    return bike


async def get_booking(db: AsyncSession, org_id: int, booking_id: int) -> models.Booking:
    result = await db.execute(
        select(models.Booking).where(
            models.Booking.id == booking_id,
            models.Booking.organization_id == org_id,
            models.Booking.is_deleted == False  # noqa: E712
        )
    )
    booking = result.scalar_one_or_none()
    if booking is None:
        raise NotFound("Booking")
    return booking
