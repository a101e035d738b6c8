import asyncio

from fastapi import FastAPI, Depends, HTTPException, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from . import (
    availability, bikes, bookings, config, dashboard, schemas, tenancy
)
from .database import Database
from .enums import BikeStatus, BookingStatus
from .errors import FleetError, MissingFields, ValidationFailed
from typing import List, Optional
import aiohttp
from datetime import datetime
import logging
from fastapi.middleware.cors import CORSMiddleware

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Fleet Service",
    description="API for bike fleet, bookings and availability management",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json"
)

security = HTTPBearer()

# Хранилище создается при старте, если его не передали заранее (например, в тестах)
app.state.database = None


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup():
    if app.state.database is None:
        app.state.database = Database(config.DATABASE_URL, echo=config.SQL_ECHO)
    await app.state.database.create_all()


@app.on_event("shutdown")
async def shutdown():
    if app.state.database is not None:
        await app.state.database.dispose()


@app.exception_handler(FleetError)
async def fleet_error_handler(request: Request, exc: FleetError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in err["loc"][1:]), "message": err["msg"], "type": err["type"]}
        for err in exc.errors()
    ]
    missing = [e["field"] for e in errors if e["type"] == "missing"]
    if missing and len(missing) == len(errors):
        error = MissingFields(missing)
    else:
        error = ValidationFailed(
            details={"errors": [{"field": e["field"], "message": e["message"]} for e in errors]}
        )
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


def get_database(request: Request) -> Database:
    return request.app.state.database


# Асинхронная зависимость для получения сессии БД
async def get_db(database: Database = Depends(get_database)):
    async with database.session() as session:
        try:
            yield session
        finally:
            await session.close()


# Проверка токена через внешний auth-service
async def verify_auth_token(credentials: HTTPAuthorizationCredentials = Depends(security)):
    """Проверяет токен через auth-service"""
    try:
        token = credentials.credentials
        logger.info(f"Verifying token: {token[:20]}...")

        async with aiohttp.ClientSession() as session:
            async with session.get(
                    f"{config.AUTH_SERVICE_URL}/users/me",
                    headers={"Authorization": f"Bearer {token}"},
                    timeout=aiohttp.ClientTimeout(total=config.AUTH_TIMEOUT)
            ) as response:

                logger.info(f"Auth service response status: {response.status}")

                if response.status == 200:
                    user_data = await response.json()
                    logger.info(f"User authenticated: {user_data['id']}")
                    return user_data
                else:
                    error_text = await response.text()
                    logger.error(f"Auth service error: {response.status} - {error_text}")
                    raise HTTPException(
                        status_code=status.HTTP_401_UNAUTHORIZED,
                        detail="Invalid authentication credentials"
                    )

    except aiohttp.ClientConnectorError as e:
        logger.error(f"Cannot connect to auth service: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication service unavailable"
        )
    except asyncio.TimeoutError:
        logger.error("Auth service timeout")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication service timeout"
        )
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Unexpected error in auth verification: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Authentication error"
        )


# Функция для получения текущего пользователя
async def get_current_user(user_data: dict = Depends(verify_auth_token)):
    """Возвращает данные текущего пользователя"""
    return user_data


async def get_org_id(
        current_user: dict = Depends(get_current_user),
        db: AsyncSession = Depends(get_db)
) -> int:
    """Организация пользователя: все запросы выполняются только в ее пределах"""
    org_id = current_user.get("organization_id")
    if org_id is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User is not a member of any organization"
        )
    await tenancy.ensure_organization(db, int(org_id))
    return int(org_id)


def server_error(action: str, e: Exception) -> HTTPException:
    logger.error(f"Error {action}: {e}")
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Error {action}: {str(e)}"
    )


# ---------- Bikes ----------

@app.get("/bikes/", response_model=List[schemas.Bike])
async def read_bikes(
        status_filter: Optional[BikeStatus] = Query(None, alias="status"),
        db: AsyncSession = Depends(get_db),
        org_id: int = Depends(get_org_id)
):
    try:
        return await bikes.list_bikes(db, org_id, status=status_filter)
    except Exception as e:
        raise server_error("retrieving bikes", e)


@app.post("/bikes/", response_model=schemas.Bike, status_code=status.HTTP_201_CREATED)
async def create_bike(
        bike_data: schemas.BikeCreate,
        db: AsyncSession = Depends(get_db),
        org_id: int = Depends(get_org_id)
):
    try:
        return await bikes.create_bike(db, org_id, bike_data)
    except FleetError:
        raise
    except Exception as e:
        await db.rollback()
        raise server_error("creating bike", e)


@app.get("/bikes/{bike_id}", response_model=schemas.Bike)
async def read_bike(
        bike_id: int,
        db: AsyncSession = Depends(get_db),
        org_id: int = Depends(get_org_id)
):
    try:
        return await tenancy.get_bike(db, org_id, bike_id)
    except FleetError:
        raise
    except Exception as e:
        raise server_error("retrieving bike", e)


@app.put("/bikes/{bike_id}", response_model=schemas.Bike)
async def update_bike(
        bike_id: int,
        bike_data: schemas.BikeUpdate,
        db: AsyncSession = Depends(get_db),
        org_id: int = Depends(get_org_id)
):
    try:
        return await bikes.update_bike(db, org_id, bike_id, bike_data)
    except FleetError:
        raise
    except Exception as e:
        await db.rollback()
        raise server_error("updating bike", e)


@app.patch("/bikes/{bike_id}/maintenance", response_model=schemas.Bike)
async def toggle_bike_maintenance(
        bike_id: int,
        db: AsyncSession = Depends(get_db),
        org_id: int = Depends(get_org_id)
):
    try:
        return await bikes.toggle_maintenance(db, org_id, bike_id)
    except FleetError:
        raise
    except Exception as e:
        await db.rollback()
        raise server_error("toggling maintenance", e)


@app.get("/bikes/{bike_id}/availability", response_model=schemas.Availability)
async def read_bike_availability(
        bike_id: int,
        as_of: Optional[datetime] = None,
        db: AsyncSession = Depends(get_db),
        org_id: int = Depends(get_org_id)
):
    try:
        return await availability.get_bike_availability(db, org_id, bike_id, as_of=as_of)
    except FleetError:
        raise
    except Exception as e:
        raise server_error("calculating availability", e)


@app.delete("/bikes/{bike_id}")
async def delete_bike(
        bike_id: int,
        db: AsyncSession = Depends(get_db),
        org_id: int = Depends(get_org_id)
):
    try:
        await bikes.delete_bike(db, org_id, bike_id)
        return {
            "message": "Bike deleted successfully",
            "bike_id": bike_id
        }
    except FleetError:
        raise
    except Exception as e:
        await db.rollback()
        raise server_error("deleting bike", e)


# ---------- Bookings ----------

@app.get("/bookings/", response_model=List[schemas.Booking])
async def read_bookings(
        status_filter: Optional[BookingStatus] = Query(None, alias="status"),
        bike_id: Optional[int] = None,
        db: AsyncSession = Depends(get_db),
        org_id: int = Depends(get_org_id)
):
    try:
        return await bookings.list_bookings(db, org_id, status=status_filter, bike_id=bike_id)
    except Exception as e:
        raise server_error("retrieving bookings", e)


@app.post("/bookings/", response_model=schemas.Booking, status_code=status.HTTP_201_CREATED)
async def create_booking(
        booking_data: schemas.BookingCreate,
        db: AsyncSession = Depends(get_db),
        org_id: int = Depends(get_org_id)
):
    try:
        return await bookings.create_booking(db, org_id, booking_data)
    except FleetError:
        raise
    except Exception as e:
        await db.rollback()
        raise server_error("creating booking", e)


@app.get("/bookings/{booking_id}", response_model=schemas.Booking)
async def read_booking(
        booking_id: int,
        db: AsyncSession = Depends(get_db),
        org_id: int = Depends(get_org_id)
):
    try:
        return await tenancy.get_booking(db, org_id, booking_id)
    except FleetError:
        raise
    except Exception as e:
        raise server_error("retrieving booking", e)


@app.put("/bookings/{booking_id}", response_model=schemas.Booking)
async def update_booking(
        booking_id: int,
        booking_data: schemas.BookingUpdate,
        db: AsyncSession = Depends(get_db),
        org_id: int = Depends(get_org_id)
):
    try:
        return await bookings.update_booking(db, org_id, booking_id, booking_data)
    except FleetError:
        raise
    except Exception as e:
        await db.rollback()
        raise server_error("updating booking", e)


@app.post("/bookings/{booking_id}/deliver", response_model=schemas.Booking)
async def deliver_bike(
        booking_id: int,
        delivery_data: schemas.DeliveryCreate,
        db: AsyncSession = Depends(get_db),
        org_id: int = Depends(get_org_id),
        current_user: dict = Depends(get_current_user)
):
    try:
        return await bookings.deliver_bike(
            db, org_id, booking_id, delivery_data, delivered_by=current_user.get("id")
        )
    except FleetError:
        raise
    except Exception as e:
        await db.rollback()
        raise server_error("delivering bike", e)


@app.patch("/bookings/{booking_id}/returned", response_model=schemas.ReturnResult)
async def mark_returned(
        booking_id: int,
        return_data: schemas.ReturnCreate,
        db: AsyncSession = Depends(get_db),
        org_id: int = Depends(get_org_id),
        current_user: dict = Depends(get_current_user)
):
    try:
        booking, bike, settlement = await bookings.mark_returned(
            db, org_id, booking_id, return_data, received_by=current_user.get("id")
        )
        return {
            "booking": booking,
            "bike": bike,
            "settlement": schemas.Settlement.model_validate(settlement)
        }
    except FleetError:
        raise
    except Exception as e:
        await db.rollback()
        raise server_error("marking returned", e)


@app.post("/bookings/{booking_id}/cancel", response_model=schemas.Booking)
async def cancel_booking(
        booking_id: int,
        db: AsyncSession = Depends(get_db),
        org_id: int = Depends(get_org_id)
):
    try:
        return await bookings.cancel_booking(db, org_id, booking_id)
    except FleetError:
        raise
    except Exception as e:
        await db.rollback()
        raise server_error("cancelling booking", e)


@app.delete("/bookings/{booking_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_booking(
        booking_id: int,
        db: AsyncSession = Depends(get_db),
        org_id: int = Depends(get_org_id)
):
    try:
        await bookings.delete_booking(db, org_id, booking_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except FleetError:
        raise
    except Exception as e:
        await db.rollback()
        raise server_error("deleting booking", e)


@app.get("/bookings/{booking_id}/payments", response_model=List[schemas.Payment])
async def read_payments(
        booking_id: int,
        db: AsyncSession = Depends(get_db),
        org_id: int = Depends(get_org_id)
):
    try:
        return await bookings.list_payments(db, org_id, booking_id)
    except FleetError:
        raise
    except Exception as e:
        raise server_error("retrieving payments", e)


@app.post("/bookings/{booking_id}/payments", response_model=schemas.Payment, status_code=status.HTTP_201_CREATED)
async def create_payment(
        booking_id: int,
        payment_data: schemas.PaymentCreate,
        db: AsyncSession = Depends(get_db),
        org_id: int = Depends(get_org_id)
):
    try:
        return await bookings.record_payment(db, org_id, booking_id, payment_data)
    except FleetError:
        raise
    except Exception as e:
        await db.rollback()
        raise server_error("recording payment", e)


# ---------- Dashboard ----------

@app.get("/dashboard/fleet", response_model=schemas.FleetSummary)
async def read_fleet_summary(
        database: Database = Depends(get_database),
        db: AsyncSession = Depends(get_db),
        org_id: int = Depends(get_org_id)
):
    try:
        return await dashboard.get_fleet_summary(database, db, org_id)
    except Exception as e:
        raise server_error("building fleet summary", e)


# Health check остается без авторизации
@app.get("/health")
async def health_check(database: Database = Depends(get_database)):
    health_info = {
        "status": "healthy",
        "service": "fleet",
        "timestamp": datetime.utcnow().isoformat()
    }

    # Проверка базы данных
    try:
        start_time = datetime.utcnow()
        await database.ping()
        db_response_time = (datetime.utcnow() - start_time).total_seconds() * 1000
        health_info["database"] = {
            "status": "connected",
            "response_time_ms": round(db_response_time, 2)
        }
    except Exception as e:
        health_info["database"] = {
            "status": "error",
            "error": str(e)
        }
        health_info["status"] = "unhealthy"

    return health_info
