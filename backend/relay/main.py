import logging

import redis.asyncio as redis
import sqlalchemy.exc
from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from fastapi_limiter import FastAPILimiter
from fastapi_limiter.depends import RateLimiter
from relay.core.config import get_settings
from relay.db import crud, models, schemas
from relay.db.ledger import PersistenceError
from relay.db.session import SessionLocal
from relay.middleware.body_size import BodySizeLimitMiddleware
from relay.services import receiver
from relay.services.scheduler import DestinationUnavailable
from relay.services.signing import EncodingError
from relay.services.url_guard import WebhookUrlError, validate_webhook_url
from relay.tasks import build_scheduler, deliver_webhook
from sqlalchemy.orm import Session

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


def rate_limit(times: int, seconds: int) -> list:
    if not settings.rate_limit_enabled:
        return []
    return [Depends(RateLimiter(times=times, seconds=seconds))]


app = FastAPI(
    title="Webhook Relay",
    description="Signed, idempotent webhook delivery with durable retries",
    version="1.0.0",
    dependencies=rate_limit(100, 60),  # Global rate limit
)
bearer_scheme = HTTPBearer()

app.add_middleware(BodySizeLimitMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins.split(","),
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    allow_credentials=True,
)


@app.on_event("startup")
async def startup():
    if not settings.rate_limit_enabled:
        return
    try:
        redis_conn = redis.from_url(settings.redis_url, decode_responses=True)
        await FastAPILimiter.init(redis_conn)
    except Exception as e:
        logger.warning(f"Failed to initialize rate limiter: {e}")


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request: Request, exc: PersistenceError):
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Delivery store unavailable, retry the request"},
    )


# ---------- dependency ----------
def db_session():
    try:
        db: Session = SessionLocal()
    except sqlalchemy.exc.SQLAlchemyError as e:
        logger.error(f"Database error: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database connection failed",
        )
    try:
        yield db
    finally:
        db.close()


def current_organization(
    creds: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    db: Session = Depends(db_session),
) -> models.Organization:
    organization = crud.verify_api_key(db, creds.credentials)
    if not organization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )
    return organization


def enqueue_delivery(delivery: models.Delivery) -> None:
    try:
        deliver_webhook.delay(str(delivery.id))
    except Exception as e:
        # The record is pending; the sweeper will pick it up
        logger.error(f"Failed to queue delivery {delivery.id}: {e}", exc_info=True)


@app.get("/health", include_in_schema=False)
async def health():
    return {"status": "ok"}


# ---------- signup ----------
@app.post("/signup")
def signup(data: schemas.OrganizationCreate, db: Session = Depends(db_session)):
    organization = crud.create_organization(db, data)
    api_key = crud.issue_api_key(db, organization.id)
    return {
        "organization": {
            "id": organization.id,
            "name": organization.name,
            "token": organization.token,
        },
        "api_key": api_key,
        "ingress_url": f"/in/{organization.token}",
    }


# ---------- whoami ----------
@app.get("/me", response_model=schemas.OrganizationOut)
def who_am_i(organization: models.Organization = Depends(current_organization)):
    return organization


# ---------- destination ----------
@app.post(
    "/destination",
    response_model=schemas.DestinationWithSecret,
    status_code=status.HTTP_201_CREATED,
)
def configure_destination(
    data: schemas.DestinationCreate,
    organization: models.Organization = Depends(current_organization),
    db: Session = Depends(db_session),
):
    try:
        validate_webhook_url(
            str(data.url),
            allow_insecure=settings.allow_insecure_webhook_urls,
            allow_private=settings.allow_private_webhook_targets,
        )
    except WebhookUrlError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return crud.upsert_destination(db, organization.id, data)


@app.get("/destination", response_model=schemas.DestinationOut)
def get_destination(
    organization: models.Organization = Depends(current_organization),
    db: Session = Depends(db_session),
):
    destination = crud.get_destination(db, organization.id)
    if not destination:
        raise HTTPException(status_code=404, detail="No webhook destination configured")
    return destination


@app.post("/destination/rotate-secret", response_model=schemas.DestinationWithSecret)
def rotate_secret(
    organization: models.Organization = Depends(current_organization),
    db: Session = Depends(db_session),
):
    destination = crud.get_destination(db, organization.id)
    if not destination:
        raise HTTPException(status_code=404, detail="No webhook destination configured")
    return crud.rotate_destination_secret(db, destination)


@app.post("/destination/test", response_model=schemas.WebhookTestResult)
def send_test_webhook(
    organization: models.Organization = Depends(current_organization),
    db: Session = Depends(db_session),
):
    try:
        result = build_scheduler(db).send_test(organization.id)
    except DestinationUnavailable as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {
        "outcome": result.outcome.value,
        "status_code": result.status_code,
        "error": result.error,
        "duration_ms": result.duration_ms,
    }


@app.put("/inbound-secret")
def set_inbound_secret(
    data: schemas.InboundSecretUpdate,
    organization: models.Organization = Depends(current_organization),
    db: Session = Depends(db_session),
):
    crud.set_inbound_secret(db, organization, data.signing_secret)
    return {"status": "ok"}


# ---------- events ----------
@app.post(
    "/events",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=schemas.ScheduleResponse,
    description="Schedule delivery of an event. A repeated idempotency key returns the existing delivery.",
)
def create_event(
    data: schemas.EventCreate,
    response: Response,
    organization: models.Organization = Depends(current_organization),
    db: Session = Depends(db_session),
):
    scheduler = build_scheduler(db)
    try:
        result = scheduler.schedule(
            organization.id, data.event, data.idempotency_key, data.data
        )
    except DestinationUnavailable as e:
        raise HTTPException(status_code=409, detail=str(e))
    except EncodingError as e:
        raise HTTPException(status_code=422, detail=str(e))

    if result.duplicate:
        response.status_code = status.HTTP_200_OK
    else:
        enqueue_delivery(result.delivery)
    return schemas.ScheduleResponse(
        duplicate=result.duplicate,
        delivery=schemas.DeliveryOut.model_validate(result.delivery),
    )


# ---------- deliveries ----------
@app.get("/deliveries", response_model=list[schemas.DeliveryOut])
def list_deliveries(
    status_filter: str | None = None,
    limit: int = 100,
    organization: models.Organization = Depends(current_organization),
    db: Session = Depends(db_session),
):
    if status_filter and status_filter not in (
        models.PENDING,
        *models.TERMINAL_STATUSES,
    ):
        raise HTTPException(status_code=422, detail="Unknown delivery status")
    return crud.list_deliveries(
        db, organization.id, status=status_filter, limit=min(limit, 500)
    )


@app.get("/deliveries/stats", response_model=schemas.DeliveryStats)
def delivery_stats(
    organization: models.Organization = Depends(current_organization),
    db: Session = Depends(db_session),
):
    return crud.delivery_stats(db, organization.id)


def _get_delivery_or_404(db: Session, organization_id: int, delivery_id: int):
    delivery = crud.get_delivery(db, organization_id, delivery_id)
    if not delivery:
        raise HTTPException(status_code=404, detail="Delivery not found")
    return delivery


@app.get("/deliveries/{delivery_id}", response_model=schemas.DeliveryOut)
def get_delivery(
    delivery_id: int,
    organization: models.Organization = Depends(current_organization),
    db: Session = Depends(db_session),
):
    return _get_delivery_or_404(db, organization.id, delivery_id)


@app.post("/deliveries/{delivery_id}/cancel", response_model=schemas.DeliveryOut)
def cancel_delivery(
    delivery_id: int,
    organization: models.Organization = Depends(current_organization),
    db: Session = Depends(db_session),
):
    delivery = _get_delivery_or_404(db, organization.id, delivery_id)
    if delivery.status == models.DELIVERED:
        raise HTTPException(status_code=409, detail="Delivery already delivered")
    build_scheduler(db).cancel(delivery)
    return delivery


@app.post(
    "/deliveries/{delivery_id}/redrive",
    response_model=schemas.DeliveryOut,
    status_code=status.HTTP_202_ACCEPTED,
)
def redrive_delivery(
    delivery_id: int,
    organization: models.Organization = Depends(current_organization),
    db: Session = Depends(db_session),
):
    delivery = _get_delivery_or_404(db, organization.id, delivery_id)
    if not build_scheduler(db).redrive(delivery):
        raise HTTPException(status_code=409, detail="Only failed deliveries can be redriven")
    enqueue_delivery(delivery)
    return delivery


# ---------- ingress ----------
@app.post("/in/{token}", dependencies=rate_limit(30, 60))  # Per-organization rate limit
async def receive_webhook(
    token: str,
    request: Request,
    db: Session = Depends(db_session),
):
    organization = crud.get_organization_by_token(db, token)
    if not organization:
        raise HTTPException(status_code=404, detail="Not Found")
    if not organization.inbound_signing_secret:
        raise HTTPException(status_code=400, detail="Inbound webhooks not configured")

    body = await request.body()
    if not body:
        raise HTTPException(status_code=400, detail="Empty JSON body")

    try:
        payload = receiver.verify_delivery(
            request.headers,
            body,
            organization.inbound_signing_secret,
            replay_window=settings.replay_window_seconds,
        )
    except receiver.ReceiverError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    if not crud.record_received_event(db, organization.id, payload):
        logger.info(f"Duplicate delivery {payload.idempotency_key} for org {organization.id}")
        return {"status": "duplicate"}

    logger.info(f"Accepted {payload.event} {payload.idempotency_key} for org {organization.id}")
    return {"status": "received"}
