from datetime import datetime, timedelta, timezone
import csv
import io
import logging
import os
from typing import List

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import models
import schemas
from bookings import BookingService
from checkin import CheckInVerifier
from database import engine, get_db
from discounts import DiscountResolver, normalize_code
from errors import (
    AttendanceConflict,
    BookingNotFound,
    BookingStateError,
    DiscountIneligible,
    DiscountNotFound,
    DuplicateDiscountClass,
    InvalidDiscountCode,
    InvalidScanPayload,
    PassUnavailable,
    TicketingError,
    TransientError,
)
from repository import SqlAlchemyRepository
from ticket_signing import build_signer, encode_payload

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

models.Base.metadata.create_all(bind=engine)

app = FastAPI(title="Gatepass API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

SECRET_KEY = os.getenv("SECRET_KEY", "supersecretkey")
ALGORITHM = "HS256"
TICKET_SIGNING_KEY = os.getenv("TICKET_SIGNING_KEY", SECRET_KEY)
TICKET_SIGNER = os.getenv("TICKET_SIGNER", "hmac").lower()
REQUIRE_TICKET_SIGNATURE = os.getenv("REQUIRE_TICKET_SIGNATURE", "false").lower() == "true"
ADMIN_USERNAME = os.getenv("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "admin123")
SCANNER_USERNAME = os.getenv("SCANNER_USERNAME", "scanner")
SCANNER_PASSWORD = os.getenv("SCANNER_PASSWORD", "scan123")
SCANNER_TOKEN_HOURS = int(os.getenv("SCANNER_TOKEN_HOURS", "12"))
AUTH_DISABLED = os.getenv("AUTH_DISABLED", "false").lower() == "true"

signer = build_signer(TICKET_SIGNER, TICKET_SIGNING_KEY)

admin_bearer = HTTPBearer(auto_error=False)
scanner_bearer = HTTPBearer(auto_error=False)


def create_access_token(data: dict, expires_delta: timedelta | None = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=15))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def _decode_staff_token(credentials: HTTPAuthorizationCredentials | None, roles: set, label: str) -> dict:
    if credentials is None:
        raise HTTPException(status_code=401, detail=f"Missing {label} token")
    try:
        payload = jwt.decode(credentials.credentials, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError as exc:
        raise HTTPException(status_code=401, detail=f"Invalid {label} token") from exc
    username: str | None = payload.get("sub")
    role: str | None = payload.get("role")
    if not username or role not in roles:
        raise HTTPException(status_code=401, detail=f"Invalid {label} token")
    return {"username": username, "role": role}


def get_admin_actor(credentials: HTTPAuthorizationCredentials | None = Depends(admin_bearer)) -> dict:
    if AUTH_DISABLED:
        return {"username": ADMIN_USERNAME, "role": "admin"}
    return _decode_staff_token(credentials, {"admin"}, "admin")


def get_scanner_user(credentials: HTTPAuthorizationCredentials | None = Depends(scanner_bearer)) -> dict:
    if AUTH_DISABLED:
        return {"username": SCANNER_USERNAME, "role": "scanner"}
    return _decode_staff_token(credentials, {"scanner", "admin"}, "scanner")


def get_repo(db: Session = Depends(get_db)) -> SqlAlchemyRepository:
    return SqlAlchemyRepository(db)


def get_booking_service(repo: SqlAlchemyRepository = Depends(get_repo)) -> BookingService:
    return BookingService(repo, signer)


def get_verifier(repo: SqlAlchemyRepository = Depends(get_repo)) -> CheckInVerifier:
    return CheckInVerifier(repo, signer, require_signature=REQUIRE_TICKET_SIGNATURE)


def http_error(exc: TicketingError) -> HTTPException:
    if isinstance(exc, TransientError):
        return HTTPException(status_code=503, detail={"message": str(exc), "retryable": True})
    if isinstance(exc, DiscountIneligible):
        return HTTPException(
            status_code=400,
            detail={"message": str(exc), "code": exc.code, "reason": exc.reason.value},
        )
    if isinstance(exc, DiscountNotFound):
        return HTTPException(status_code=404, detail={"message": str(exc), "code": exc.code, "reason": "not_found"})
    if isinstance(exc, BookingNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (InvalidDiscountCode, InvalidScanPayload, DuplicateDiscountClass)):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, (PassUnavailable, BookingStateError, AttendanceConflict)):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


@app.exception_handler(TransientError)
def transient_error_handler(request: Request, exc: TransientError):
    return JSONResponse(status_code=503, content={"detail": {"message": str(exc), "retryable": True}})


def ticket_response(payload: schemas.TicketPayload) -> schemas.TicketResponse:
    return schemas.TicketResponse(payload=payload, qr_data=encode_payload(payload))


@app.get("/")
def read_root():
    return {"message": "Welcome to Gatepass API"}


@app.post("/auth/admin-login", response_model=schemas.AdminLoginResponse)
def admin_login(req: schemas.AdminLoginRequest):
    if req.username != ADMIN_USERNAME or req.password != ADMIN_PASSWORD:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token = create_access_token(
        data={"sub": req.username, "role": "admin"},
        expires_delta=timedelta(hours=8),
    )
    return schemas.AdminLoginResponse(access_token=token)


@app.post("/auth/scanner-login", response_model=schemas.ScannerLoginResponse)
def scanner_login(req: schemas.ScannerLoginRequest):
    if req.username != SCANNER_USERNAME or req.password != SCANNER_PASSWORD:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token = create_access_token(
        data={"sub": req.username, "role": "scanner"},
        expires_delta=timedelta(hours=SCANNER_TOKEN_HOURS),
    )
    return schemas.ScannerLoginResponse(access_token=token)


# ------------- Events & passes -------------

@app.post("/events/", response_model=schemas.Event)
def create_event(
    event: schemas.EventCreate,
    db: Session = Depends(get_db),
    actor: dict = Depends(get_admin_actor),
):
    db_event = models.Event(**event.model_dump(), discount_spent=0)
    db.add(db_event)
    db.commit()
    db.refresh(db_event)
    return db_event


@app.get("/events/", response_model=List[schemas.Event])
def list_events(db: Session = Depends(get_db)):
    return db.query(models.Event).order_by(models.Event.starts_at.asc()).all()


@app.post("/events/{event_id}/passes", response_model=schemas.Pass)
def create_pass(
    event_id: str,
    ticket_pass: schemas.PassCreate,
    db: Session = Depends(get_db),
    actor: dict = Depends(get_admin_actor),
):
    event = db.query(models.Event).filter(models.Event.id == event_id).first()
    if not event:
        raise HTTPException(status_code=404, detail="Event not found")
    db_pass = models.Pass(event_id=event_id, sold=0, **ticket_pass.model_dump())
    db.add(db_pass)
    db.commit()
    db.refresh(db_pass)
    return db_pass


# ------------- Discount registry -------------

@app.post("/discount-codes", response_model=schemas.DiscountCodeRecord)
def create_discount_code(
    body: schemas.DiscountCodeRecord,
    repo: SqlAlchemyRepository = Depends(get_repo),
    actor: dict = Depends(get_admin_actor),
):
    discount = body.root
    try:
        normalized = normalize_code(discount.code)
    except InvalidDiscountCode as exc:
        raise http_error(exc) from exc
    if discount.scope_event_id and repo.get_event(discount.scope_event_id) is None:
        raise HTTPException(status_code=404, detail="Event not found")
    try:
        created = repo.add_discount_code(discount.model_copy(update={"code": normalized, "current_usage": 0}))
    except IntegrityError as exc:
        repo.db.rollback()
        raise HTTPException(status_code=409, detail="Discount code already exists") from exc
    except TransientError as exc:
        raise http_error(exc) from exc
    logger.info("discount code %s (%s) created by %s", created.code, created.kind, actor["username"])
    return schemas.DiscountCodeRecord(created)


@app.get("/discount-codes", response_model=List[schemas.DiscountCodeRecord])
def list_discount_codes(
    active: bool = False,
    repo: SqlAlchemyRepository = Depends(get_repo),
    actor: dict = Depends(get_admin_actor),
):
    return [schemas.DiscountCodeRecord(d) for d in repo.list_discount_codes(active_only=active)]


@app.post("/discount-codes/{code}/deactivate", response_model=schemas.DiscountCodeRecord)
def deactivate_discount_code(
    code: str,
    repo: SqlAlchemyRepository = Depends(get_repo),
    actor: dict = Depends(get_admin_actor),
):
    try:
        discount = repo.deactivate_discount_code(normalize_code(code))
    except TicketingError as exc:
        raise http_error(exc) from exc
    if discount is None:
        raise HTTPException(status_code=404, detail="Discount code not found")
    return schemas.DiscountCodeRecord(discount)


# ------------- Student verification -------------

@app.post("/student-verifications", response_model=schemas.StudentVerification)
def submit_student_verification(req: schemas.StudentVerificationCreate, db: Session = Depends(get_db)):
    verification = models.StudentVerification(
        **req.model_dump(exclude={"student_email"}),
        student_email=req.student_email.strip().lower(),
        status="pending",
    )
    db.add(verification)
    db.commit()
    db.refresh(verification)
    return verification


@app.put("/student-verifications/{verification_id}", response_model=schemas.StudentVerification)
def review_student_verification(
    verification_id: str,
    req: schemas.StudentVerificationReview,
    db: Session = Depends(get_db),
    actor: dict = Depends(get_admin_actor),
):
    verification = (
        db.query(models.StudentVerification)
        .filter(models.StudentVerification.id == verification_id)
        .first()
    )
    if not verification:
        raise HTTPException(status_code=404, detail="Verification not found")
    verification.status = req.status
    verification.notes = req.notes
    verification.verified_by = actor["username"]
    verification.updated_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(verification)
    return verification


# ------------- Pricing -------------

@app.post("/discounts/validate", response_model=schemas.DiscountValidateResponse)
def validate_discount(req: schemas.DiscountValidateRequest, repo: SqlAlchemyRepository = Depends(get_repo)):
    resolver = DiscountResolver(repo)
    try:
        resolved = resolver.resolve(req.code, req.event_id, req.order_amount, req.customer_email)
    except DiscountNotFound as exc:
        return schemas.DiscountValidateResponse(
            is_valid=False, code=exc.code, reason="not_found", message="Invalid discount code"
        )
    except DiscountIneligible as exc:
        return schemas.DiscountValidateResponse(
            is_valid=False, code=exc.code, reason=exc.reason.value, message=str(exc)
        )
    except TicketingError as exc:
        raise http_error(exc) from exc

    applied = resolved.applied()
    return schemas.DiscountValidateResponse(
        is_valid=True,
        code=applied.code,
        kind=applied.kind,
        discount_class=applied.discount_class,
        discount_amount=applied.amount,
        owner_id=applied.owner_id,
        message="Discount applied",
    )


@app.post("/pricing/quote", response_model=schemas.PricingResult)
def quote_price(req: schemas.PricingQuoteRequest, service: BookingService = Depends(get_booking_service)):
    try:
        return service.quote(
            req.event_id,
            req.pass_id,
            req.quantity,
            influencer_code=req.influencer_code,
            promo_code=req.promo_code,
            customer_email=req.customer_email,
        )
    except TicketingError as exc:
        raise http_error(exc) from exc


# ------------- Bookings & payment -------------

@app.post("/bookings", response_model=schemas.Booking)
def create_booking(req: schemas.BookingCreate, service: BookingService = Depends(get_booking_service)):
    try:
        return service.create_booking(req)
    except TicketingError as exc:
        raise http_error(exc) from exc


@app.get("/bookings/{booking_id}", response_model=schemas.Booking)
def get_booking(booking_id: str, repo: SqlAlchemyRepository = Depends(get_repo)):
    booking = repo.get_booking(booking_id)
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")
    return booking


@app.post("/bookings/{booking_id}/cancel", response_model=schemas.Booking)
def cancel_booking(booking_id: str, service: BookingService = Depends(get_booking_service)):
    try:
        return service.cancel_booking(booking_id)
    except TicketingError as exc:
        raise http_error(exc) from exc


@app.post("/payments/webhook", response_model=schemas.PaymentWebhookResponse)
def payment_webhook(req: schemas.PaymentWebhookRequest, service: BookingService = Depends(get_booking_service)):
    try:
        if req.status == "captured":
            payload = service.confirm_booking(req.booking_id, req.transaction_ref)
            booking = service.repo.get_booking(req.booking_id)
            return schemas.PaymentWebhookResponse(
                status="confirmed", booking=booking, ticket=ticket_response(payload)
            )
        booking = service.cancel_booking(req.booking_id)
        return schemas.PaymentWebhookResponse(status="cancelled", booking=booking)
    except TicketingError as exc:
        raise http_error(exc) from exc


@app.get("/bookings/{booking_id}/ticket", response_model=schemas.TicketResponse)
def get_ticket(booking_id: str, service: BookingService = Depends(get_booking_service)):
    try:
        return ticket_response(service.ticket_payload(booking_id))
    except TicketingError as exc:
        raise http_error(exc) from exc


# ------------- Gate -------------

@app.post("/verify-ticket", response_model=schemas.VerificationResult)
def verify_ticket(
    req: schemas.ScanRequest,
    verifier: CheckInVerifier = Depends(get_verifier),
    scanner: dict = Depends(get_scanner_user),
):
    try:
        return verifier.verify(req, guard_id=scanner["username"])
    except TicketingError as exc:
        raise http_error(exc) from exc


@app.get("/events/{event_id}/attendance", response_model=List[schemas.AttendanceRecord])
def list_attendance(
    event_id: str,
    repo: SqlAlchemyRepository = Depends(get_repo),
    actor: dict = Depends(get_admin_actor),
):
    return repo.list_attendance(event_id)


@app.get("/events/{event_id}/attendance/stats", response_model=schemas.AttendanceStats)
def attendance_stats(
    event_id: str,
    repo: SqlAlchemyRepository = Depends(get_repo),
    actor: dict = Depends(get_admin_actor),
):
    if repo.get_event(event_id) is None:
        raise HTTPException(status_code=404, detail="Event not found")
    records = repo.list_attendance(event_id)
    confirmed = repo.count_confirmed_bookings(event_id)
    return schemas.AttendanceStats(
        event_id=event_id,
        confirmed_bookings=confirmed,
        admitted_bookings=len(records),
        admitted_heads=sum(r.quantity_admitted for r in records),
        attendance_rate=round(len(records) / confirmed, 4) if confirmed else 0.0,
    )


def csv_response(filename: str, header: list, rows) -> StreamingResponse:
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(header)
    writer.writerows(rows)
    output.seek(0)
    return StreamingResponse(
        iter([output.getvalue()]),
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@app.get("/events/{event_id}/attendance/export")
def export_attendance(
    event_id: str,
    repo: SqlAlchemyRepository = Depends(get_repo),
    actor: dict = Depends(get_admin_actor),
):
    if repo.get_event(event_id) is None:
        raise HTTPException(status_code=404, detail="Event not found")
    records = repo.list_attendance(event_id)
    logger.info("attendance export for event %s by %s, %s rows", event_id, actor["username"], len(records))
    return csv_response(
        f"attendance-{event_id}.csv",
        ["booking_id", "check_in_time", "quantity_admitted", "scanned_by_guard_id", "guard_name", "location"],
        (
            [r.booking_id, r.check_in_time.isoformat(), r.quantity_admitted, r.scanned_by_guard_id, r.guard_name, r.location]
            for r in records
        ),
    )


@app.get("/events/{event_id}/bookings/export")
def export_bookings(
    event_id: str,
    repo: SqlAlchemyRepository = Depends(get_repo),
    actor: dict = Depends(get_admin_actor),
):
    if repo.get_event(event_id) is None:
        raise HTTPException(status_code=404, detail="Event not found")
    bookings = repo.list_bookings(event_id)
    logger.info("bookings export for event %s by %s, %s rows", event_id, actor["username"], len(bookings))
    return csv_response(
        f"bookings-{event_id}.csv",
        [
            "booking_id", "customer_name", "customer_email", "customer_phone", "pass_id", "quantity",
            "original_amount", "discount_amount", "final_amount", "status", "discount_codes", "payment_reference",
        ],
        (
            [
                b.id, b.customer_name, b.customer_email, b.customer_phone, b.pass_id, b.quantity,
                b.original_amount, b.discount_amount, b.final_amount, b.status.value,
                " ".join(d.code for d in b.applied_discounts), b.payment_reference,
            ]
            for b in bookings
        ),
    )


@app.get("/influencers/{owner_id}/referrals", response_model=schemas.ReferralSummary)
def influencer_referrals(
    owner_id: str,
    repo: SqlAlchemyRepository = Depends(get_repo),
    actor: dict = Depends(get_admin_actor),
):
    referrals = repo.list_referrals(owner_id)
    return schemas.ReferralSummary(
        owner_id=owner_id,
        total_referrals=len(referrals),
        total_commission=sum(r.commission_amount for r in referrals),
        pending_commission=sum(r.commission_amount for r in referrals if r.status == "pending"),
        referrals=referrals,
    )
