from __future__ import annotations

import time as clock
from calendar import monthrange
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from functools import lru_cache
from http import HTTPStatus
from typing import Any, Literal, Optional, Union
from uuid import uuid4

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field, ValidationError, model_validator
from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from isp_crm import billing, expiration, payroll
from isp_crm.config import settings
from isp_crm.db import Base, SessionLocal, engine
from isp_crm.logging_config import get_logger, setup_logging
from isp_crm.models import (
    AppSetting,
    AttendanceRecord,
    Customer,
    Department,
    Employee,
    ExpirationLog,
    InventoryItem,
    InventoryTransaction,
    InventoryTransactionLine,
    LeaveRequest,
    Lead,
    MikrotikAccount,
    MikrotikInvoice,
    MikrotikPlan,
    MikrotikUsage,
    MpesaTransaction,
    Payment,
    PayrollRecord,
    PerformanceReview,
    RevokedToken,
    SmsLog,
    TeamGroup,
    TeamMember,
    Tenant,
    Ticket,
    TicketReply,
    User,
)
from isp_crm.mpesa import MpesaClient, MpesaError, MpesaNotConfigured, normalize_phone
from isp_crm.security import TokenError, create_access_token, decode_access_token, hash_password, verify_password
from isp_crm.sms import SmsError, SmsNotConfigured, SmsSender, valid_recipients

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    if settings.auto_create_tables:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables ensured")
    logger.info("ISP CRM API ready")
    yield
    logger.info("ISP CRM API shutting down")


app = FastAPI(title="ISP CRM", lifespan=lifespan)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        started = clock.perf_counter()
        response = await call_next(request)
        elapsed = clock.perf_counter() - started
        response.headers["X-Process-Time"] = f"{elapsed:.4f}"
        logger.info(
            "%s %s -> %d (%.1f ms)",
            request.method,
            request.url.path,
            response.status_code,
            elapsed * 1000,
        )
        return response


app.add_middleware(RequestLoggingMiddleware)


def _error(status_code: int, message: str, error: Any = None, headers: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "message": message,
            "error": error if error is not None else HTTPStatus(status_code).phrase,
        },
        headers=headers,
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _error(exc.status_code, str(exc.detail), headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error(400, "invalid request", jsonable_encoder(exc.errors()))


@app.exception_handler(IntegrityError)
async def integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    logger.warning("Integrity error on %s %s: %s", request.method, request.url.path, exc.orig)
    return _error(409, "conflict", str(exc.orig))


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _error(500, "internal server error", type(exc).__name__)


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_tenant_id(x_tenant_id: Optional[int] = Header(default=None)) -> Optional[int]:
    return x_tenant_id


bearer_scheme = HTTPBearer(auto_error=False)


def get_current_claims(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> dict:
    if credentials is None:
        raise HTTPException(status_code=401, detail="missing bearer token")
    try:
        claims = decode_access_token(credentials.credentials)
    except TokenError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    if db.get(RevokedToken, claims["jti"]):
        raise HTTPException(status_code=401, detail="token revoked")
    return claims


def get_current_user(claims: dict = Depends(get_current_claims), db: Session = Depends(get_db)) -> User:
    user = db.get(User, int(claims["sub"]))
    if not user or not user.active:
        raise HTTPException(status_code=401, detail="invalid token")
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    if user.role != "admin":
        raise HTTPException(status_code=403, detail="admin role required")
    return user


@lru_cache
def get_mpesa_client() -> MpesaClient:
    return MpesaClient()


@lru_cache
def get_sms_sender() -> SmsSender:
    return SmsSender()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _money(value) -> Optional[float]:
    return float(value) if value is not None else None


def _ok(message: str, **entities) -> dict:
    return {"success": True, "message": message, **entities}


def _scoped(query, model, tenant_id: Optional[int]):
    if tenant_id is not None:
        query = query.filter(model.tenant_id == tenant_id)
    return query


def _get_or_404(db: Session, model, obj_id: int, label: str, tenant_id: Optional[int] = None):
    obj = db.get(model, obj_id)
    if not obj or (tenant_id is not None and getattr(obj, "tenant_id", tenant_id) != tenant_id):
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return obj


def _apply_changes(db: Session, model, obj_id: int, changes: dict) -> None:
    db.execute(update(model).where(model.id == obj_id).values(**changes, updated_at=_now()))


def _validated(schema: type[BaseModel], value: Any) -> dict:
    try:
        return schema.model_validate(value).model_dump()
    except ValidationError as exc:
        raise RequestValidationError(exc.errors(include_url=False)) from exc


@app.get("/", tags=["root"])
def read_root() -> dict:
    return {"success": True, "message": "ISP CRM API", "status": "ok"}


@app.get("/health", tags=["health"])
def health_check() -> dict:
    return {"success": True, "message": "healthy", "status": "healthy"}


@app.get("/api/ping", tags=["health"])
def ping() -> dict:
    return {"success": True, "message": "pong", "timestamp": _now().isoformat()}


def _tenant_out(tenant: Tenant) -> dict:
    return {
        "id": tenant.id,
        "name": tenant.name,
        "status": tenant.status,
        "created_at": _iso(tenant.created_at),
    }


class TenantCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {"name": "Skynet Broadband", "is_active": True}}}
    name: str = Field(min_length=1)
    is_active: bool = True


@app.post("/api/tenants", status_code=201, tags=["Tenants"])
def create_tenant(payload: TenantCreate, db: Session = Depends(get_db)) -> dict:
    tenant = Tenant(name=payload.name, status="ACTIVE" if payload.is_active else "INACTIVE", created_at=_now())
    db.add(tenant)
    db.commit()
    db.refresh(tenant)
    return _ok("tenant created", tenant=_tenant_out(tenant))


@app.get("/api/tenants", tags=["Tenants"])
def list_tenants(status: Optional[str] = Query(default=None), db: Session = Depends(get_db)) -> dict:
    query = db.query(Tenant)
    if status is not None:
        query = query.filter(Tenant.status == status)
    return _ok("tenants retrieved", tenants=[_tenant_out(t) for t in query.order_by(Tenant.id).all()])


@app.get("/api/tenants/{tenant_id}", tags=["Tenants"])
def get_tenant(tenant_id: int, db: Session = Depends(get_db)) -> dict:
    tenant = _get_or_404(db, Tenant, tenant_id, "tenant")
    return _ok("tenant retrieved", tenant=_tenant_out(tenant))


UserRole = Literal["admin", "support", "technician", "customer"]


def _user_out(user: User) -> dict:
    return {
        "id": user.id,
        "tenant_id": user.tenant_id,
        "name": user.name,
        "email": user.email,
        "phone": user.phone,
        "role": user.role,
        "active": user.active,
        "created_at": _iso(user.created_at),
        "updated_at": _iso(user.updated_at),
    }


class LoginRequest(BaseModel):
    model_config = {"json_schema_extra": {"example": {"identifier": "admin@example.com", "password": "secret123"}}}
    identifier: Optional[str] = None
    password: Optional[str] = None


@app.post("/api/auth/login", tags=["Auth"])
def login(payload: LoginRequest, db: Session = Depends(get_db)) -> dict:
    if not payload.identifier or not payload.password:
        raise HTTPException(status_code=400, detail="identifier and password are required")
    identifier = payload.identifier.strip()
    user = db.query(User).filter(or_(User.email == identifier, User.phone == identifier)).first()
    if not user or not user.active or not verify_password(payload.password, user.password_hash):
        logger.info("Rejected login for %s", identifier)
        raise HTTPException(status_code=401, detail="invalid credentials")
    token, claims = create_access_token(user.id, user.role, user.tenant_id)
    logger.info("User %s logged in", user.id)
    return _ok(
        "login successful",
        user=_user_out(user),
        token=token,
        expires_at=datetime.fromtimestamp(claims["exp"], timezone.utc).isoformat(),
    )


class RegisterRequest(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"name": "Jane Wanjiku", "email": "jane@example.com", "phone": "0712345678", "password": "secret123"}
        }
    }
    name: str = Field(min_length=1)
    email: str = Field(min_length=3)
    phone: Optional[str] = None
    password: str = Field(min_length=6)


@app.post("/api/auth/register", status_code=201, tags=["Auth"])
def register(
    payload: RegisterRequest,
    tenant_id: Optional[int] = Depends(get_tenant_id),
    db: Session = Depends(get_db),
) -> dict:
    if db.query(User.id).filter(User.email == payload.email).first():
        raise HTTPException(status_code=409, detail="email already registered")
    user = User(
        tenant_id=tenant_id,
        name=payload.name,
        email=payload.email,
        phone=payload.phone,
        role="customer",
        password_hash=hash_password(payload.password),
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return _ok("registration successful", user=_user_out(user))


@app.post("/api/auth/logout", tags=["Auth"])
def logout(claims: dict = Depends(get_current_claims), db: Session = Depends(get_db)) -> dict:
    db.add(RevokedToken(jti=claims["jti"], user_id=int(claims["sub"]), revoked_at=_now()))
    db.commit()
    return _ok("logged out")


@app.get("/api/auth/verify", tags=["Auth"])
def verify_token(user: User = Depends(get_current_user)) -> dict:
    return _ok("token valid", valid=True, user=_user_out(user))


@app.get("/api/auth/me", tags=["Auth"])
def current_user(user: User = Depends(get_current_user)) -> dict:
    return _ok("user retrieved", user=_user_out(user))


class UserCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"name": "Support Agent", "email": "agent@example.com", "role": "support", "password": "secret123"}
        }
    }
    name: str = Field(min_length=1)
    email: str = Field(min_length=3)
    phone: Optional[str] = None
    role: UserRole = "support"
    password: str = Field(min_length=6)
    tenant_id: Optional[int] = None
    active: bool = True


class UserUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    role: Optional[UserRole] = None
    password: Optional[str] = Field(default=None, min_length=6)
    active: Optional[bool] = None


@app.get("/api/auth/users", tags=["Auth"])
def list_users(admin: User = Depends(require_admin), db: Session = Depends(get_db)) -> dict:
    users = db.query(User).order_by(User.id).all()
    return _ok("users retrieved", users=[_user_out(u) for u in users])


@app.post("/api/auth/users", status_code=201, tags=["Auth"])
def create_user(payload: UserCreate, admin: User = Depends(require_admin), db: Session = Depends(get_db)) -> dict:
    user = User(
        tenant_id=payload.tenant_id if payload.tenant_id is not None else admin.tenant_id,
        name=payload.name,
        email=payload.email,
        phone=payload.phone,
        role=payload.role,
        password_hash=hash_password(payload.password),
        active=payload.active,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return _ok("user created", user=_user_out(user))


@app.put("/api/auth/users/{user_id}", tags=["Auth"])
def update_user(
    user_id: int, payload: UserUpdate, admin: User = Depends(require_admin), db: Session = Depends(get_db)
) -> dict:
    user = _get_or_404(db, User, user_id, "user")
    changes = payload.model_dump(exclude_unset=True)
    password = changes.pop("password", None)
    if password:
        changes["password_hash"] = hash_password(password)
    _apply_changes(db, User, user.id, changes)
    db.commit()
    db.refresh(user)
    return _ok("user updated", user=_user_out(user))


@app.delete("/api/auth/users/{user_id}", tags=["Auth"])
def delete_user(user_id: int, admin: User = Depends(require_admin), db: Session = Depends(get_db)) -> dict:
    user = _get_or_404(db, User, user_id, "user")
    if user.id == admin.id:
        raise HTTPException(status_code=400, detail="cannot delete the current user")
    db.query(RevokedToken).filter(RevokedToken.user_id == user.id).delete(synchronize_session=False)
    db.delete(user)
    db.commit()
    return _ok("user deleted")


CustomerStatus = Literal["active", "inactive", "suspended"]


def _customer_out(customer: Customer) -> dict:
    return {
        "id": customer.id,
        "tenant_id": customer.tenant_id,
        "name": customer.name,
        "email": customer.email,
        "phone": customer.phone,
        "account_type": customer.account_type,
        "status": customer.status,
        "registered_at": _iso(customer.registered_at),
        "updated_at": _iso(customer.updated_at),
    }


class CustomerCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"name": "John Otieno", "phone": "0722000111", "email": "john@example.com", "account_type": "residential"}
        }
    }
    name: str = Field(min_length=1)
    phone: str = Field(min_length=1)
    email: Optional[str] = None
    account_type: str = "residential"
    status: CustomerStatus = "active"


class CustomerUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    phone: Optional[str] = Field(default=None, min_length=1)
    email: Optional[str] = None
    account_type: Optional[str] = None
    status: Optional[CustomerStatus] = None


@app.post("/api/customers", status_code=201, tags=["Customers"])
def create_customer(
    payload: CustomerCreate,
    tenant_id: Optional[int] = Depends(get_tenant_id),
    db: Session = Depends(get_db),
) -> dict:
    customer = Customer(tenant_id=tenant_id, **payload.model_dump())
    db.add(customer)
    db.commit()
    db.refresh(customer)
    logger.info("Created customer %s", customer.id)
    return _ok("customer created", customer=_customer_out(customer))


@app.get("/api/customers", tags=["Customers"])
def list_customers(
    status: Optional[str] = Query(default=None),
    tenant_id: Optional[int] = Depends(get_tenant_id),
    db: Session = Depends(get_db),
) -> dict:
    query = _scoped(db.query(Customer), Customer, tenant_id)
    if status is not None:
        query = query.filter(Customer.status == status)
    customers = query.order_by(Customer.registered_at.desc(), Customer.id.desc()).all()
    return _ok("customers retrieved", customers=[_customer_out(c) for c in customers])


@app.get("/api/customers/{customer_id}", tags=["Customers"])
def get_customer(
    customer_id: int, tenant_id: Optional[int] = Depends(get_tenant_id), db: Session = Depends(get_db)
) -> dict:
    customer = _get_or_404(db, Customer, customer_id, "customer", tenant_id)
    return _ok("customer retrieved", customer=_customer_out(customer))


@app.put("/api/customers/{customer_id}", tags=["Customers"])
def update_customer(
    customer_id: int,
    payload: CustomerUpdate,
    tenant_id: Optional[int] = Depends(get_tenant_id),
    db: Session = Depends(get_db),
) -> dict:
    customer = _get_or_404(db, Customer, customer_id, "customer", tenant_id)
    _apply_changes(db, Customer, customer.id, payload.model_dump(exclude_unset=True))
    db.commit()
    db.refresh(customer)
    return _ok("customer updated", customer=_customer_out(customer))


@app.delete("/api/customers/{customer_id}", tags=["Customers"])
def delete_customer(
    customer_id: int, tenant_id: Optional[int] = Depends(get_tenant_id), db: Session = Depends(get_db)
) -> dict:
    customer = _get_or_404(db, Customer, customer_id, "customer", tenant_id)
    ticket_ids = [row.id for row in db.query(Ticket.id).filter(Ticket.customer_id == customer.id)]
    if ticket_ids:
        db.query(TicketReply).filter(TicketReply.ticket_id.in_(ticket_ids)).delete(synchronize_session=False)
        db.query(Lead).filter(Lead.converted_ticket_id.in_(ticket_ids)).update(
            {Lead.converted_ticket_id: None}, synchronize_session=False
        )
        db.query(Ticket).filter(Ticket.id.in_(ticket_ids)).delete(synchronize_session=False)
    db.delete(customer)
    db.commit()
    logger.info("Deleted customer %s and %d ticket(s)", customer_id, len(ticket_ids))
    return _ok("customer deleted")


TICKET_SETTINGS_KEY = "ticket_settings"
TICKET_COUNTER_LIMIT = 1_000_000
TicketStatus = Literal["open", "in-progress", "pending", "resolved", "closed"]
TicketPriority = Literal["low", "medium", "high"]
RESOLVED_STATUSES = ("resolved", "closed")


class TicketSettings(BaseModel):
    prefix: str = Field(min_length=1, max_length=16)
    counter: int = Field(default=0, ge=0, lt=TICKET_COUNTER_LIMIT)


def _next_ticket_number(db: Session) -> str:
    setting = db.get(AppSetting, TICKET_SETTINGS_KEY)
    if setting is None:
        setting = AppSetting(
            key=TICKET_SETTINGS_KEY,
            value={"prefix": settings.ticket_prefix, "counter": 0},
            category="tickets",
        )
        db.add(setting)
    value = dict(setting.value or {})
    counter = int(value.get("counter", 0)) + 1
    if counter >= TICKET_COUNTER_LIMIT:
        counter = 1
    value["counter"] = counter
    # Reassigned so the JSON column is flagged dirty.
    setting.value = value
    setting.updated_at = _now()
    return f"{value.get('prefix') or settings.ticket_prefix}-{counter:06d}"


def _ticket_out(ticket: Ticket) -> dict:
    return {
        "id": ticket.id,
        "tenant_id": ticket.tenant_id,
        "ticket_number": ticket.ticket_number,
        "customer_id": ticket.customer_id,
        "user_id": ticket.user_id,
        "subject": ticket.subject,
        "description": ticket.description,
        "category": ticket.category,
        "priority": ticket.priority,
        "status": ticket.status,
        "resolution": ticket.resolution,
        "resolved_at": _iso(ticket.resolved_at),
        "created_at": _iso(ticket.created_at),
        "updated_at": _iso(ticket.updated_at),
    }


def _open_ticket(
    db: Session,
    customer: Customer,
    subject: str,
    description: str,
    category: str = "general",
    priority: str = "medium",
    user_id: Optional[int] = None,
    status: str = "open",
) -> Ticket:
    ticket = Ticket(
        tenant_id=customer.tenant_id,
        ticket_number=_next_ticket_number(db),
        customer_id=customer.id,
        user_id=user_id,
        subject=subject,
        description=description,
        category=category,
        priority=priority,
        status=status,
        resolved_at=_now() if status in RESOLVED_STATUSES else None,
    )
    db.add(ticket)
    db.flush()
    return ticket


class TicketCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "customer_id": 1,
                "subject": "No internet since morning",
                "description": "Router shows red LOS light",
                "category": "technical",
                "priority": "high",
            }
        }
    }
    customer_id: int
    subject: str = Field(min_length=1)
    description: str = Field(min_length=1)
    category: str = "general"
    priority: TicketPriority = "medium"
    status: TicketStatus = "open"
    user_id: Optional[int] = None


class TicketUpdate(BaseModel):
    subject: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    category: Optional[str] = None
    priority: Optional[TicketPriority] = None
    status: Optional[TicketStatus] = None
    resolution: Optional[str] = None
    user_id: Optional[int] = None


class TicketAssign(BaseModel):
    model_config = {"json_schema_extra": {"example": {"user_id": 2}}}
    user_id: int


@app.post("/api/tickets", status_code=201, tags=["Tickets"])
def create_ticket(
    payload: TicketCreate,
    tenant_id: Optional[int] = Depends(get_tenant_id),
    db: Session = Depends(get_db),
) -> dict:
    customer = _get_or_404(db, Customer, payload.customer_id, "customer", tenant_id)
    if payload.user_id is not None:
        _get_or_404(db, User, payload.user_id, "user")
    ticket = _open_ticket(
        db,
        customer,
        payload.subject,
        payload.description,
        payload.category,
        payload.priority,
        payload.user_id,
        payload.status,
    )
    db.commit()
    db.refresh(ticket)
    logger.info("Opened ticket %s for customer %s", ticket.ticket_number, customer.id)
    return _ok("ticket created", ticket=_ticket_out(ticket))


@app.get("/api/tickets", tags=["Tickets"])
def list_tickets(
    status: Optional[str] = Query(default=None),
    priority: Optional[str] = Query(default=None),
    customer_id: Optional[int] = Query(default=None),
    user_id: Optional[int] = Query(default=None),
    tenant_id: Optional[int] = Depends(get_tenant_id),
    db: Session = Depends(get_db),
) -> dict:
    query = _scoped(db.query(Ticket), Ticket, tenant_id)
    if status is not None:
        query = query.filter(Ticket.status == status)
    if priority is not None:
        query = query.filter(Ticket.priority == priority)
    if customer_id is not None:
        query = query.filter(Ticket.customer_id == customer_id)
    if user_id is not None:
        query = query.filter(Ticket.user_id == user_id)
    tickets = query.order_by(Ticket.created_at.desc(), Ticket.id.desc()).all()
    return _ok("tickets retrieved", tickets=[_ticket_out(t) for t in tickets])


@app.get("/api/tickets/stats", tags=["Tickets"])
def ticket_stats(tenant_id: Optional[int] = Depends(get_tenant_id), db: Session = Depends(get_db)) -> dict:
    by_status = dict.fromkeys(("open", "in-progress", "pending", "resolved", "closed"), 0)
    by_priority = dict.fromkeys(("high", "medium", "low"), 0)
    rows = _scoped(db.query(Ticket.status, Ticket.priority, func.count(Ticket.id)), Ticket, tenant_id).group_by(
        Ticket.status, Ticket.priority
    )
    total = 0
    for status, priority, count in rows:
        total += count
        by_status[status] = by_status.get(status, 0) + count
        by_priority[priority] = by_priority.get(priority, 0) + count
    return _ok("ticket stats retrieved", stats={"total": total, "by_status": by_status, "by_priority": by_priority})


@app.get("/api/tickets/customer/{customer_id}", tags=["Tickets"])
def list_customer_tickets(
    customer_id: int, tenant_id: Optional[int] = Depends(get_tenant_id), db: Session = Depends(get_db)
) -> dict:
    customer = _get_or_404(db, Customer, customer_id, "customer", tenant_id)
    tickets = (
        db.query(Ticket)
        .filter(Ticket.customer_id == customer.id)
        .order_by(Ticket.created_at.desc(), Ticket.id.desc())
        .all()
    )
    return _ok("tickets retrieved", tickets=[_ticket_out(t) for t in tickets])


@app.get("/api/tickets/{ticket_id}", tags=["Tickets"])
def get_ticket(ticket_id: int, tenant_id: Optional[int] = Depends(get_tenant_id), db: Session = Depends(get_db)) -> dict:
    ticket = _get_or_404(db, Ticket, ticket_id, "ticket", tenant_id)
    return _ok("ticket retrieved", ticket=_ticket_out(ticket))


@app.put("/api/tickets/{ticket_id}", tags=["Tickets"])
def update_ticket(
    ticket_id: int,
    payload: TicketUpdate,
    tenant_id: Optional[int] = Depends(get_tenant_id),
    db: Session = Depends(get_db),
) -> dict:
    ticket = _get_or_404(db, Ticket, ticket_id, "ticket", tenant_id)
    changes = payload.model_dump(exclude_unset=True)
    if changes.get("user_id") is not None:
        _get_or_404(db, User, changes["user_id"], "user")
    if "status" in changes:
        if changes["status"] in RESOLVED_STATUSES:
            if ticket.status not in RESOLVED_STATUSES or ticket.resolved_at is None:
                changes["resolved_at"] = _now()
        else:
            changes["resolved_at"] = None
    _apply_changes(db, Ticket, ticket.id, changes)
    db.commit()
    db.refresh(ticket)
    return _ok("ticket updated", ticket=_ticket_out(ticket))


@app.delete("/api/tickets/{ticket_id}", tags=["Tickets"])
def delete_ticket(ticket_id: int, tenant_id: Optional[int] = Depends(get_tenant_id), db: Session = Depends(get_db)) -> dict:
    ticket = _get_or_404(db, Ticket, ticket_id, "ticket", tenant_id)
    db.query(TicketReply).filter(TicketReply.ticket_id == ticket.id).delete(synchronize_session=False)
    db.query(Lead).filter(Lead.converted_ticket_id == ticket.id).update(
        {Lead.converted_ticket_id: None}, synchronize_session=False
    )
    db.delete(ticket)
    db.commit()
    return _ok("ticket deleted")


@app.post("/api/tickets/{ticket_id}/assign", tags=["Tickets"])
def assign_ticket(
    ticket_id: int,
    payload: TicketAssign,
    tenant_id: Optional[int] = Depends(get_tenant_id),
    db: Session = Depends(get_db),
) -> dict:
    ticket = _get_or_404(db, Ticket, ticket_id, "ticket", tenant_id)
    _get_or_404(db, User, payload.user_id, "user")
    _apply_changes(db, Ticket, ticket.id, {"user_id": payload.user_id})
    db.commit()
    db.refresh(ticket)
    return _ok("ticket assigned", ticket=_ticket_out(ticket))


def _reply_out(reply: TicketReply) -> dict:
    return {
        "id": reply.id,
        "ticket_id": reply.ticket_id,
        "user_id": reply.user_id,
        "message": reply.message,
        "is_internal": reply.is_internal,
        "created_at": _iso(reply.created_at),
    }


class TicketReplyCreate(BaseModel):
    model_config = {
        "json_schema_extra": {"example": {"ticket_id": 1, "user_id": 2, "message": "Technician dispatched", "is_internal": False}}
    }
    ticket_id: int
    user_id: int
    message: str = Field(min_length=1)
    is_internal: bool = False


@app.post("/api/ticket-replies", status_code=201, tags=["Tickets"])
def create_ticket_reply(
    payload: TicketReplyCreate,
    tenant_id: Optional[int] = Depends(get_tenant_id),
    db: Session = Depends(get_db),
) -> dict:
    ticket = _get_or_404(db, Ticket, payload.ticket_id, "ticket", tenant_id)
    _get_or_404(db, User, payload.user_id, "user")
    reply = TicketReply(**payload.model_dump(), created_at=_now())
    ticket.updated_at = _now()
    db.add(reply)
    db.commit()
    db.refresh(reply)
    return _ok("reply added", reply=_reply_out(reply))


@app.get("/api/tickets/{ticket_id}/replies", tags=["Tickets"])
def list_ticket_replies(
    ticket_id: int, tenant_id: Optional[int] = Depends(get_tenant_id), db: Session = Depends(get_db)
) -> dict:
    ticket = _get_or_404(db, Ticket, ticket_id, "ticket", tenant_id)
    replies = db.query(TicketReply).filter(TicketReply.ticket_id == ticket.id).order_by(TicketReply.id).all()
    return _ok("replies retrieved", replies=[_reply_out(r) for r in replies])


@app.get("/api/ticket-replies/{reply_id}", tags=["Tickets"])
def get_ticket_reply(reply_id: int, db: Session = Depends(get_db)) -> dict:
    reply = _get_or_404(db, TicketReply, reply_id, "reply")
    return _ok("reply retrieved", reply=_reply_out(reply))


@app.delete("/api/ticket-replies/{reply_id}", tags=["Tickets"])
def delete_ticket_reply(reply_id: int, db: Session = Depends(get_db)) -> dict:
    reply = _get_or_404(db, TicketReply, reply_id, "reply")
    db.delete(reply)
    db.commit()
    return _ok("reply deleted")


LeadStatus = Literal["new", "contacted", "qualified", "converted", "lost"]


def _lead_out(lead: Lead) -> dict:
    return {
        "id": lead.id,
        "tenant_id": lead.tenant_id,
        "name": lead.name,
        "email": lead.email,
        "phone": lead.phone,
        "company": lead.company,
        "source": lead.source,
        "status": lead.status,
        "notes": lead.notes,
        "converted_ticket_id": lead.converted_ticket_id,
        "created_at": _iso(lead.created_at),
        "updated_at": _iso(lead.updated_at),
    }


class LeadCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"name": "Acme Traders", "phone": "0733111222", "company": "Acme", "source": "website"}
        }
    }
    name: str = Field(min_length=1)
    phone: str = Field(min_length=1)
    email: Optional[str] = None
    company: Optional[str] = None
    source: Optional[str] = None
    status: LeadStatus = "new"
    notes: Optional[str] = None


class LeadUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    phone: Optional[str] = Field(default=None, min_length=1)
    email: Optional[str] = None
    company: Optional[str] = None
    source: Optional[str] = None
    status: Optional[LeadStatus] = None
    notes: Optional[str] = None


class LeadConvert(BaseModel):
    model_config = {"json_schema_extra": {"example": {"subject": "New installation", "priority": "high"}}}
    subject: Optional[str] = None
    description: Optional[str] = None
    category: str = "installation"
    priority: TicketPriority = "medium"


@app.post("/api/leads", status_code=201, tags=["Leads"])
def create_lead(payload: LeadCreate, tenant_id: Optional[int] = Depends(get_tenant_id), db: Session = Depends(get_db)) -> dict:
    lead = Lead(tenant_id=tenant_id, **payload.model_dump())
    db.add(lead)
    db.commit()
    db.refresh(lead)
    return _ok("lead created", lead=_lead_out(lead))


@app.get("/api/leads", tags=["Leads"])
def list_leads(
    status: Optional[str] = Query(default=None),
    tenant_id: Optional[int] = Depends(get_tenant_id),
    db: Session = Depends(get_db),
) -> dict:
    query = _scoped(db.query(Lead), Lead, tenant_id)
    if status is not None:
        query = query.filter(Lead.status == status)
    leads = query.order_by(Lead.created_at.desc(), Lead.id.desc()).all()
    return _ok("leads retrieved", leads=[_lead_out(lead) for lead in leads])


@app.get("/api/leads/{lead_id}", tags=["Leads"])
def get_lead(lead_id: int, tenant_id: Optional[int] = Depends(get_tenant_id), db: Session = Depends(get_db)) -> dict:
    lead = _get_or_404(db, Lead, lead_id, "lead", tenant_id)
    return _ok("lead retrieved", lead=_lead_out(lead))


@app.put("/api/leads/{lead_id}", tags=["Leads"])
def update_lead(
    lead_id: int,
    payload: LeadUpdate,
    tenant_id: Optional[int] = Depends(get_tenant_id),
    db: Session = Depends(get_db),
) -> dict:
    lead = _get_or_404(db, Lead, lead_id, "lead", tenant_id)
    _apply_changes(db, Lead, lead.id, payload.model_dump(exclude_unset=True))
    db.commit()
    db.refresh(lead)
    return _ok("lead updated", lead=_lead_out(lead))


@app.delete("/api/leads/{lead_id}", tags=["Leads"])
def delete_lead(lead_id: int, tenant_id: Optional[int] = Depends(get_tenant_id), db: Session = Depends(get_db)) -> dict:
    lead = _get_or_404(db, Lead, lead_id, "lead", tenant_id)
    db.delete(lead)
    db.commit()
    return _ok("lead deleted")


@app.post("/api/leads/{lead_id}/convert-to-ticket", status_code=201, tags=["Leads"])
def convert_lead_to_ticket(
    lead_id: int,
    payload: Optional[LeadConvert] = None,
    tenant_id: Optional[int] = Depends(get_tenant_id),
    db: Session = Depends(get_db),
) -> dict:
    payload = payload or LeadConvert()
    lead = _get_or_404(db, Lead, lead_id, "lead", tenant_id)
    if lead.status == "converted" or lead.converted_ticket_id is not None:
        raise HTTPException(status_code=409, detail="lead already converted")

    matches = [Customer.phone == lead.phone]
    if lead.email:
        matches.append(Customer.email == lead.email)
    customer = db.query(Customer).filter(Customer.tenant_id == lead.tenant_id, or_(*matches)).first()
    if customer is None:
        if db.query(Customer.id).filter(or_(*matches)).first():
            raise HTTPException(status_code=409, detail="lead contact belongs to another tenant's customer")
        customer = Customer(tenant_id=lead.tenant_id, name=lead.name, phone=lead.phone, email=lead.email)
        db.add(customer)
        db.flush()

    ticket = _open_ticket(
        db,
        customer,
        payload.subject or f"Lead follow-up: {lead.company or lead.name}",
        payload.description or lead.notes or f"Converted from lead #{lead.id}",
        payload.category,
        payload.priority,
    )
    lead.status = "converted"
    lead.converted_ticket_id = ticket.id
    lead.updated_at = _now()
    db.commit()
    db.refresh(ticket)
    logger.info("Converted lead %s into ticket %s", lead.id, ticket.ticket_number)
    return _ok("lead converted", lead=_lead_out(lead), ticket=_ticket_out(ticket), customer=_customer_out(customer))


EmployeeStatus = Literal["active", "inactive", "on-leave", "terminated"]


def _employee_out(employee: Employee) -> dict:
    return {
        "id": employee.id,
        "tenant_id": employee.tenant_id,
        "user_id": employee.user_id,
        "first_name": employee.first_name,
        "last_name": employee.last_name,
        "email": employee.email,
        "phone": employee.phone,
        "position": employee.position,
        "department": employee.department,
        "salary": _money(employee.salary),
        "hire_date": _iso(employee.hire_date),
        "status": employee.status,
        "emergency_contact": employee.emergency_contact,
        "created_at": _iso(employee.created_at),
        "updated_at": _iso(employee.updated_at),
    }


class EmployeeCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "first_name": "Mary",
                "last_name": "Akinyi",
                "email": "mary@example.com",
                "phone": "0711222333",
                "position": "Field Technician",
                "department": "Technical",
                "salary": 45000,
                "hire_date": "2024-03-01",
            }
        }
    }
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    email: str = Field(min_length=3)
    phone: str = Field(min_length=1)
    position: Optional[str] = None
    department: Optional[str] = None
    salary: Optional[Decimal] = Field(default=None, ge=0)
    hire_date: Optional[date] = None
    status: EmployeeStatus = "active"
    emergency_contact: Optional[str] = None
    user_id: Optional[int] = None


class EmployeeUpdate(BaseModel):
    first_name: Optional[str] = Field(default=None, min_length=1)
    last_name: Optional[str] = Field(default=None, min_length=1)
    email: Optional[str] = None
    phone: Optional[str] = None
    position: Optional[str] = None
    department: Optional[str] = None
    salary: Optional[Decimal] = Field(default=None, ge=0)
    hire_date: Optional[date] = None
    status: Optional[EmployeeStatus] = None
    emergency_contact: Optional[str] = None
    user_id: Optional[int] = None


@app.post("/api/employees", status_code=201, tags=["Employees"])
def create_employee(
    payload: EmployeeCreate,
    tenant_id: Optional[int] = Depends(get_tenant_id),
    db: Session = Depends(get_db),
) -> dict:
    employee = Employee(tenant_id=tenant_id, **payload.model_dump())
    db.add(employee)
    db.commit()
    db.refresh(employee)
    return _ok("employee created", employee=_employee_out(employee))


@app.get("/api/employees", tags=["Employees"])
def list_employees(
    status: Optional[str] = Query(default=None),
    department: Optional[str] = Query(default=None),
    tenant_id: Optional[int] = Depends(get_tenant_id),
    db: Session = Depends(get_db),
) -> dict:
    query = _scoped(db.query(Employee), Employee, tenant_id)
    if status is not None:
        query = query.filter(Employee.status == status)
    if department is not None:
        query = query.filter(Employee.department == department)
    employees = query.order_by(Employee.id).all()
    return _ok("employees retrieved", employees=[_employee_out(e) for e in employees])


@app.get("/api/employees/{employee_id}", tags=["Employees"])
def get_employee(employee_id: int, tenant_id: Optional[int] = Depends(get_tenant_id), db: Session = Depends(get_db)) -> dict:
    employee = _get_or_404(db, Employee, employee_id, "employee", tenant_id)
    return _ok("employee retrieved", employee=_employee_out(employee))


@app.put("/api/employees/{employee_id}", tags=["Employees"])
def update_employee(
    employee_id: int,
    payload: EmployeeUpdate,
    tenant_id: Optional[int] = Depends(get_tenant_id),
    db: Session = Depends(get_db),
) -> dict:
    employee = _get_or_404(db, Employee, employee_id, "employee", tenant_id)
    # Unrecognised fields are dropped by the schema; an empty diff still bumps updated_at.
    _apply_changes(db, Employee, employee.id, payload.model_dump(exclude_unset=True))
    db.commit()
    db.refresh(employee)
    return _ok("employee updated", employee=_employee_out(employee))


@app.delete("/api/employees/{employee_id}", tags=["Employees"])
def delete_employee(employee_id: int, tenant_id: Optional[int] = Depends(get_tenant_id), db: Session = Depends(get_db)) -> dict:
    employee = _get_or_404(db, Employee, employee_id, "employee", tenant_id)
    for model in (TeamMember, AttendanceRecord, LeaveRequest, PayrollRecord, PerformanceReview):
        db.query(model).filter(model.employee_id == employee.id).delete(synchronize_session=False)
    db.delete(employee)
    db.commit()
    return _ok("employee deleted")


def _department_out(department: Department) -> dict:
    return {
        "id": department.id,
        "name": department.name,
        "description": department.description,
        "manager": department.manager,
        "created_at": _iso(department.created_at),
        "updated_at": _iso(department.updated_at),
    }


class DepartmentCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {"name": "Technical", "description": "Installations and repairs"}}}
    name: str = Field(min_length=1)
    description: Optional[str] = None
    manager: Optional[str] = None


class DepartmentUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    manager: Optional[str] = None


def _ensure_unique_name(db: Session, model, name: str, label: str, exclude_id: Optional[int] = None) -> None:
    query = db.query(model.id).filter(model.name == name)
    if exclude_id is not None:
        query = query.filter(model.id != exclude_id)
    if query.first():
        raise HTTPException(status_code=409, detail=f"{label} already exists")


@app.post("/api/departments", status_code=201, tags=["Departments"])
def create_department(payload: DepartmentCreate, db: Session = Depends(get_db)) -> dict:
    _ensure_unique_name(db, Department, payload.name, "department")
    department = Department(**payload.model_dump())
    db.add(department)
    db.commit()
    db.refresh(department)
    return _ok("department created", department=_department_out(department))


@app.get("/api/departments", tags=["Departments"])
def list_departments(db: Session = Depends(get_db)) -> dict:
    departments = db.query(Department).order_by(Department.name).all()
    return _ok("departments retrieved", departments=[_department_out(d) for d in departments])


@app.get("/api/departments/{department_id}", tags=["Departments"])
def get_department(department_id: int, db: Session = Depends(get_db)) -> dict:
    department = _get_or_404(db, Department, department_id, "department")
    return _ok("department retrieved", department=_department_out(department))


@app.put("/api/departments/{department_id}", tags=["Departments"])
def update_department(department_id: int, payload: DepartmentUpdate, db: Session = Depends(get_db)) -> dict:
    department = _get_or_404(db, Department, department_id, "department")
    changes = payload.model_dump(exclude_unset=True)
    if changes.get("name"):
        _ensure_unique_name(db, Department, changes["name"], "department", exclude_id=department.id)
    _apply_changes(db, Department, department.id, changes)
    db.commit()
    db.refresh(department)
    return _ok("department updated", department=_department_out(department))


@app.delete("/api/departments/{department_id}", tags=["Departments"])
def delete_department(department_id: int, db: Session = Depends(get_db)) -> dict:
    department = _get_or_404(db, Department, department_id, "department")
    db.query(TeamMember).filter(TeamMember.department_id == department.id).update(
        {TeamMember.department_id: None}, synchronize_session=False
    )
    db.query(TeamGroup).filter(TeamGroup.department_id == department.id).update(
        {TeamGroup.department_id: None}, synchronize_session=False
    )
    db.delete(department)
    db.commit()
    return _ok("department deleted")


def _team_group_out(group: TeamGroup) -> dict:
    return {
        "id": group.id,
        "name": group.name,
        "description": group.description,
        "department_id": group.department_id,
        "manager": group.manager,
        "created_at": _iso(group.created_at),
        "updated_at": _iso(group.updated_at),
    }


class TeamGroupCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {"name": "Fibre Crew", "department_id": 1}}}
    name: str = Field(min_length=1)
    description: Optional[str] = None
    department_id: Optional[int] = None
    manager: Optional[str] = None


class TeamGroupUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    department_id: Optional[int] = None
    manager: Optional[str] = None


@app.post("/api/team-groups", status_code=201, tags=["Departments"])
def create_team_group(payload: TeamGroupCreate, db: Session = Depends(get_db)) -> dict:
    _ensure_unique_name(db, TeamGroup, payload.name, "team group")
    if payload.department_id is not None:
        _get_or_404(db, Department, payload.department_id, "department")
    group = TeamGroup(**payload.model_dump())
    db.add(group)
    db.commit()
    db.refresh(group)
    return _ok("team group created", team_group=_team_group_out(group))


@app.get("/api/team-groups", tags=["Departments"])
def list_team_groups(department_id: Optional[int] = Query(default=None), db: Session = Depends(get_db)) -> dict:
    query = db.query(TeamGroup)
    if department_id is not None:
        query = query.filter(TeamGroup.department_id == department_id)
    return _ok("team groups retrieved", team_groups=[_team_group_out(g) for g in query.order_by(TeamGroup.name).all()])


@app.get("/api/team-groups/{group_id}", tags=["Departments"])
def get_team_group(group_id: int, db: Session = Depends(get_db)) -> dict:
    group = _get_or_404(db, TeamGroup, group_id, "team group")
    return _ok("team group retrieved", team_group=_team_group_out(group))


@app.put("/api/team-groups/{group_id}", tags=["Departments"])
def update_team_group(group_id: int, payload: TeamGroupUpdate, db: Session = Depends(get_db)) -> dict:
    group = _get_or_404(db, TeamGroup, group_id, "team group")
    changes = payload.model_dump(exclude_unset=True)
    if changes.get("name"):
        _ensure_unique_name(db, TeamGroup, changes["name"], "team group", exclude_id=group.id)
    if changes.get("department_id") is not None:
        _get_or_404(db, Department, changes["department_id"], "department")
    _apply_changes(db, TeamGroup, group.id, changes)
    db.commit()
    db.refresh(group)
    return _ok("team group updated", team_group=_team_group_out(group))


@app.delete("/api/team-groups/{group_id}", tags=["Departments"])
def delete_team_group(group_id: int, db: Session = Depends(get_db)) -> dict:
    group = _get_or_404(db, TeamGroup, group_id, "team group")
    db.query(TeamMember).filter(TeamMember.team_group_id == group.id).update(
        {TeamMember.team_group_id: None}, synchronize_session=False
    )
    db.delete(group)
    db.commit()
    return _ok("team group deleted")


def _team_member_out(member: TeamMember) -> dict:
    return {
        "id": member.id,
        "employee_id": member.employee_id,
        "department_id": member.department_id,
        "team_group_id": member.team_group_id,
        "role": member.role,
        "joined_at": _iso(member.joined_at),
    }


class TeamMemberCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {"employee_id": 1, "department_id": 1, "team_group_id": 1}}}
    employee_id: int
    department_id: Optional[int] = None
    team_group_id: Optional[int] = None
    role: str = "Member"


@app.post("/api/team-members", status_code=201, tags=["Departments"])
def create_team_member(payload: TeamMemberCreate, db: Session = Depends(get_db)) -> dict:
    _get_or_404(db, Employee, payload.employee_id, "employee")
    if payload.department_id is not None:
        _get_or_404(db, Department, payload.department_id, "department")
    if payload.team_group_id is not None:
        _get_or_404(db, TeamGroup, payload.team_group_id, "team group")
    member = TeamMember(**payload.model_dump(), joined_at=_now())
    db.add(member)
    db.commit()
    db.refresh(member)
    return _ok("team member added", team_member=_team_member_out(member))


@app.get("/api/team-members", tags=["Departments"])
def list_team_members(
    department_id: Optional[int] = Query(default=None),
    team_group_id: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(TeamMember)
    if department_id is not None:
        query = query.filter(TeamMember.department_id == department_id)
    if team_group_id is not None:
        query = query.filter(TeamMember.team_group_id == team_group_id)
    return _ok("team members retrieved", team_members=[_team_member_out(m) for m in query.order_by(TeamMember.id).all()])


@app.get("/api/team-members/employee/{employee_id}", tags=["Departments"])
def list_employee_memberships(employee_id: int, db: Session = Depends(get_db)) -> dict:
    _get_or_404(db, Employee, employee_id, "employee")
    members = db.query(TeamMember).filter(TeamMember.employee_id == employee_id).order_by(TeamMember.id).all()
    return _ok("team members retrieved", team_members=[_team_member_out(m) for m in members])


AttendanceStatus = Literal["present", "absent", "late", "half-day"]
CLOCK_PATTERN = r"^\d{1,2}:\d{2}(\s*[AaPp][Mm])?$"
# Alias for schemas whose field is itself named "date".
DateType = date


def _attendance_out(record: AttendanceRecord) -> dict:
    return {
        "id": record.id,
        "employee_id": record.employee_id,
        "date": _iso(record.date),
        "check_in_time": record.check_in_time,
        "check_out_time": record.check_out_time,
        "status": record.status,
        "notes": record.notes,
        "created_at": _iso(record.created_at),
        "updated_at": _iso(record.updated_at),
    }


class AttendanceCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"employee_id": 1, "date": "2025-01-06", "check_in_time": "08:47", "check_out_time": "17:05", "status": "late"}
        }
    }
    employee_id: int
    date: DateType
    check_in_time: Optional[str] = Field(default=None, pattern=CLOCK_PATTERN)
    check_out_time: Optional[str] = Field(default=None, pattern=CLOCK_PATTERN)
    status: AttendanceStatus
    notes: Optional[str] = None


class AttendanceUpdate(BaseModel):
    date: Optional[DateType] = None
    check_in_time: Optional[str] = Field(default=None, pattern=CLOCK_PATTERN)
    check_out_time: Optional[str] = Field(default=None, pattern=CLOCK_PATTERN)
    status: Optional[AttendanceStatus] = None
    notes: Optional[str] = None


@app.post("/api/attendance", status_code=201, tags=["Attendance"])
def create_attendance(payload: AttendanceCreate, db: Session = Depends(get_db)) -> dict:
    _get_or_404(db, Employee, payload.employee_id, "employee")
    record = AttendanceRecord(**payload.model_dump())
    db.add(record)
    db.commit()
    db.refresh(record)
    return _ok("attendance recorded", attendance=_attendance_out(record))


@app.get("/api/attendance", tags=["Attendance"])
def list_attendance(
    employee_id: Optional[int] = Query(default=None),
    start_date: Optional[date] = Query(default=None),
    end_date: Optional[date] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(AttendanceRecord)
    if employee_id is not None:
        query = query.filter(AttendanceRecord.employee_id == employee_id)
    if start_date is not None:
        query = query.filter(AttendanceRecord.date >= start_date)
    if end_date is not None:
        query = query.filter(AttendanceRecord.date <= end_date)
    records = query.order_by(AttendanceRecord.date.desc(), AttendanceRecord.id.desc()).all()
    return _ok("attendance retrieved", attendance=[_attendance_out(r) for r in records])


@app.get("/api/attendance/{record_id}", tags=["Attendance"])
def get_attendance(record_id: int, db: Session = Depends(get_db)) -> dict:
    record = _get_or_404(db, AttendanceRecord, record_id, "attendance record")
    return _ok("attendance retrieved", attendance=_attendance_out(record))


@app.put("/api/attendance/{record_id}", tags=["Attendance"])
def update_attendance(record_id: int, payload: AttendanceUpdate, db: Session = Depends(get_db)) -> dict:
    record = _get_or_404(db, AttendanceRecord, record_id, "attendance record")
    _apply_changes(db, AttendanceRecord, record.id, payload.model_dump(exclude_unset=True))
    db.commit()
    db.refresh(record)
    return _ok("attendance updated", attendance=_attendance_out(record))


@app.delete("/api/attendance/{record_id}", tags=["Attendance"])
def delete_attendance(record_id: int, db: Session = Depends(get_db)) -> dict:
    record = _get_or_404(db, AttendanceRecord, record_id, "attendance record")
    db.delete(record)
    db.commit()
    return _ok("attendance deleted")


LeaveType = Literal["annual", "sick", "maternity", "unpaid", "compassionate"]


def _leave_out(leave: LeaveRequest) -> dict:
    return {
        "id": leave.id,
        "employee_id": leave.employee_id,
        "leave_type": leave.leave_type,
        "start_date": _iso(leave.start_date),
        "end_date": _iso(leave.end_date),
        "days": leave.days,
        "reason": leave.reason,
        "status": leave.status,
        "reviewed_by": leave.reviewed_by,
        "reviewed_at": _iso(leave.reviewed_at),
        "created_at": _iso(leave.created_at),
        "updated_at": _iso(leave.updated_at),
    }


def _leave_days(start: date, end: date) -> int:
    if end < start:
        raise HTTPException(status_code=400, detail="end_date must not be before start_date")
    return (end - start).days + 1


class LeaveCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"employee_id": 1, "leave_type": "annual", "start_date": "2025-02-03", "end_date": "2025-02-07"}
        }
    }
    employee_id: int
    leave_type: LeaveType
    start_date: date
    end_date: date
    reason: Optional[str] = None


class LeaveUpdate(BaseModel):
    leave_type: Optional[LeaveType] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    reason: Optional[str] = None


class LeaveReview(BaseModel):
    reviewed_by: Optional[str] = None


@app.post("/api/leave", status_code=201, tags=["Leave"])
def create_leave(payload: LeaveCreate, db: Session = Depends(get_db)) -> dict:
    _get_or_404(db, Employee, payload.employee_id, "employee")
    leave = LeaveRequest(**payload.model_dump(), days=_leave_days(payload.start_date, payload.end_date))
    db.add(leave)
    db.commit()
    db.refresh(leave)
    return _ok("leave request created", leave=_leave_out(leave))


@app.get("/api/leave", tags=["Leave"])
def list_leave(
    employee_id: Optional[int] = Query(default=None),
    status: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(LeaveRequest)
    if employee_id is not None:
        query = query.filter(LeaveRequest.employee_id == employee_id)
    if status is not None:
        query = query.filter(LeaveRequest.status == status)
    requests = query.order_by(LeaveRequest.start_date.desc(), LeaveRequest.id.desc()).all()
    return _ok("leave requests retrieved", leave=[_leave_out(r) for r in requests])


@app.get("/api/leave/{leave_id}", tags=["Leave"])
def get_leave(leave_id: int, db: Session = Depends(get_db)) -> dict:
    leave = _get_or_404(db, LeaveRequest, leave_id, "leave request")
    return _ok("leave request retrieved", leave=_leave_out(leave))


@app.put("/api/leave/{leave_id}", tags=["Leave"])
def update_leave(leave_id: int, payload: LeaveUpdate, db: Session = Depends(get_db)) -> dict:
    leave = _get_or_404(db, LeaveRequest, leave_id, "leave request")
    changes = payload.model_dump(exclude_unset=True)
    if "start_date" in changes or "end_date" in changes:
        changes["days"] = _leave_days(
            changes.get("start_date") or leave.start_date,
            changes.get("end_date") or leave.end_date,
        )
    _apply_changes(db, LeaveRequest, leave.id, changes)
    db.commit()
    db.refresh(leave)
    return _ok("leave request updated", leave=_leave_out(leave))


@app.delete("/api/leave/{leave_id}", tags=["Leave"])
def delete_leave(leave_id: int, db: Session = Depends(get_db)) -> dict:
    leave = _get_or_404(db, LeaveRequest, leave_id, "leave request")
    db.delete(leave)
    db.commit()
    return _ok("leave request deleted")


def _review_leave(db: Session, leave_id: int, decision: str, reviewed_by: Optional[str]) -> LeaveRequest:
    leave = _get_or_404(db, LeaveRequest, leave_id, "leave request")
    if leave.status != "pending":
        raise HTTPException(status_code=409, detail=f"leave request already {leave.status}")
    _apply_changes(db, LeaveRequest, leave.id, {"status": decision, "reviewed_by": reviewed_by, "reviewed_at": _now()})
    db.commit()
    db.refresh(leave)
    return leave


@app.post("/api/leave/{leave_id}/approve", tags=["Leave"])
def approve_leave(leave_id: int, payload: Optional[LeaveReview] = None, db: Session = Depends(get_db)) -> dict:
    leave = _review_leave(db, leave_id, "approved", payload.reviewed_by if payload else None)
    return _ok("leave request approved", leave=_leave_out(leave))


@app.post("/api/leave/{leave_id}/reject", tags=["Leave"])
def reject_leave(leave_id: int, payload: Optional[LeaveReview] = None, db: Session = Depends(get_db)) -> dict:
    leave = _review_leave(db, leave_id, "rejected", payload.reviewed_by if payload else None)
    return _ok("leave request rejected", leave=_leave_out(leave))


PayrollStatus = Literal["pending", "processed", "paid"]
PERIOD_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"
DEDUCTION_SETTINGS_KEY = "late_deduction_settings"


def _payroll_out(record: PayrollRecord) -> dict:
    return {
        "id": record.id,
        "employee_id": record.employee_id,
        "period": record.period,
        "base_salary": _money(record.base_salary),
        "allowances": _money(record.allowances),
        "bonus": _money(record.bonus),
        "deductions": _money(record.deductions),
        "tax": _money(record.tax),
        "net_salary": _money(record.net_salary),
        "status": record.status,
        "paid_at": _iso(record.paid_at),
        "metadata": record.metadata_json,
        "created_at": _iso(record.created_at),
        "updated_at": _iso(record.updated_at),
    }


class ScaledDeduction(BaseModel):
    min_minutes: int = Field(ge=0)
    max_minutes: int = Field(ge=0)
    amount: float = Field(ge=0)


class DeductionSettings(BaseModel):
    enabled: bool = False
    late_threshold_minutes: int = Field(default=15, ge=0)
    deduction_type: Literal["fixed", "percentage", "scaled"] = "fixed"
    fixed_deduction_amount: float = Field(default=50, ge=0)
    percentage_deduction: float = Field(default=2, ge=0, le=100)
    scaled_deductions: list[ScaledDeduction] = Field(default_factory=list)
    apply_after_days: int = Field(default=1, ge=1)
    exclude_employee_ids: list[int] = Field(default_factory=list)
    official_check_in_time: str = Field(default="08:30", pattern=CLOCK_PATTERN)


class DeductionSettingsUpdate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"enabled": True, "deduction_type": "percentage", "percentage_deduction": 5, "late_threshold_minutes": 10}
        }
    }
    enabled: Optional[bool] = None
    late_threshold_minutes: Optional[int] = Field(default=None, ge=0)
    deduction_type: Optional[Literal["fixed", "percentage", "scaled"]] = None
    fixed_deduction_amount: Optional[float] = Field(default=None, ge=0)
    percentage_deduction: Optional[float] = Field(default=None, ge=0, le=100)
    scaled_deductions: Optional[list[ScaledDeduction]] = None
    apply_after_days: Optional[int] = Field(default=None, ge=1)
    exclude_employee_ids: Optional[list[int]] = None
    official_check_in_time: Optional[str] = Field(default=None, pattern=CLOCK_PATTERN)


def _deduction_settings(db: Session) -> dict:
    stored = db.get(AppSetting, DEDUCTION_SETTINGS_KEY)
    return {**payroll.DEFAULT_DEDUCTION_SETTINGS, **((stored.value or {}) if stored else {})}


class PayrollCreate(BaseModel):
    model_config = {
        "json_schema_extra": {"example": {"employee_id": 1, "period": "2025-01", "allowances": 5000, "tax": 3200}}
    }
    employee_id: int
    period: str = Field(pattern=PERIOD_PATTERN)
    base_salary: Optional[Decimal] = Field(default=None, ge=0)
    allowances: Decimal = Field(default=Decimal("0"), ge=0)
    bonus: Decimal = Field(default=Decimal("0"), ge=0)
    deductions: Decimal = Field(default=Decimal("0"), ge=0)
    tax: Decimal = Field(default=Decimal("0"), ge=0)
    status: PayrollStatus = "pending"


class PayrollUpdate(BaseModel):
    base_salary: Optional[Decimal] = Field(default=None, ge=0)
    allowances: Optional[Decimal] = Field(default=None, ge=0)
    bonus: Optional[Decimal] = Field(default=None, ge=0)
    deductions: Optional[Decimal] = Field(default=None, ge=0)
    tax: Optional[Decimal] = Field(default=None, ge=0)
    status: Optional[PayrollStatus] = None


class PayrollGenerate(BaseModel):
    model_config = {"json_schema_extra": {"example": {"period": "2025-01"}}}
    period: str = Field(pattern=PERIOD_PATTERN)


@app.get("/api/payroll/deduction-settings", tags=["Payroll"])
def get_deduction_settings(db: Session = Depends(get_db)) -> dict:
    return _ok("deduction settings retrieved", settings=_deduction_settings(db))


@app.put("/api/payroll/deduction-settings", tags=["Payroll"])
def update_deduction_settings(payload: DeductionSettingsUpdate, db: Session = Depends(get_db)) -> dict:
    merged = {**_deduction_settings(db), **payload.model_dump(exclude_unset=True)}
    value = _validated(DeductionSettings, merged)
    setting = db.get(AppSetting, DEDUCTION_SETTINGS_KEY)
    if setting is None:
        setting = AppSetting(key=DEDUCTION_SETTINGS_KEY, category="payroll")
        db.add(setting)
    setting.value = value
    setting.updated_at = _now()
    db.commit()
    logger.info("Late deduction settings updated (enabled=%s, type=%s)", value["enabled"], value["deduction_type"])
    return _ok("deduction settings updated", settings=value)


@app.post("/api/payroll/generate", tags=["Payroll"])
def generate_payroll(
    payload: PayrollGenerate,
    tenant_id: Optional[int] = Depends(get_tenant_id),
    db: Session = Depends(get_db),
) -> dict:
    year, month = (int(part) for part in payload.period.split("-"))
    first_day = date(year, month, 1)
    last_day = date(year, month, monthrange(year, month)[1])

    employees = _scoped(db.query(Employee), Employee, tenant_id).filter(Employee.status == "active").order_by(Employee.id).all()
    attendance = (
        db.query(AttendanceRecord)
        .filter(
            AttendanceRecord.employee_id.in_([e.id for e in employees]),
            AttendanceRecord.date >= first_day,
            AttendanceRecord.date <= last_day,
        )
        .all()
    )
    details = payroll.calculate_monthly_deductions(employees, attendance, _deduction_settings(db))

    records, skipped = [], []
    for employee in employees:
        record = (
            db.query(PayrollRecord)
            .filter(PayrollRecord.employee_id == employee.id, PayrollRecord.period == payload.period)
            .first()
        )
        if record is not None and record.status != "pending":
            skipped.append(employee.id)
            continue
        if record is None:
            record = PayrollRecord(employee_id=employee.id, period=payload.period)
            db.add(record)
        detail = details.get(employee.id)
        record.base_salary = billing.money(employee.salary)
        record.deductions = detail["deduction_amount"] if detail else Decimal("0")
        record.net_salary = payroll.net_salary(
            record.base_salary, record.allowances, record.bonus, record.deductions, record.tax
        )
        record.status = "pending"
        record.metadata_json = {"late_deductions": jsonable_encoder(detail)} if detail else None
        record.updated_at = _now()
        records.append(record)

    db.commit()
    for record in records:
        db.refresh(record)
    summary = {
        "period": payload.period,
        "employees_processed": len(records),
        "employees_skipped": len(skipped),
        "employees_with_deductions": len(details),
        "total_late_days": sum(d["late_days"] for d in details.values()),
        "total_deductions": float(sum((d["deduction_amount"] for d in details.values()), Decimal("0"))),
        "total_net_salary": float(sum((billing.money(r.net_salary) for r in records), Decimal("0"))),
    }
    logger.info("Generated payroll for %s: %s", payload.period, summary)
    return _ok("payroll generated", payroll=[_payroll_out(r) for r in records], summary=summary)


@app.post("/api/payroll", status_code=201, tags=["Payroll"])
def create_payroll(payload: PayrollCreate, db: Session = Depends(get_db)) -> dict:
    employee = _get_or_404(db, Employee, payload.employee_id, "employee")
    data = payload.model_dump()
    if data["base_salary"] is None:
        data["base_salary"] = billing.money(employee.salary)
    record = PayrollRecord(
        **data,
        net_salary=payroll.net_salary(data["base_salary"], data["allowances"], data["bonus"], data["deductions"], data["tax"]),
        paid_at=_now() if data["status"] == "paid" else None,
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    return _ok("payroll record created", payroll=_payroll_out(record))


@app.get("/api/payroll", tags=["Payroll"])
def list_payroll(
    period: Optional[str] = Query(default=None),
    employee_id: Optional[int] = Query(default=None),
    status: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(PayrollRecord)
    if period is not None:
        query = query.filter(PayrollRecord.period == period)
    if employee_id is not None:
        query = query.filter(PayrollRecord.employee_id == employee_id)
    if status is not None:
        query = query.filter(PayrollRecord.status == status)
    records = query.order_by(PayrollRecord.period.desc(), PayrollRecord.id).all()
    return _ok("payroll retrieved", payroll=[_payroll_out(r) for r in records])


@app.get("/api/payroll/{record_id}", tags=["Payroll"])
def get_payroll(record_id: int, db: Session = Depends(get_db)) -> dict:
    record = _get_or_404(db, PayrollRecord, record_id, "payroll record")
    return _ok("payroll record retrieved", payroll=_payroll_out(record))


@app.put("/api/payroll/{record_id}", tags=["Payroll"])
def update_payroll(record_id: int, payload: PayrollUpdate, db: Session = Depends(get_db)) -> dict:
    record = _get_or_404(db, PayrollRecord, record_id, "payroll record")
    changes = payload.model_dump(exclude_unset=True)
    merged = {
        field: changes.get(field, getattr(record, field))
        for field in ("base_salary", "allowances", "bonus", "deductions", "tax")
    }
    changes["net_salary"] = payroll.net_salary(**merged)
    if changes.get("status") == "paid" and record.paid_at is None:
        changes["paid_at"] = _now()
    _apply_changes(db, PayrollRecord, record.id, changes)
    db.commit()
    db.refresh(record)
    return _ok("payroll record updated", payroll=_payroll_out(record))


@app.delete("/api/payroll/{record_id}", tags=["Payroll"])
def delete_payroll(record_id: int, db: Session = Depends(get_db)) -> dict:
    record = _get_or_404(db, PayrollRecord, record_id, "payroll record")
    db.delete(record)
    db.commit()
    return _ok("payroll record deleted")


@app.post("/api/payroll/{record_id}/mark-paid", tags=["Payroll"])
def mark_payroll_paid(record_id: int, db: Session = Depends(get_db)) -> dict:
    record = _get_or_404(db, PayrollRecord, record_id, "payroll record")
    if record.status == "paid":
        raise HTTPException(status_code=409, detail="payroll record already paid")
    _apply_changes(db, PayrollRecord, record.id, {"status": "paid", "paid_at": _now()})
    db.commit()
    db.refresh(record)
    return _ok("payroll record marked paid", payroll=_payroll_out(record))


ReviewStatus = Literal["draft", "submitted", "completed"]


def _review_out(review: PerformanceReview) -> dict:
    return {
        "id": review.id,
        "employee_id": review.employee_id,
        "reviewer": review.reviewer,
        "review_period": review.review_period,
        "rating": _money(review.rating),
        "goals": review.goals,
        "comments": review.comments,
        "status": review.status,
        "created_at": _iso(review.created_at),
        "updated_at": _iso(review.updated_at),
    }


class ReviewCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"employee_id": 1, "reviewer": "Ops Manager", "review_period": "2024-Q4", "rating": 4.5}
        }
    }
    employee_id: int
    reviewer: Optional[str] = None
    review_period: str = Field(min_length=1)
    rating: Decimal = Field(ge=1, le=5)
    goals: Optional[str] = None
    comments: Optional[str] = None
    status: ReviewStatus = "draft"


class ReviewUpdate(BaseModel):
    reviewer: Optional[str] = None
    review_period: Optional[str] = None
    rating: Optional[Decimal] = Field(default=None, ge=1, le=5)
    goals: Optional[str] = None
    comments: Optional[str] = None
    status: Optional[ReviewStatus] = None


@app.post("/api/performance", status_code=201, tags=["Performance"])
def create_review(payload: ReviewCreate, db: Session = Depends(get_db)) -> dict:
    _get_or_404(db, Employee, payload.employee_id, "employee")
    review = PerformanceReview(**payload.model_dump())
    db.add(review)
    db.commit()
    db.refresh(review)
    return _ok("performance review created", review=_review_out(review))


@app.get("/api/performance", tags=["Performance"])
def list_reviews(employee_id: Optional[int] = Query(default=None), db: Session = Depends(get_db)) -> dict:
    query = db.query(PerformanceReview)
    if employee_id is not None:
        query = query.filter(PerformanceReview.employee_id == employee_id)
    reviews = query.order_by(PerformanceReview.id.desc()).all()
    return _ok("performance reviews retrieved", reviews=[_review_out(r) for r in reviews])


@app.get("/api/performance/{review_id}", tags=["Performance"])
def get_review(review_id: int, db: Session = Depends(get_db)) -> dict:
    review = _get_or_404(db, PerformanceReview, review_id, "performance review")
    return _ok("performance review retrieved", review=_review_out(review))


@app.put("/api/performance/{review_id}", tags=["Performance"])
def update_review(review_id: int, payload: ReviewUpdate, db: Session = Depends(get_db)) -> dict:
    review = _get_or_404(db, PerformanceReview, review_id, "performance review")
    _apply_changes(db, PerformanceReview, review.id, payload.model_dump(exclude_unset=True))
    db.commit()
    db.refresh(review)
    return _ok("performance review updated", review=_review_out(review))


@app.delete("/api/performance/{review_id}", tags=["Performance"])
def delete_review(review_id: int, db: Session = Depends(get_db)) -> dict:
    review = _get_or_404(db, PerformanceReview, review_id, "performance review")
    db.delete(review)
    db.commit()
    return _ok("performance review deleted")


def _item_out(item: InventoryItem) -> dict:
    return {
        "id": item.id,
        "sku": item.sku,
        "name": item.name,
        "description": item.description,
        "category": item.category,
        "unit_price": _money(item.unit_price),
        "quantity": item.quantity,
        "reorder_level": item.reorder_level,
        "enabled": item.enabled,
        "created_at": _iso(item.created_at),
        "updated_at": _iso(item.updated_at),
    }


class ItemCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"sku": "ONT-HG8245", "name": "Huawei ONT", "category": "CPE", "unit_price": 3500, "quantity": 40}
        }
    }
    sku: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: Optional[str] = None
    category: Optional[str] = None
    unit_price: Decimal = Field(ge=0)
    quantity: int = Field(default=0, ge=0)
    reorder_level: int = Field(default=10, ge=0)


class ItemUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    category: Optional[str] = None
    unit_price: Optional[Decimal] = Field(default=None, ge=0)
    quantity: Optional[int] = Field(default=None, ge=0)
    reorder_level: Optional[int] = Field(default=None, ge=0)
    enabled: Optional[bool] = None


@app.post("/api/inventory/items", status_code=201, tags=["Inventory"])
def create_item(payload: ItemCreate, db: Session = Depends(get_db)) -> dict:
    if db.query(InventoryItem.id).filter(InventoryItem.sku == payload.sku).first():
        raise HTTPException(status_code=409, detail="sku already exists")
    item = InventoryItem(**payload.model_dump())
    db.add(item)
    db.commit()
    db.refresh(item)
    return _ok("item created", item=_item_out(item))


@app.get("/api/inventory/items", tags=["Inventory"])
def list_items(
    category: Optional[str] = Query(default=None),
    include_disabled: bool = Query(default=False),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(InventoryItem)
    if not include_disabled:
        query = query.filter(InventoryItem.enabled.is_(True))
    if category is not None:
        query = query.filter(InventoryItem.category == category)
    return _ok("items retrieved", items=[_item_out(i) for i in query.order_by(InventoryItem.name).all()])


@app.get("/api/inventory/items/low-stock", tags=["Inventory"])
def list_low_stock_items(db: Session = Depends(get_db)) -> dict:
    items = (
        db.query(InventoryItem)
        .filter(InventoryItem.enabled.is_(True), InventoryItem.quantity <= InventoryItem.reorder_level)
        .order_by(InventoryItem.quantity, InventoryItem.name)
        .all()
    )
    return _ok("low stock items retrieved", items=[_item_out(i) for i in items])


@app.get("/api/inventory/items/{item_id}", tags=["Inventory"])
def get_item(item_id: int, db: Session = Depends(get_db)) -> dict:
    item = _get_or_404(db, InventoryItem, item_id, "item")
    return _ok("item retrieved", item=_item_out(item))


@app.put("/api/inventory/items/{item_id}", tags=["Inventory"])
def update_item(item_id: int, payload: ItemUpdate, db: Session = Depends(get_db)) -> dict:
    item = _get_or_404(db, InventoryItem, item_id, "item")
    _apply_changes(db, InventoryItem, item.id, payload.model_dump(exclude_unset=True))
    db.commit()
    db.refresh(item)
    return _ok("item updated", item=_item_out(item))


@app.delete("/api/inventory/items/{item_id}", tags=["Inventory"])
def delete_item(item_id: int, db: Session = Depends(get_db)) -> dict:
    item = _get_or_404(db, InventoryItem, item_id, "item")
    _apply_changes(db, InventoryItem, item.id, {"enabled": False})
    db.commit()
    return _ok("item disabled")


def _transaction_out(txn: InventoryTransaction, lines: list[InventoryTransactionLine]) -> dict:
    return {
        "id": txn.id,
        "receipt_number": txn.receipt_number,
        "customer_id": txn.customer_id,
        "customer_name": txn.customer_name,
        "subtotal": _money(txn.subtotal),
        "tax_amount": _money(txn.tax_amount),
        "discount_amount": _money(txn.discount_amount),
        "total_amount": _money(txn.total_amount),
        "payment_method": txn.payment_method,
        "payment_status": txn.payment_status,
        "cashier": txn.cashier,
        "notes": txn.notes,
        "created_at": _iso(txn.created_at),
        "items": [
            {
                "item_id": line.item_id,
                "quantity": line.quantity,
                "unit_price": _money(line.unit_price),
                "line_total": _money(line.line_total),
            }
            for line in lines
        ],
    }


class TransactionLineIn(BaseModel):
    item_id: int
    quantity: int = Field(gt=0)
    unit_price: Optional[Decimal] = Field(default=None, ge=0)


class TransactionCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"customer_name": "Walk-in", "items": [{"item_id": 1, "quantity": 2}], "payment_method": "mpesa"}
        }
    }
    customer_id: Optional[int] = None
    customer_name: Optional[str] = None
    items: list[TransactionLineIn] = Field(min_length=1)
    tax_amount: Decimal = Field(default=Decimal("0"), ge=0)
    discount_amount: Decimal = Field(default=Decimal("0"), ge=0)
    payment_method: str = "cash"
    payment_status: str = "completed"
    cashier: Optional[str] = None
    notes: Optional[str] = None


@app.post("/api/inventory/transactions", status_code=201, tags=["Inventory"])
def create_transaction(payload: TransactionCreate, db: Session = Depends(get_db)) -> dict:
    if payload.customer_id is not None:
        _get_or_404(db, Customer, payload.customer_id, "customer")

    lines, subtotal = [], Decimal("0")
    for entry in payload.items:
        item = db.get(InventoryItem, entry.item_id)
        if not item or not item.enabled:
            raise HTTPException(status_code=404, detail="item not found")
        if item.quantity < entry.quantity:
            raise HTTPException(status_code=409, detail=f"insufficient stock for {item.sku}")
        unit_price = billing.money(entry.unit_price if entry.unit_price is not None else item.unit_price)
        line_total = billing.money(unit_price * entry.quantity)
        item.quantity -= entry.quantity
        item.updated_at = _now()
        subtotal += line_total
        lines.append(
            InventoryTransactionLine(item_id=item.id, quantity=entry.quantity, unit_price=unit_price, line_total=line_total)
        )

    txn = InventoryTransaction(
        receipt_number=f"RCP-{_now():%Y%m%d}-{uuid4().hex[:8].upper()}",
        customer_id=payload.customer_id,
        customer_name=payload.customer_name,
        subtotal=subtotal,
        tax_amount=billing.money(payload.tax_amount),
        discount_amount=billing.money(payload.discount_amount),
        total_amount=billing.money(subtotal + payload.tax_amount - payload.discount_amount),
        payment_method=payload.payment_method,
        payment_status=payload.payment_status,
        cashier=payload.cashier,
        notes=payload.notes,
        created_at=_now(),
    )
    db.add(txn)
    db.flush()
    for line in lines:
        line.transaction_id = txn.id
        db.add(line)
    db.commit()
    db.refresh(txn)
    logger.info("Recorded inventory sale %s total=%s", txn.receipt_number, txn.total_amount)
    return _ok("transaction recorded", transaction=_transaction_out(txn, lines))


def _transaction_lines(db: Session, transaction_id: int) -> list[InventoryTransactionLine]:
    return (
        db.query(InventoryTransactionLine)
        .filter(InventoryTransactionLine.transaction_id == transaction_id)
        .order_by(InventoryTransactionLine.id)
        .all()
    )


@app.get("/api/inventory/transactions", tags=["Inventory"])
def list_transactions(db: Session = Depends(get_db)) -> dict:
    transactions = db.query(InventoryTransaction).order_by(InventoryTransaction.id.desc()).all()
    return _ok(
        "transactions retrieved",
        transactions=[_transaction_out(t, _transaction_lines(db, t.id)) for t in transactions],
    )


@app.get("/api/inventory/transactions/{transaction_id}", tags=["Inventory"])
def get_transaction(transaction_id: int, db: Session = Depends(get_db)) -> dict:
    txn = _get_or_404(db, InventoryTransaction, transaction_id, "transaction")
    return _ok("transaction retrieved", transaction=_transaction_out(txn, _transaction_lines(db, txn.id)))


PaymentStatus = Literal["pending", "completed", "failed", "refunded"]


def _payment_out(payment: Payment) -> dict:
    return {
        "id": payment.id,
        "tenant_id": payment.tenant_id,
        "account_id": payment.account_id,
        "invoice_id": payment.invoice_id,
        "customer_id": payment.customer_id,
        "user_id": payment.user_id,
        "amount": _money(payment.amount),
        "payment_method": payment.payment_method,
        "mpesa_receipt_number": payment.mpesa_receipt_number,
        "transaction_id": payment.transaction_id,
        "status": payment.status,
        "applied": payment.applied,
        "payment_date": _iso(payment.payment_date),
        "created_at": _iso(payment.created_at),
        "updated_at": _iso(payment.updated_at),
    }


def _invoice_for_account(db: Session, invoice_id: Optional[int], account: MikrotikAccount) -> Optional[MikrotikInvoice]:
    if invoice_id is None:
        return None
    invoice = db.get(MikrotikInvoice, invoice_id)
    if not invoice or invoice.account_id != account.id:
        raise HTTPException(status_code=404, detail="invoice not found")
    return invoice


def _settle(db: Session, payment: Payment, account: MikrotikAccount) -> None:
    """Apply a completed payment to its invoice(s) and account; the caller commits."""
    invoice = _invoice_for_account(db, payment.invoice_id, account)
    settled = billing.apply_payment(db, account, payment.amount, invoice, payment.payment_method)
    if payment.invoice_id is None and len(settled) == 1:
        payment.invoice_id = settled[0].id
    payment.applied = True
    logger.info(
        "Applied payment of %s to account %s (%d invoice(s) settled)",
        payment.amount,
        account.account_number,
        len(settled),
    )


class PaymentCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"account_id": 1, "amount": 1740, "payment_method": "mpesa", "mpesa_receipt_number": "QK12ABC345", "status": "completed"}
        }
    }
    account_id: int
    amount: Decimal = Field(gt=0)
    payment_method: str = "cash"
    invoice_id: Optional[int] = None
    customer_id: Optional[int] = None
    user_id: Optional[int] = None
    mpesa_receipt_number: Optional[str] = None
    transaction_id: Optional[str] = None
    status: PaymentStatus = "pending"


class PaymentUpdate(BaseModel):
    amount: Optional[Decimal] = Field(default=None, gt=0)
    payment_method: Optional[str] = None
    mpesa_receipt_number: Optional[str] = None
    transaction_id: Optional[str] = None
    status: Optional[PaymentStatus] = None


@app.post("/api/payments", status_code=201, tags=["Payments"])
def create_payment(
    payload: PaymentCreate,
    tenant_id: Optional[int] = Depends(get_tenant_id),
    db: Session = Depends(get_db),
) -> dict:
    account = _get_or_404(db, MikrotikAccount, payload.account_id, "account", tenant_id)
    _invoice_for_account(db, payload.invoice_id, account)
    data = payload.model_dump()
    if data["customer_id"] is None:
        data["customer_id"] = account.customer_id
    payment = Payment(tenant_id=tenant_id if tenant_id is not None else account.tenant_id, **data)
    db.add(payment)
    if payment.status == "completed":
        _settle(db, payment, account)
    db.commit()
    db.refresh(payment)
    return _ok("payment recorded", payment=_payment_out(payment))


@app.get("/api/payments", tags=["Payments"])
def list_payments(
    status: Optional[str] = Query(default=None),
    account_id: Optional[int] = Query(default=None),
    tenant_id: Optional[int] = Depends(get_tenant_id),
    db: Session = Depends(get_db),
) -> dict:
    query = _scoped(db.query(Payment), Payment, tenant_id)
    if status is not None:
        query = query.filter(Payment.status == status)
    if account_id is not None:
        query = query.filter(Payment.account_id == account_id)
    payments = query.order_by(Payment.payment_date.desc(), Payment.id.desc()).all()
    return _ok("payments retrieved", payments=[_payment_out(p) for p in payments])


@app.get("/api/payments/invoice/{invoice_id}", tags=["Payments"])
def list_invoice_payments(
    invoice_id: int, tenant_id: Optional[int] = Depends(get_tenant_id), db: Session = Depends(get_db)
) -> dict:
    _get_or_404(db, MikrotikInvoice, invoice_id, "invoice")
    payments = _scoped(db.query(Payment), Payment, tenant_id).filter(Payment.invoice_id == invoice_id).order_by(Payment.id).all()
    return _ok("payments retrieved", payments=[_payment_out(p) for p in payments])


@app.get("/api/payments/customer/{customer_id}", tags=["Payments"])
def list_customer_payments(
    customer_id: int, tenant_id: Optional[int] = Depends(get_tenant_id), db: Session = Depends(get_db)
) -> dict:
    payments = (
        _scoped(db.query(Payment), Payment, tenant_id)
        .filter(Payment.customer_id == customer_id)
        .order_by(Payment.payment_date.desc(), Payment.id.desc())
        .all()
    )
    return _ok("payments retrieved", payments=[_payment_out(p) for p in payments])


@app.get("/api/payments/{payment_id}", tags=["Payments"])
def get_payment(payment_id: int, tenant_id: Optional[int] = Depends(get_tenant_id), db: Session = Depends(get_db)) -> dict:
    payment = _get_or_404(db, Payment, payment_id, "payment", tenant_id)
    return _ok("payment retrieved", payment=_payment_out(payment))


@app.put("/api/payments/{payment_id}", tags=["Payments"])
def update_payment(
    payment_id: int,
    payload: PaymentUpdate,
    tenant_id: Optional[int] = Depends(get_tenant_id),
    db: Session = Depends(get_db),
) -> dict:
    payment = _get_or_404(db, Payment, payment_id, "payment", tenant_id)
    changes = payload.model_dump(exclude_unset=True)
    if payment.applied and "amount" in changes and changes["amount"] != payment.amount:
        raise HTTPException(status_code=409, detail="amount of an applied payment cannot change")
    if payment.applied and "status" in changes and changes["status"] != "completed":
        raise HTTPException(status_code=409, detail="status of an applied payment cannot change")
    for field, value in changes.items():
        setattr(payment, field, value)
    payment.updated_at = _now()
    if payment.status == "completed" and not payment.applied:
        _settle(db, payment, db.get(MikrotikAccount, payment.account_id))
    db.commit()
    db.refresh(payment)
    return _ok("payment updated", payment=_payment_out(payment))


@app.delete("/api/payments/{payment_id}", tags=["Payments"])
def delete_payment(payment_id: int, tenant_id: Optional[int] = Depends(get_tenant_id), db: Session = Depends(get_db)) -> dict:
    payment = _get_or_404(db, Payment, payment_id, "payment", tenant_id)
    if payment.applied:
        raise HTTPException(status_code=409, detail="applied payments cannot be deleted")
    db.query(MpesaTransaction).filter(MpesaTransaction.payment_id == payment.id).update(
        {MpesaTransaction.payment_id: None}, synchronize_session=False
    )
    db.delete(payment)
    db.commit()
    return _ok("payment deleted")


AccountStatus = Literal["active", "suspended", "paused", "closed"]
PlanType = Literal["flat-rate", "quota-based"]
DEFAULT_QUOTA_GB = 10


def _plan_out(plan: MikrotikPlan) -> dict:
    return {
        "id": plan.id,
        "instance_id": plan.instance_id,
        "plan_name": plan.plan_name,
        "description": plan.description,
        "plan_type": plan.plan_type,
        "monthly_fee": _money(plan.monthly_fee),
        "setup_fee": _money(plan.setup_fee),
        "activation_fee": _money(plan.activation_fee),
        "discount": _money(plan.discount),
        "data_quota": plan.data_quota,
        "download_mbps": plan.download_mbps,
        "upload_mbps": plan.upload_mbps,
        "features": plan.features or [],
        "is_active": plan.is_active,
        "created_at": _iso(plan.created_at),
        "updated_at": _iso(plan.updated_at),
    }


def _account_out(account: MikrotikAccount) -> dict:
    return {
        "id": account.id,
        "tenant_id": account.tenant_id,
        "instance_id": account.instance_id,
        "account_number": account.account_number,
        "customer_id": account.customer_id,
        "customer_name": account.customer_name,
        "customer_email": account.customer_email,
        "customer_phone": account.customer_phone,
        "account_type": account.account_type,
        "status": account.status,
        "plan_id": account.plan_id,
        "monthly_fee": _money(account.monthly_fee),
        "data_quota": account.data_quota,
        "balance": _money(account.balance),
        "total_paid": _money(account.total_paid),
        "outstanding_balance": _money(account.outstanding_balance),
        "registration_date": _iso(account.registration_date),
        "last_billing_date": _iso(account.last_billing_date),
        "next_billing_date": _iso(account.next_billing_date),
        "pppoe_username": account.pppoe_username,
        "pppoe_password": account.pppoe_password,
        "hotspot_username": account.hotspot_username,
        "hotspot_password": account.hotspot_password,
        "created_at": _iso(account.created_at),
        "updated_at": _iso(account.updated_at),
    }


def _invoice_out(invoice: MikrotikInvoice) -> dict:
    return {
        "id": invoice.id,
        "invoice_number": invoice.invoice_number,
        "account_id": invoice.account_id,
        "plan_id": invoice.plan_id,
        "billing_period": invoice.billing_period,
        "amount": _money(invoice.amount),
        "discount": _money(invoice.discount),
        "tax": _money(invoice.tax),
        "total": _money(invoice.total),
        "amount_paid": _money(invoice.amount_paid),
        "status": invoice.status,
        "issue_date": _iso(invoice.issue_date),
        "due_date": _iso(invoice.due_date),
        "paid_date": _iso(invoice.paid_date),
        "payment_method": invoice.payment_method,
    }


def _usage_out(usage: MikrotikUsage) -> dict:
    return {
        "id": usage.id,
        "account_id": usage.account_id,
        "date": _iso(usage.date),
        "upload_mb": _money(usage.upload_mb),
        "download_mb": _money(usage.download_mb),
        "total_mb": _money(usage.total_mb),
        "session_count": usage.session_count,
        "active_time": usage.active_time,
    }


class PlanCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"plan_name": "Home 20", "plan_type": "flat-rate", "monthly_fee": 2500, "download_mbps": 20, "upload_mbps": 10}
        }
    }
    instance_id: str = "default"
    plan_name: str = Field(min_length=1)
    description: Optional[str] = None
    plan_type: PlanType = "flat-rate"
    monthly_fee: Decimal = Field(ge=0)
    setup_fee: Decimal = Field(default=Decimal("0"), ge=0)
    activation_fee: Decimal = Field(default=Decimal("0"), ge=0)
    discount: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    data_quota: Optional[int] = Field(default=None, gt=0)
    download_mbps: Optional[int] = Field(default=None, gt=0)
    upload_mbps: Optional[int] = Field(default=None, gt=0)
    features: list[str] = Field(default_factory=list)
    is_active: bool = True

    @model_validator(mode="after")
    def default_quota(self):
        if self.plan_type == "quota-based" and self.data_quota is None:
            self.data_quota = DEFAULT_QUOTA_GB
        return self


class PlanUpdate(BaseModel):
    plan_name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    plan_type: Optional[PlanType] = None
    monthly_fee: Optional[Decimal] = Field(default=None, ge=0)
    setup_fee: Optional[Decimal] = Field(default=None, ge=0)
    activation_fee: Optional[Decimal] = Field(default=None, ge=0)
    discount: Optional[Decimal] = Field(default=None, ge=0, le=100)
    data_quota: Optional[int] = Field(default=None, gt=0)
    download_mbps: Optional[int] = Field(default=None, gt=0)
    upload_mbps: Optional[int] = Field(default=None, gt=0)
    features: Optional[list[str]] = None
    is_active: Optional[bool] = None


@app.get("/api/mikrotik/plans", tags=["Mikrotik"])
def list_plans(
    instance_id: str = Query(default="default"),
    active_only: bool = Query(default=False),
    db: Session = Depends(get_db),
) -> dict:
    billing.ensure_default_plans(db, instance_id)
    db.commit()
    query = db.query(MikrotikPlan).filter(MikrotikPlan.instance_id == instance_id)
    if active_only:
        query = query.filter(MikrotikPlan.is_active.is_(True))
    return _ok("plans retrieved", plans=[_plan_out(p) for p in query.order_by(MikrotikPlan.id).all()])


@app.post("/api/mikrotik/plans", status_code=201, tags=["Mikrotik"])
def create_plan(payload: PlanCreate, db: Session = Depends(get_db)) -> dict:
    billing.ensure_default_plans(db, payload.instance_id)
    plan = MikrotikPlan(**payload.model_dump())
    db.add(plan)
    db.commit()
    db.refresh(plan)
    return _ok("plan created", plan=_plan_out(plan))


@app.put("/api/mikrotik/plans/{plan_id}", tags=["Mikrotik"])
def update_plan(plan_id: int, payload: PlanUpdate, db: Session = Depends(get_db)) -> dict:
    plan = _get_or_404(db, MikrotikPlan, plan_id, "plan")
    _apply_changes(db, MikrotikPlan, plan.id, payload.model_dump(exclude_unset=True))
    db.commit()
    db.refresh(plan)
    return _ok("plan updated", plan=_plan_out(plan))


class AccountCreate(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {
                "customer_name": "Peter Kamau",
                "customer_email": "peter@example.com",
                "customer_phone": "0712000999",
                "account_type": "residential",
                "plan_id": 1,
            }
        }
    }
    customer_name: str = Field(min_length=1)
    customer_phone: str = Field(min_length=1)
    customer_email: Optional[str] = None
    customer_id: Optional[int] = None
    account_type: str = "residential"
    plan_id: int
    prefix: str = Field(default="ACC", min_length=1, max_length=16)
    instance_id: str = "default"


class AccountUpdate(BaseModel):
    customer_name: Optional[str] = Field(default=None, min_length=1)
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    account_type: Optional[str] = None
    status: Optional[AccountStatus] = None
    plan_id: Optional[int] = None
    monthly_fee: Optional[Decimal] = Field(default=None, ge=0)
    next_billing_date: Optional[date] = None


def _plan_for_instance(db: Session, plan_id: int, instance_id: str) -> MikrotikPlan:
    plan = db.get(MikrotikPlan, plan_id)
    if not plan or plan.instance_id != instance_id:
        raise HTTPException(status_code=404, detail="plan not found")
    return plan


@app.post("/api/mikrotik/accounts", status_code=201, tags=["Mikrotik"])
def create_account(
    payload: AccountCreate,
    tenant_id: Optional[int] = Depends(get_tenant_id),
    db: Session = Depends(get_db),
) -> dict:
    billing.ensure_default_plans(db, payload.instance_id)
    plan = _plan_for_instance(db, payload.plan_id, payload.instance_id)
    if payload.customer_id is not None:
        _get_or_404(db, Customer, payload.customer_id, "customer", tenant_id)

    today = date.today()
    account_number = billing.next_account_number(db, payload.prefix)
    account = MikrotikAccount(
        tenant_id=tenant_id,
        instance_id=payload.instance_id,
        account_number=account_number,
        customer_id=payload.customer_id,
        customer_name=payload.customer_name,
        customer_email=payload.customer_email,
        customer_phone=payload.customer_phone,
        account_type=payload.account_type,
        status="active",
        plan_id=plan.id,
        monthly_fee=plan.monthly_fee,
        data_quota=plan.data_quota,
        balance=Decimal("0"),
        total_paid=Decimal("0"),
        outstanding_balance=billing.money(plan.monthly_fee) + billing.money(plan.activation_fee),
        registration_date=today,
        next_billing_date=today + timedelta(days=settings.billing_cycle_days),
        **billing.generate_credentials(account_number),
    )
    db.add(account)
    db.commit()
    db.refresh(account)
    logger.info("Created Mikrotik account %s on plan %s", account.account_number, plan.plan_name)
    return _ok("account created", account=_account_out(account))


@app.get("/api/mikrotik/accounts", tags=["Mikrotik"])
def list_accounts(
    instance_id: Optional[str] = Query(default=None),
    status: Optional[str] = Query(default=None),
    tenant_id: Optional[int] = Depends(get_tenant_id),
    db: Session = Depends(get_db),
) -> dict:
    query = _scoped(db.query(MikrotikAccount), MikrotikAccount, tenant_id)
    if instance_id is not None:
        query = query.filter(MikrotikAccount.instance_id == instance_id)
    if status is not None:
        query = query.filter(MikrotikAccount.status == status)
    accounts = query.order_by(MikrotikAccount.id).all()
    return _ok("accounts retrieved", accounts=[_account_out(a) for a in accounts])


@app.get("/api/mikrotik/accounts/{account_id}", tags=["Mikrotik"])
def get_account(account_id: int, tenant_id: Optional[int] = Depends(get_tenant_id), db: Session = Depends(get_db)) -> dict:
    account = _get_or_404(db, MikrotikAccount, account_id, "account", tenant_id)
    return _ok("account retrieved", account=_account_out(account))


@app.put("/api/mikrotik/accounts/{account_id}", tags=["Mikrotik"])
def update_account(
    account_id: int,
    payload: AccountUpdate,
    tenant_id: Optional[int] = Depends(get_tenant_id),
    db: Session = Depends(get_db),
) -> dict:
    account = _get_or_404(db, MikrotikAccount, account_id, "account", tenant_id)
    changes = payload.model_dump(exclude_unset=True)
    if changes.get("plan_id") is not None and changes["plan_id"] != account.plan_id:
        plan = _plan_for_instance(db, changes["plan_id"], account.instance_id)
        changes.setdefault("monthly_fee", plan.monthly_fee)
        changes["data_quota"] = plan.data_quota
    _apply_changes(db, MikrotikAccount, account.id, changes)
    db.commit()
    db.refresh(account)
    return _ok("account updated", account=_account_out(account))


@app.delete("/api/mikrotik/accounts/{account_id}", tags=["Mikrotik"])
def delete_account(account_id: int, tenant_id: Optional[int] = Depends(get_tenant_id), db: Session = Depends(get_db)) -> dict:
    account = _get_or_404(db, MikrotikAccount, account_id, "account", tenant_id)
    payment_ids = [row.id for row in db.query(Payment.id).filter(Payment.account_id == account.id)]
    if payment_ids:
        db.query(MpesaTransaction).filter(MpesaTransaction.payment_id.in_(payment_ids)).update(
            {MpesaTransaction.payment_id: None}, synchronize_session=False
        )
    for model in (Payment, MikrotikInvoice, MikrotikUsage):
        db.query(model).filter(model.account_id == account.id).delete(synchronize_session=False)
    db.delete(account)
    db.commit()
    logger.info("Deleted Mikrotik account %s", account.account_number)
    return _ok("account deleted")


@app.post("/api/mikrotik/accounts/{account_id}/regenerate-credentials", tags=["Mikrotik"])
def regenerate_credentials(
    account_id: int, tenant_id: Optional[int] = Depends(get_tenant_id), db: Session = Depends(get_db)
) -> dict:
    account = _get_or_404(db, MikrotikAccount, account_id, "account", tenant_id)
    _apply_changes(db, MikrotikAccount, account.id, billing.generate_credentials(account.account_number))
    db.commit()
    db.refresh(account)
    return _ok("credentials regenerated", account=_account_out(account))


@app.get("/api/mikrotik/accounts/{account_id}/invoices", tags=["Mikrotik"])
def list_account_invoices(
    account_id: int, tenant_id: Optional[int] = Depends(get_tenant_id), db: Session = Depends(get_db)
) -> dict:
    account = _get_or_404(db, MikrotikAccount, account_id, "account", tenant_id)
    invoices = (
        db.query(MikrotikInvoice)
        .filter(MikrotikInvoice.account_id == account.id)
        .order_by(MikrotikInvoice.issue_date.desc(), MikrotikInvoice.id.desc())
        .all()
    )
    return _ok("invoices retrieved", invoices=[_invoice_out(i) for i in invoices])


@app.get("/api/mikrotik/accounts/{account_id}/payments", tags=["Mikrotik"])
def list_account_payments(
    account_id: int, tenant_id: Optional[int] = Depends(get_tenant_id), db: Session = Depends(get_db)
) -> dict:
    account = _get_or_404(db, MikrotikAccount, account_id, "account", tenant_id)
    payments = (
        db.query(Payment)
        .filter(Payment.account_id == account.id)
        .order_by(Payment.payment_date.desc(), Payment.id.desc())
        .all()
    )
    return _ok("payments retrieved", payments=[_payment_out(p) for p in payments])


@app.get("/api/mikrotik/accounts/{account_id}/usage", tags=["Mikrotik"])
def list_account_usage(
    account_id: int,
    start_date: Optional[date] = Query(default=None),
    end_date: Optional[date] = Query(default=None),
    tenant_id: Optional[int] = Depends(get_tenant_id),
    db: Session = Depends(get_db),
) -> dict:
    account = _get_or_404(db, MikrotikAccount, account_id, "account", tenant_id)
    query = db.query(MikrotikUsage).filter(MikrotikUsage.account_id == account.id)
    if start_date is not None:
        query = query.filter(MikrotikUsage.date >= start_date)
    if end_date is not None:
        query = query.filter(MikrotikUsage.date <= end_date)
    usage = query.order_by(MikrotikUsage.date.desc(), MikrotikUsage.id.desc()).all()
    total_mb = sum((billing.money(u.total_mb) for u in usage), Decimal("0"))
    return _ok(
        "usage retrieved",
        usage=[_usage_out(u) for u in usage],
        total_mb=float(total_mb),
        total_gb=round(float(total_mb) / 1024, 2),
    )


@app.get("/api/mikrotik/invoices", tags=["Mikrotik"])
def list_invoices(
    status: Optional[str] = Query(default=None),
    account_id: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(MikrotikInvoice)
    if status is not None:
        query = query.filter(MikrotikInvoice.status == status)
    if account_id is not None:
        query = query.filter(MikrotikInvoice.account_id == account_id)
    invoices = query.order_by(MikrotikInvoice.issue_date.desc(), MikrotikInvoice.id.desc()).all()
    return _ok("invoices retrieved", invoices=[_invoice_out(i) for i in invoices])


class InvoiceGenerate(BaseModel):
    model_config = {"json_schema_extra": {"example": {"account_id": 1, "billing_period": "2025-01"}}}
    account_id: int
    billing_period: Optional[str] = Field(default=None, pattern=PERIOD_PATTERN)


@app.post("/api/mikrotik/invoices/generate", status_code=201, tags=["Mikrotik"])
def generate_invoice(
    payload: InvoiceGenerate,
    tenant_id: Optional[int] = Depends(get_tenant_id),
    db: Session = Depends(get_db),
) -> dict:
    account = _get_or_404(db, MikrotikAccount, payload.account_id, "account", tenant_id)
    plan = _get_or_404(db, MikrotikPlan, account.plan_id, "plan")
    invoice = billing.generate_invoice(db, account, plan, payload.billing_period)
    db.commit()
    db.refresh(invoice)
    db.refresh(account)
    return _ok("invoice generated", invoice=_invoice_out(invoice), account=_account_out(account))


class AccountPaymentCreate(BaseModel):
    model_config = {
        "json_schema_extra": {"example": {"account_id": 1, "amount": 2000, "payment_method": "mpesa", "mpesa_receipt_number": "QK12ABC345"}}
    }
    account_id: int
    amount: Decimal = Field(gt=0)
    payment_method: str = "cash"
    invoice_id: Optional[int] = None
    mpesa_receipt_number: Optional[str] = None
    transaction_id: Optional[str] = None


@app.post("/api/mikrotik/payments", status_code=201, tags=["Mikrotik"])
def record_account_payment(
    payload: AccountPaymentCreate,
    tenant_id: Optional[int] = Depends(get_tenant_id),
    db: Session = Depends(get_db),
) -> dict:
    account = _get_or_404(db, MikrotikAccount, payload.account_id, "account", tenant_id)
    payment = Payment(
        tenant_id=account.tenant_id,
        customer_id=account.customer_id,
        status="completed",
        **payload.model_dump(),
    )
    db.add(payment)
    _settle(db, payment, account)
    db.commit()
    db.refresh(payment)
    db.refresh(account)
    return _ok("payment recorded", payment=_payment_out(payment), account=_account_out(account))


class UsageCreate(BaseModel):
    model_config = {
        "json_schema_extra": {"example": {"account_id": 1, "upload_mb": 512.5, "download_mb": 4096, "session_count": 3}}
    }
    account_id: int
    date: Optional[DateType] = None
    upload_mb: Decimal = Field(ge=0)
    download_mb: Decimal = Field(ge=0)
    session_count: int = Field(default=1, ge=0)
    active_time: int = Field(default=0, ge=0)


@app.post("/api/mikrotik/usage", status_code=201, tags=["Mikrotik"])
def record_usage(
    payload: UsageCreate,
    tenant_id: Optional[int] = Depends(get_tenant_id),
    db: Session = Depends(get_db),
) -> dict:
    account = _get_or_404(db, MikrotikAccount, payload.account_id, "account", tenant_id)
    usage = MikrotikUsage(
        account_id=account.id,
        date=payload.date or date.today(),
        upload_mb=payload.upload_mb,
        download_mb=payload.download_mb,
        total_mb=payload.upload_mb + payload.download_mb,
        session_count=payload.session_count,
        active_time=payload.active_time,
    )
    db.add(usage)
    db.commit()
    db.refresh(usage)
    return _ok("usage recorded", usage=_usage_out(usage))


@app.get("/api/mikrotik/stats", tags=["Mikrotik"])
def mikrotik_stats(
    instance_id: str = Query(default="default"),
    tenant_id: Optional[int] = Depends(get_tenant_id),
    db: Session = Depends(get_db),
) -> dict:
    accounts = (
        _scoped(db.query(MikrotikAccount), MikrotikAccount, tenant_id)
        .filter(MikrotikAccount.instance_id == instance_id)
        .all()
    )
    by_status = dict.fromkeys(("active", "suspended", "paused", "closed"), 0)
    for account in accounts:
        by_status[account.status] = by_status.get(account.status, 0) + 1
    account_ids = [a.id for a in accounts]
    invoice_counts = dict(
        db.query(MikrotikInvoice.status, func.count(MikrotikInvoice.id))
        .filter(MikrotikInvoice.account_id.in_(account_ids))
        .group_by(MikrotikInvoice.status)
        .all()
    )
    stats = {
        "total_accounts": len(accounts),
        "accounts_by_status": by_status,
        "monthly_recurring_revenue": float(
            sum((billing.money(a.monthly_fee) for a in accounts if a.status == "active"), Decimal("0"))
        ),
        "total_collected": float(sum((billing.money(a.total_paid) for a in accounts), Decimal("0"))),
        "total_outstanding": float(sum((billing.money(a.outstanding_balance) for a in accounts), Decimal("0"))),
        "total_credit": float(sum((billing.money(a.balance) for a in accounts), Decimal("0"))),
        "invoices_by_status": invoice_counts,
    }
    return _ok("stats retrieved", stats=stats)


@app.post("/api/mikrotik/billing/process-overdue", tags=["Mikrotik"])
def process_overdue(db: Session = Depends(get_db)) -> dict:
    count = billing.process_overdue_invoices(db)
    db.commit()
    return _ok("overdue invoices processed", overdue_count=count)


class ExpirationCheckRequest(BaseModel):
    model_config = {"json_schema_extra": {"example": {"grace_period_days": 3}}}
    grace_period_days: Optional[int] = Field(default=None, ge=0)
    instance_id: str = "default"


class ExpirationProcessRequest(BaseModel):
    model_config = {"json_schema_extra": {"example": {"grace_period_days": 3, "auto_suspend": True}}}
    grace_period_days: Optional[int] = Field(default=None, ge=0)
    auto_suspend: bool = True
    instance_id: str = "default"


class RenewRequest(BaseModel):
    model_config = {"json_schema_extra": {"example": {"account_id": 1, "new_next_billing_date": "2025-03-01"}}}
    account_id: int
    new_next_billing_date: date
    instance_id: Optional[str] = None


def _grace(value: Optional[int]) -> int:
    return settings.default_grace_period_days if value is None else value


def _expiration_log_out(entry: ExpirationLog) -> dict:
    return {
        "id": entry.id,
        "instance_id": entry.instance_id,
        "account_id": entry.account_id,
        "account_number": entry.account_number,
        "customer_name": entry.customer_name,
        "action": entry.action,
        "status": entry.status,
        "details": entry.details,
        "next_billing_date": _iso(entry.next_billing_date),
        "created_at": _iso(entry.created_at),
    }


@app.post("/api/mikrotik/expiration/check-status", tags=["Expiration"])
def check_expiration_status(
    payload: Optional[ExpirationCheckRequest] = None, db: Session = Depends(get_db)
) -> dict:
    payload = payload or ExpirationCheckRequest()
    grace = _grace(payload.grace_period_days)
    checks = expiration.check_accounts(db, payload.instance_id, grace)
    return _ok(
        "expiration status checked",
        grace_period_days=grace,
        checks=[c.to_dict() for c in checks],
        summary=expiration.summarize(checks),
    )


@app.post("/api/mikrotik/expiration/process", tags=["Expiration"])
def process_expirations(payload: Optional[ExpirationProcessRequest] = None, db: Session = Depends(get_db)) -> dict:
    payload = payload or ExpirationProcessRequest()
    grace = _grace(payload.grace_period_days)
    result = expiration.process_expirations(db, payload.instance_id, grace, payload.auto_suspend)
    return _ok("expirations processed", grace_period_days=grace, **result.to_dict())


@app.post("/api/mikrotik/expiration/renew", tags=["Expiration"])
def renew_account(
    payload: RenewRequest,
    tenant_id: Optional[int] = Depends(get_tenant_id),
    db: Session = Depends(get_db),
) -> dict:
    account = _get_or_404(db, MikrotikAccount, payload.account_id, "account", tenant_id)
    resumed = expiration.renew_account(
        db, account, payload.new_next_billing_date, payload.instance_id or account.instance_id
    )
    db.refresh(account)
    return _ok("account renewed", resumed=resumed, account=_account_out(account))


@app.get("/api/mikrotik/expiration/logs", tags=["Expiration"])
def list_expiration_logs(
    account_id: Optional[int] = Query(default=None),
    instance_id: str = Query(default="default"),
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(ExpirationLog).filter(ExpirationLog.instance_id == instance_id)
    if account_id is not None:
        query = query.filter(ExpirationLog.account_id == account_id)
    logs = query.order_by(ExpirationLog.id.desc()).limit(limit).all()
    return _ok("expiration logs retrieved", logs=[_expiration_log_out(entry) for entry in logs])


@app.get("/api/mikrotik/expiration/status", tags=["Expiration"])
def expiration_overview(instance_id: str = Query(default="default"), db: Session = Depends(get_db)) -> dict:
    grace = settings.default_grace_period_days
    checks = expiration.check_accounts(db, instance_id, grace)
    last = (
        db.query(ExpirationLog)
        .filter(ExpirationLog.instance_id == instance_id)
        .order_by(ExpirationLog.id.desc())
        .first()
    )
    return _ok(
        "expiration status retrieved",
        grace_period_days=grace,
        summary=expiration.summarize(checks),
        last_action=_expiration_log_out(last) if last else None,
    )


def _mpesa_out(txn: MpesaTransaction) -> dict:
    return {
        "id": txn.id,
        "transaction_type": txn.transaction_type,
        "checkout_request_id": txn.checkout_request_id,
        "phone_number": txn.phone_number,
        "amount": _money(txn.amount),
        "account_reference": txn.account_reference,
        "description": txn.description,
        "status": txn.status,
        "result_code": txn.result_code,
        "result_description": txn.result_description,
        "mpesa_receipt_number": txn.mpesa_receipt_number,
        "payment_id": txn.payment_id,
        "created_at": _iso(txn.created_at),
        "updated_at": _iso(txn.updated_at),
    }


class MpesaPaymentRequest(BaseModel):
    model_config = {
        "json_schema_extra": {
            "example": {"phone_number": "0712345678", "amount": 1740, "account_reference": "ACC-1001", "transaction_description": "Internet"}
        }
    }
    phone_number: str = Field(min_length=9)
    amount: Decimal = Field(gt=0)
    account_reference: str = Field(min_length=1)
    transaction_description: str = "Payment"


def _call_mpesa(action: str, call):
    try:
        return call()
    except MpesaNotConfigured as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except MpesaError as exc:
        logger.error("M-Pesa %s failed: %s", action, exc)
        raise HTTPException(status_code=502, detail=f"Failed to initiate {action}: {exc}") from exc


@app.post("/api/mpesa/stk-push", tags=["M-Pesa"])
def mpesa_stk_push(
    payload: MpesaPaymentRequest,
    mpesa: MpesaClient = Depends(get_mpesa_client),
    db: Session = Depends(get_db),
) -> dict:
    data = _call_mpesa(
        "STK push",
        lambda: mpesa.stk_push(payload.phone_number, payload.amount, payload.account_reference, payload.transaction_description),
    )
    txn = MpesaTransaction(
        transaction_type="STK",
        checkout_request_id=data.get("CheckoutRequestID"),
        phone_number=normalize_phone(payload.phone_number),
        amount=payload.amount,
        account_reference=payload.account_reference,
        description=payload.transaction_description,
        status="pending",
    )
    db.add(txn)
    db.commit()
    db.refresh(txn)
    return _ok(
        "STK push initiated",
        transaction=_mpesa_out(txn),
        checkout_request_id=data.get("CheckoutRequestID"),
        merchant_request_id=data.get("MerchantRequestID"),
        customer_message=data.get("CustomerMessage"),
    )


@app.post("/api/mpesa/c2b", tags=["M-Pesa"])
def mpesa_c2b(
    payload: MpesaPaymentRequest,
    mpesa: MpesaClient = Depends(get_mpesa_client),
    db: Session = Depends(get_db),
) -> dict:
    data = _call_mpesa(
        "C2B payment",
        lambda: mpesa.c2b_simulate(payload.phone_number, payload.amount, payload.account_reference),
    )
    txn = MpesaTransaction(
        transaction_type="C2B",
        checkout_request_id=data.get("OriginatorCoversationID") or data.get("ConversationID"),
        phone_number=normalize_phone(payload.phone_number),
        amount=payload.amount,
        account_reference=payload.account_reference,
        description=payload.transaction_description,
        status="pending",
    )
    db.add(txn)
    db.commit()
    db.refresh(txn)
    return _ok("C2B payment initiated", transaction=_mpesa_out(txn))


CALLBACK_ACCEPTED = {"ResultCode": 0, "ResultDesc": "Accepted"}
CANCELLED_RESULT_CODES = (1032,)


@app.post("/api/mpesa/callback", tags=["M-Pesa"])
def mpesa_callback(payload: Any = Body(default=None), db: Session = Depends(get_db)):
    try:
        callback = payload["Body"]["stkCallback"]
        checkout_id = callback["CheckoutRequestID"]
        result_code = int(callback["ResultCode"])
    except (KeyError, TypeError, ValueError):
        logger.warning("Malformed M-Pesa callback: %s", payload)
        return JSONResponse(status_code=400, content={"ResultCode": 1, "ResultDesc": "Malformed callback"})

    txn = db.query(MpesaTransaction).filter(MpesaTransaction.checkout_request_id == checkout_id).first()
    if txn is None:
        logger.warning("M-Pesa callback for unknown checkout %s", checkout_id)
        return CALLBACK_ACCEPTED
    if txn.status == "completed":
        return CALLBACK_ACCEPTED

    items = {
        item.get("Name"): item.get("Value")
        for item in (callback.get("CallbackMetadata") or {}).get("Item", [])
        if isinstance(item, dict)
    }
    txn.result_code = result_code
    txn.result_description = callback.get("ResultDesc")
    txn.updated_at = _now()

    if result_code == 0:
        txn.status = "completed"
        txn.mpesa_receipt_number = items.get("MpesaReceiptNumber")
        account = db.query(MikrotikAccount).filter(MikrotikAccount.account_number == txn.account_reference).first()
        if account is not None:
            payment = Payment(
                tenant_id=account.tenant_id,
                account_id=account.id,
                customer_id=account.customer_id,
                amount=billing.money(items.get("Amount") or txn.amount),
                payment_method="mpesa",
                mpesa_receipt_number=txn.mpesa_receipt_number,
                transaction_id=checkout_id,
                status="completed",
            )
            db.add(payment)
            _settle(db, payment, account)
            txn.payment_id = payment.id
    else:
        txn.status = "cancelled" if result_code in CANCELLED_RESULT_CODES else "failed"

    db.commit()
    logger.info("M-Pesa callback %s -> %s", checkout_id, txn.status)
    return CALLBACK_ACCEPTED


@app.post("/api/mpesa/validation", tags=["M-Pesa"])
def mpesa_validation(payload: Any = Body(default=None)) -> dict:
    logger.info("M-Pesa validation request received")
    return CALLBACK_ACCEPTED


@app.get("/api/mpesa/transactions", tags=["M-Pesa"])
def list_mpesa_transactions(
    status: Optional[str] = Query(default=None),
    account_reference: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(MpesaTransaction)
    if status is not None:
        query = query.filter(MpesaTransaction.status == status)
    if account_reference is not None:
        query = query.filter(MpesaTransaction.account_reference == account_reference)
    transactions = query.order_by(MpesaTransaction.id.desc()).all()
    return _ok("transactions retrieved", transactions=[_mpesa_out(t) for t in transactions])


@app.get("/api/mpesa/transactions/{transaction_id}", tags=["M-Pesa"])
def get_mpesa_transaction(transaction_id: int, db: Session = Depends(get_db)) -> dict:
    txn = _get_or_404(db, MpesaTransaction, transaction_id, "transaction")
    return _ok("transaction retrieved", transaction=_mpesa_out(txn))


class SmsSendRequest(BaseModel):
    model_config = {
        "json_schema_extra": {"example": {"to": ["0712345678"], "message": "Your ticket TKT-000012 has been resolved.", "provider": "advanta"}}
    }
    to: Union[str, list[str]]
    message: str = Field(min_length=1, max_length=1600)
    provider: str = "advanta"
    api_key: Optional[str] = None
    partner_id: Optional[str] = None
    shortcode: Optional[str] = None


def _sms_log_out(entry: SmsLog) -> dict:
    return {
        "id": entry.id,
        "provider": entry.provider,
        "recipients": entry.recipients,
        "message": entry.message,
        "status": entry.status,
        "message_ids": entry.message_ids,
        "error": entry.error,
        "created_at": _iso(entry.created_at),
    }


@app.post("/api/sms/send", tags=["SMS"])
def send_sms(
    payload: SmsSendRequest,
    sender: SmsSender = Depends(get_sms_sender),
    db: Session = Depends(get_db),
) -> dict:
    numbers = [payload.to] if isinstance(payload.to, str) else payload.to
    recipients = valid_recipients(numbers)
    if not recipients:
        raise HTTPException(status_code=400, detail="No valid phone numbers")

    entry = SmsLog(provider=payload.provider, recipients=recipients, message=payload.message, status="pending")
    db.add(entry)
    try:
        message_ids = sender.send(
            recipients,
            payload.message,
            payload.provider,
            api_key=payload.api_key,
            partner_id=payload.partner_id,
            shortcode=payload.shortcode,
        )
    except SmsError as exc:
        entry.status = "failed"
        entry.error = str(exc)
        db.commit()
        status_code = 400 if isinstance(exc, SmsNotConfigured) else 502
        raise HTTPException(status_code=status_code, detail=str(exc)) from exc

    entry.status = "sent"
    entry.message_ids = message_ids
    db.commit()
    db.refresh(entry)
    return _ok(
        f"SMS sent to {len(recipients)} recipient(s)",
        recipients=recipients,
        message_ids=message_ids,
        log=_sms_log_out(entry),
    )


@app.get("/api/sms/logs", tags=["SMS"])
def list_sms_logs(limit: int = Query(default=50, ge=1, le=500), db: Session = Depends(get_db)) -> dict:
    logs = db.query(SmsLog).order_by(SmsLog.id.desc()).limit(limit).all()
    return _ok("sms logs retrieved", logs=[_sms_log_out(entry) for entry in logs])


def _setting_out(setting: AppSetting) -> dict:
    return {
        "key": setting.key,
        "value": setting.value,
        "category": setting.category,
        "updated_at": _iso(setting.updated_at),
    }


class SettingUpdate(BaseModel):
    model_config = {"json_schema_extra": {"example": {"value": {"prefix": "SUP", "counter": 0}, "category": "tickets"}}}
    value: Any = None
    category: Optional[str] = None


@app.get("/api/settings", tags=["Settings"])
def list_settings(category: Optional[str] = Query(default=None), db: Session = Depends(get_db)) -> dict:
    query = db.query(AppSetting)
    if category is not None:
        query = query.filter(AppSetting.category == category)
    return _ok("settings retrieved", settings=[_setting_out(s) for s in query.order_by(AppSetting.key).all()])


@app.get("/api/settings/{key}", tags=["Settings"])
def get_setting(key: str, db: Session = Depends(get_db)) -> dict:
    setting = db.get(AppSetting, key)
    if not setting:
        raise HTTPException(status_code=404, detail="setting not found")
    return _ok("setting retrieved", setting=_setting_out(setting))


RESERVED_SETTINGS = {TICKET_SETTINGS_KEY: TicketSettings, DEDUCTION_SETTINGS_KEY: DeductionSettings}


@app.put("/api/settings/{key}", tags=["Settings"])
def put_setting(key: str, payload: SettingUpdate, db: Session = Depends(get_db)) -> dict:
    value = payload.value
    if key in RESERVED_SETTINGS:
        value = _validated(RESERVED_SETTINGS[key], value)
    setting = db.get(AppSetting, key)
    if setting is None:
        setting = AppSetting(key=key, category=payload.category or "general")
        db.add(setting)
    elif payload.category:
        setting.category = payload.category
    setting.value = value
    setting.updated_at = _now()
    db.commit()
    db.refresh(setting)
    return _ok("setting saved", setting=_setting_out(setting))


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
