from __future__ import annotations

import hmac
import logging
from contextlib import asynccontextmanager
from typing import List, Literal, Optional

import httpx
from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from guestlist_core import GuestRecord, GuestStore
from guestlist_core.aliases import FIELD_ALIASES, validate_aliases
from guestlist_core.config import StoreSettings, operator_pins
from guestlist_core.errors import (
    ConfigurationError,
    RecordNotFoundError,
    SchemaMismatchError,
)
from guestlist_core.models import BreakdownEntry, GuestListMetrics

logger = logging.getLogger(__name__)

MIN_PAGE_SIZE = 10
MAX_PAGE_SIZE = 200
STORE_ERRORS = (ValueError, LookupError, RuntimeError, httpx.HTTPError)


@asynccontextmanager
async def lifespan(app: FastAPI):
    validate_aliases(FIELD_ALIASES)
    yield
    store = getattr(app.state, "store", None)
    if store is not None:
        await store.aclose()


app = FastAPI(title="Guest Check-in API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class GuestRecordModel(BaseModel):
    id: str
    department: str = Field(default="", alias="pmzDepartment")
    responsible: str = Field(default="", alias="pmzResponsible")
    company: str = ""
    guest: str = ""
    plus_one: Optional[str] = Field(default=None, alias="plusOne")
    arrival_confirmation: Literal["YES", "NO", "UNKNOWN"] = Field(default="UNKNOWN", alias="arrivalConfirmation")
    guest_check_in: bool = Field(default=False, alias="guestCheckIn")
    plus_one_check_in: bool = Field(default=False, alias="plusOneCheckIn")
    check_in_time: Optional[str] = Field(default=None, alias="checkInTime")
    farewell_gift: bool = Field(default=False, alias="farewellGift")
    farewell_time: Optional[str] = Field(default=None, alias="farewellTime")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_record(cls, record: GuestRecord) -> "GuestRecordModel":
        return cls(**record.to_api())


class MetricsModel(BaseModel):
    arrived_total: int = Field(alias="arrivedTotal")
    gifts_given: int = Field(alias="giftsGiven")
    total_invited: int = Field(alias="totalInvited")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_metrics(cls, metrics: GuestListMetrics | None) -> "MetricsModel":
        return cls(**(metrics or GuestListMetrics()).to_api())


class BreakdownModel(BaseModel):
    label: str
    invited: int
    arrived: int


class BreakdownsModel(BaseModel):
    by_department: List[BreakdownModel] = Field(default_factory=list, alias="byDepartment")
    by_responsible: List[BreakdownModel] = Field(default_factory=list, alias="byResponsible")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_entries(cls, breakdowns: dict[str, List[BreakdownEntry]]) -> "BreakdownsModel":
        def convert(key: str) -> List[BreakdownModel]:
            return [
                BreakdownModel(label=item.label, invited=item.invited, arrived=item.arrived)
                for item in breakdowns.get(key, [])
            ]

        return cls(byDepartment=convert("byDepartment"), byResponsible=convert("byResponsible"))


class GuestListResponse(BaseModel):
    records: List[GuestRecordModel]
    offset: Optional[str] = None
    limit: int
    total: int
    departments: List[str] = Field(default_factory=list)
    responsibles: List[str] = Field(default_factory=list)
    metrics: MetricsModel
    breakdowns: BreakdownsModel


class StatsResponse(BaseModel):
    metrics: MetricsModel
    breakdowns: BreakdownsModel


class CreateGuestPayload(BaseModel):
    guest: Optional[str] = None
    company: Optional[str] = None
    department: Optional[str] = None
    responsible: Optional[str] = None
    plus_one: Optional[str] = Field(default=None, alias="plusOne")

    model_config = ConfigDict(populate_by_name=True)


class CreateGuestResponse(BaseModel):
    ok: bool = True
    id: str


class CheckInPayload(BaseModel):
    record_id: str = Field(alias="recordId", min_length=1)
    guest: bool
    plus_one: bool = Field(alias="plusOne")

    model_config = ConfigDict(populate_by_name=True)


class GiftPayload(BaseModel):
    record_id: str = Field(alias="recordId", min_length=1)
    value: bool

    model_config = ConfigDict(populate_by_name=True)


class CompanionPayload(BaseModel):
    record_id: str = Field(alias="recordId", min_length=1)
    name: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class OkResponse(BaseModel):
    ok: bool = True


class LoginPayload(BaseModel):
    role: Literal["hostess", "admin"]
    pin: str = Field(min_length=1)


def get_store(request: Request) -> GuestStore:
    store = getattr(request.app.state, "store", None)
    if store is None:
        try:
            store = GuestStore.from_settings(StoreSettings.from_env())
        except ConfigurationError as exc:
            logger.error("Guest store is not configured: %s", exc)
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        request.app.state.store = store
    return store


def _remote_failure(exc: Exception) -> HTTPException:
    if isinstance(exc, ValueError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, RecordNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, SchemaMismatchError):
        logger.error("Guest table schema does not match the configured field aliases: %s", exc)
        return HTTPException(status_code=500, detail="Guest table field names are misconfigured")
    logger.exception("Remote guest table request failed")
    return HTTPException(status_code=502, detail=str(exc) or "Remote guest table is unavailable")


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/guests", response_model=GuestListResponse)
async def list_guests(
    response: Response,
    q: str = Query(default=""),
    department: str = Query(default=""),
    responsible: str = Query(default=""),
    limit: Optional[int] = Query(default=None),
    offset: str = Query(default=""),
    store: GuestStore = Depends(get_store),
):
    page_size = max(min(limit, MAX_PAGE_SIZE), MIN_PAGE_SIZE) if limit else 100
    try:
        page = await store.list_guests(q=q, department=department, responsible=responsible, limit=page_size, offset=offset)
    except STORE_ERRORS as exc:
        raise _remote_failure(exc) from exc

    response.headers["Cache-Control"] = "no-store"
    return GuestListResponse(
        records=[GuestRecordModel.from_record(record) for record in page.records],
        offset=page.cursor,
        limit=page.limit,
        total=page.total,
        departments=page.departments,
        responsibles=page.responsibles,
        metrics=MetricsModel.from_metrics(page.metrics),
        breakdowns=BreakdownsModel.from_entries(page.breakdowns),
    )


@app.post("/guests", response_model=CreateGuestResponse)
async def create_guest(payload: CreateGuestPayload, store: GuestStore = Depends(get_store)):
    try:
        record_id = await store.create_guest(payload.model_dump(by_alias=True))
    except STORE_ERRORS as exc:
        raise _remote_failure(exc) from exc
    return CreateGuestResponse(id=record_id)


@app.post("/checkin", response_model=GuestRecordModel)
async def check_in(payload: CheckInPayload, store: GuestStore = Depends(get_store)):
    try:
        record = await store.toggle_check_in(payload.record_id, guest=payload.guest, plus_one=payload.plus_one)
    except STORE_ERRORS as exc:
        raise _remote_failure(exc) from exc
    return GuestRecordModel.from_record(record)


@app.post("/gift", response_model=GuestRecordModel)
async def gift(payload: GiftPayload, store: GuestStore = Depends(get_store)):
    try:
        record = await store.toggle_gift(payload.record_id, payload.value)
    except STORE_ERRORS as exc:
        raise _remote_failure(exc) from exc
    return GuestRecordModel.from_record(record)


@app.post("/companion", response_model=OkResponse)
async def companion(payload: CompanionPayload, store: GuestStore = Depends(get_store)):
    try:
        await store.update_companion(payload.record_id, payload.name)
    except STORE_ERRORS as exc:
        raise _remote_failure(exc) from exc
    return OkResponse()


@app.get("/stats", response_model=StatsResponse)
async def stats(store: GuestStore = Depends(get_store)):
    try:
        metadata = await store.metadata()
    except STORE_ERRORS as exc:
        raise _remote_failure(exc) from exc
    return StatsResponse(
        metrics=MetricsModel.from_metrics(metadata.metrics),
        breakdowns=BreakdownsModel.from_entries(metadata.breakdowns),
    )


@app.post("/auth/login")
def login(payload: LoginPayload, response: Response) -> dict[str, str]:
    expected = operator_pins().get(payload.role, "")
    if not expected or not hmac.compare_digest(expected.encode(), payload.pin.encode()):
        raise HTTPException(status_code=401, detail="Invalid PIN")
    response.set_cookie("role", payload.role, httponly=True, path="/", samesite="lax")
    return {"message": "Login successful"}
