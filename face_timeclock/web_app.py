import logging
import time
from contextlib import asynccontextmanager
from dataclasses import asdict, replace
from datetime import date
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from pydantic import BaseModel, Field

from .config import API_LOG_REQUESTS, DB_PATH
from .database import AttendanceDatabase
from .enrollment_service import EnrollmentService
from .exceptions import (
    AttendanceError,
    DatabaseError,
    DimensionMismatch,
    DuplicateOrOrderingViolation,
    NoUsableSignal,
    PersistenceFailure,
)
from .identification import describe_result
from .image_compare import decode_image_b64
from .kiosk import KioskSession, create_kiosk
from .models import AttendanceRecord, CaptureSample, Direction, Shift, Slot, strip_data_uri
from .rules import validate_sequence

logger = logging.getLogger("face_timeclock.web_app")


class ModeBody(BaseModel):
    shift: Shift
    direction: Direction


class FrameBody(BaseModel):
    image: str


class IdentifyBody(BaseModel):
    image: Optional[str] = None
    descriptor: Optional[List[float]] = None


class SlotBody(BaseModel):
    name: str
    image: Optional[str] = None
    descriptor: Optional[List[float]] = None


class AttendanceBody(BaseModel):
    enrollee_id: str = Field(alias="enrolleeId")
    shift: Shift
    direction: Direction
    verified: bool = False
    reference_image: Optional[str] = Field(default=None, alias="referenceImage")


def _status_for(exc: AttendanceError) -> int:
    if isinstance(exc, DuplicateOrOrderingViolation):
        return 409
    if isinstance(exc, (PersistenceFailure, DatabaseError)):
        return 503
    return 400


def _raise_http(exc: AttendanceError) -> None:
    raise HTTPException(status_code=_status_for(exc), detail=str(exc)) from exc


def _decode_frame(image_b64: str):
    frame = decode_image_b64(image_b64)
    if frame is None:
        raise HTTPException(status_code=400, detail="Image could not be decoded.")
    return frame


def create_web_app(
    db: Optional[AttendanceDatabase] = None,
    kiosk: Optional[KioskSession] = None,
    engine=None,
) -> FastAPI:
    db = db or AttendanceDatabase(DB_PATH)
    kiosk = kiosk or create_kiosk(db, extractor=engine)
    gallery = kiosk.identifier.gallery
    enrollment = EnrollmentService(db=db, gallery=gallery, engine=engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Time-clock API ready (%d enrollees loaded)", len(gallery))
        yield
        kiosk.cancel()

    app = FastAPI(title="Face Time Clock", version="1.0.0", lifespan=lifespan)
    app.state.db = db
    app.state.kiosk = kiosk
    app.state.enrollment = enrollment

    if API_LOG_REQUESTS:

        @app.middleware("http")
        async def log_requests(request: Request, call_next):
            started = time.perf_counter()
            response = await call_next(request)
            logger.info(
                "%s %s -> %s (%.1f ms)",
                request.method,
                request.url.path,
                response.status_code,
                (time.perf_counter() - started) * 1000.0,
            )
            return response

    @app.get("/api/health")
    def health():
        return {"ok": True, "enrollees": len(gallery), "descriptors": gallery.has_vectors()}

    # Kiosk

    @app.get("/api/state")
    def state():
        return kiosk.snapshot()

    @app.get("/api/events")
    def events(limit: int = 20):
        return {"events": kiosk.recent_events(limit)}

    @app.post("/api/mode")
    def select_mode(payload: ModeBody):
        try:
            kiosk.select_mode(payload.shift, payload.direction)
        except AttendanceError as exc:
            _raise_http(exc)
        return kiosk.snapshot()

    @app.post("/api/frame")
    def frame(payload: FrameBody):
        attempted = kiosk.on_presence_frame(_decode_frame(payload.image))
        return {"attempted": attempted, **kiosk.snapshot()}

    @app.post("/api/cancel")
    def cancel():
        kiosk.cancel()
        return kiosk.snapshot()

    @app.post("/api/retry")
    def retry():
        try:
            kiosk.retry_commit()
        except AttendanceError as exc:
            _raise_http(exc)
        return kiosk.snapshot()

    @app.post("/api/identify")
    def identify(payload: IdentifyBody):
        """Diagnostic lookup against the gallery. Does not touch the kiosk session or its state."""
        sample = CaptureSample(
            image=_decode_frame(payload.image) if payload.image else None,
            embedding=payload.descriptor,
            image_b64=strip_data_uri(payload.image),
        )
        try:
            result = kiosk.identifier.identify(sample)
        except NoUsableSignal as exc:
            _raise_http(exc)
        enrollee = gallery.get(result.enrollee_id) if result.enrollee_id else None
        name = enrollee.name if enrollee else None
        return {**result.to_dict(), "name": name, "message": describe_result(result, name)}

    # Attendance

    @app.get("/api/attendance")
    def list_attendance(
        enrollee_id: str = Query("", alias="enrolleeId"),
        date_from: str = Query("", alias="dateFrom"),
        date_to: str = Query("", alias="dateTo"),
        shift: Optional[Shift] = None,
        direction: Optional[Direction] = None,
        verified: Optional[bool] = None,
        limit: int = 100,
        offset: int = 0,
    ):
        try:
            records = db.search_attendance(
                enrollee_id=enrollee_id,
                date_from=date_from,
                date_to=date_to,
                shift=shift,
                direction=direction,
                verified=verified,
                limit=limit,
                offset=offset,
            )
        except AttendanceError as exc:
            _raise_http(exc)
        return {"records": [record.to_dict() for record in records], "count": len(records)}

    @app.get("/api/attendance/today")
    def today_attendance():
        records = db.today_attendance()
        return {"date": date.today().isoformat(), "records": [record.to_dict() for record in records]}

    @app.get("/api/attendance/stats")
    def attendance_stats(
        date_from: str = Query("", alias="dateFrom"),
        date_to: str = Query("", alias="dateTo"),
    ):
        return db.attendance_stats(date_from=date_from, date_to=date_to)

    @app.get("/api/attendance/{record_id}/image")
    def attendance_image(record_id: int):
        image = db.attendance_image(record_id)
        if image is None:
            raise HTTPException(status_code=404, detail=f"No image for attendance record {record_id}.")
        return {"id": record_id, "image": image}

    @app.post("/api/attendance", status_code=201)
    def record_attendance(payload: AttendanceBody):
        """Manual entry. Sequencing rules still apply; the row is stored as given."""
        if db.find_enrollee(payload.enrollee_id) is None:
            raise HTTPException(status_code=404, detail=f"Unknown enrollee {payload.enrollee_id}.")
        now = kiosk.clock()
        try:
            validate_sequence(payload.shift, payload.direction, db.find_today_records(payload.enrollee_id, now.date()))
            record = AttendanceRecord(
                enrollee_id=payload.enrollee_id,
                shift=payload.shift,
                direction=payload.direction,
                timestamp=now,
                verified=payload.verified,
                reference_image=strip_data_uri(payload.reference_image),
            )
            record_id = db.commit_attendance(record)
        except AttendanceError as exc:
            _raise_http(exc)
        logger.info(
            "Manual attendance %s %s recorded for %s (id=%s)",
            payload.shift.value,
            payload.direction.value,
            payload.enrollee_id,
            record_id,
        )
        return replace(record, id=record_id).to_dict()

    # Enrollees

    @app.get("/api/enrollees")
    def list_enrollees():
        return {"enrollees": [asdict(profile) for profile in db.list_enrollee_profiles()]}

    @app.get("/api/enrollees/{enrollee_id}")
    def get_enrollee(enrollee_id: str):
        enrollee = db.find_enrollee(enrollee_id)
        if enrollee is None:
            raise HTTPException(status_code=404, detail=f"Unknown enrollee {enrollee_id}.")
        slots: Dict[str, Dict[str, bool]] = {
            slot.value: {"descriptor": entry.has_vector, "image": bool(entry.reference_image)}
            for slot, entry in enrollee.slots.items()
            if not entry.is_empty
        }
        return {"enrolleeId": enrollee.enrollee_id, "name": enrollee.name, "slots": slots}

    @app.post("/api/enrollees/{enrollee_id}/slots/{slot}", status_code=201)
    def enroll_slot(enrollee_id: str, slot: Slot, payload: SlotBody):
        try:
            enrollment.save_slot(enrollee_id, payload.name, slot, payload.descriptor, payload.image)
        except DimensionMismatch as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        except AttendanceError as exc:
            _raise_http(exc)
        return {"ok": True, "enrolleeId": enrollee_id, "slot": slot.value}

    @app.delete("/api/enrollees/{enrollee_id}")
    def delete_enrollee(enrollee_id: str):
        try:
            deleted = db.delete_enrollee(enrollee_id)
        except AttendanceError as exc:
            _raise_http(exc)
        if not deleted:
            raise HTTPException(status_code=404, detail=f"Unknown enrollee {enrollee_id}.")
        gallery.remove(enrollee_id)
        logger.info("Deleted enrollee %s", enrollee_id)
        return {"ok": True}

    return app
