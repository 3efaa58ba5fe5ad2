from __future__ import annotations

from typing import Iterator
from uuid import UUID

from fastapi import Depends, FastAPI, Header, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session, sessionmaker

from agency_config import BillingConfig, get_active_config
from agency_kernel.db.engine import create_tables, get_session_factory, init_engine_from_url
from agency_kernel.domain.clock import Clock, SystemClock
from agency_kernel.domain.task_types import TaskType, parse_task_type
from agency_kernel.exceptions import (
    BillingKernelError,
    ConcurrencyError,
    DocumentNumberingError,
    NotFoundError,
    UnknownTaskTypeError,
    ValidationError,
)
from agency_kernel.logging_config import LogContext, configure_logging, get_logger
from agency_kernel.selectors import DebitNoteSelector, TaskRecordSelector
from agency_kernel.services import SequenceDocumentNumberAllocator
from agency_services import AggregationService, DetailService, TaskRecordService, UnlinkService

from .schemas import (
    AddChargeLineRequest,
    CreateTaskRecordRequest,
    DebitNoteOut,
    GenerateDebitNoteRequest,
    HistoryEntryOut,
    RemoveDetailsRequest,
    SetLockedRequest,
    TaskRecordOut,
    TaskSummaryOut,
    UpdateDetailRequest,
    UpdateTaskRecordRequest,
    dump,
    envelope,
)

logger = get_logger("api")

PREFIX = "/jobOrders/{job_order_id}"
NOTES = PREFIX + "/taskTypes/{task_type_id}/debitNotes"
RECORDS = PREFIX + "/taskTypes/{task_type_id}/taskRecords"


def _status_for(exc: BillingKernelError) -> int:
    if isinstance(exc, ValidationError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, ConcurrencyError):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, DocumentNumberingError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _failure(status_code: int, message: str, code: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"result": 0, "message": message, "code": code},
    )


def create_app(
    config: BillingConfig | None = None,
    session_factory: sessionmaker[Session] | None = None,
    clock: Clock | None = None,
) -> FastAPI:
    """
    Build the HTTP façade.

    Without ``session_factory`` the engine is initialised from
    ``config.database`` and the tables are created.
    """
    config = config or get_active_config()
    clock = clock or SystemClock()
    configure_logging()

    if session_factory is None:
        init_engine_from_url(
            config.database.url,
            echo=config.database.echo,
            isolation_level=config.database.isolation_level,
            pool_size=config.database.pool_size,
            max_overflow=config.database.max_overflow,
        )
        create_tables()
        session_factory = get_session_factory()

    app = FastAPI(title="Agency Billing API", version="0.1.0")
    disabled = config.task_types.disabled

    def get_db() -> Iterator[Session]:
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    def get_actor(x_actor_id: str | None = Header(default=None)) -> UUID:
        if not x_actor_id:
            return config.billing.system_actor_id
        try:
            return UUID(x_actor_id)
        except ValueError:
            raise ValidationError(f"X-Actor-Id is not a UUID: {x_actor_id}") from None

    def task_type_of(task_type_id: str) -> TaskType:
        task_type = parse_task_type(task_type_id)
        if task_type in disabled:
            raise UnknownTaskTypeError(task_type.value)
        return task_type

    def service_options() -> dict:
        return {
            "clock": clock,
            "disabled_task_types": disabled,
            "decimals": config.amounts.decimals,
        }

    @app.middleware("http")
    async def bind_correlation_id(request: Request, call_next):
        request_id = request.headers.get("X-Request-Id")
        with LogContext.bind(correlation_id=request_id):
            response = await call_next(request)
        if request_id:
            response.headers["X-Request-Id"] = request_id
        return response

    @app.exception_handler(BillingKernelError)
    async def handle_billing_error(request: Request, exc: BillingKernelError) -> JSONResponse:
        status_code = _status_for(exc)
        logger.info(
            "request_failed",
            extra={"path": request.url.path, "status_code": status_code, "error_code": exc.code},
        )
        return _failure(status_code, str(exc), exc.code)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        return _failure(status.HTTP_400_BAD_REQUEST, details, ValidationError.code)

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "request_failed",
            extra={"path": request.url.path, "status_code": 500, "error_type": type(exc).__name__},
            exc_info=exc,
        )
        return _failure(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error", "INTERNAL_ERROR")

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @app.get(PREFIX + "/taskSummary")
    def task_summary(job_order_id: UUID, db: Session = Depends(get_db)) -> dict:
        summaries = [
            s for s in TaskRecordSelector(db).task_summary(job_order_id)
            if s.task_type not in disabled
        ]
        return envelope("OK", dump([TaskSummaryOut.from_summary(s) for s in summaries]))

    @app.get(NOTES)
    def list_debit_notes(job_order_id: UUID, task_type_id: str, db: Session = Depends(get_db)) -> dict:
        views = DebitNoteSelector(db).list_for_job_order(job_order_id, task_type_of(task_type_id))
        return envelope("OK", dump([DebitNoteOut.from_view(v) for v in views]))

    @app.get(NOTES + "/{debit_note_id}")
    def get_debit_note(
        job_order_id: UUID,
        task_type_id: str,
        debit_note_id: UUID,
        db: Session = Depends(get_db),
    ) -> dict:
        view = DebitNoteSelector(db).get_view(job_order_id, task_type_of(task_type_id), debit_note_id)
        return dump(DebitNoteOut.from_view(view))

    @app.get(NOTES + "/{debit_note_id}/history")
    def debit_note_history(
        job_order_id: UUID,
        task_type_id: str,
        debit_note_id: UUID,
        db: Session = Depends(get_db),
    ) -> dict:
        task_type_of(task_type_id)
        entries = DebitNoteSelector(db).history(debit_note_id)
        return envelope("OK", dump([HistoryEntryOut.from_entry(e) for e in entries]))

    # ------------------------------------------------------------------
    # Debit notes
    # ------------------------------------------------------------------

    @app.post(NOTES)
    def generate_debit_note(
        job_order_id: UUID,
        task_type_id: str,
        payload: GenerateDebitNoteRequest,
        db: Session = Depends(get_db),
        actor_id: UUID = Depends(get_actor),
    ) -> dict:
        service = AggregationService(
            db,
            numberer=SequenceDocumentNumberAllocator(
                db,
                number_format=config.numbering.number_format,
                sequence_name=config.numbering.sequence_name,
                clock=clock,
            ),
            strict_inconsistent_billing=config.billing.strict_inconsistent_billing,
            **service_options(),
        )
        result = service.generate_or_attach(
            job_order_id,
            task_type_of(task_type_id),
            payload.task_record_ids,
            actor_id,
            existing_debit_note_no=payload.debit_note_no,
        )
        extra = {}
        if result.warning is not None:
            extra["warning"] = {
                "code": result.warning.code,
                "debitNoteNos": result.warning.debit_note_nos,
            }
        return envelope(
            result.message,
            dump(DebitNoteOut.from_view(result.debit_note)),
            outcome=result.outcome.value,
            **extra,
        )

    @app.delete(NOTES + "/{debit_note_id}")
    def delete_debit_note(
        job_order_id: UUID,
        task_type_id: str,
        debit_note_id: UUID,
        expected_edit_version: int | None = Query(default=None, alias="expectedEditVersion"),
        db: Session = Depends(get_db),
        actor_id: UUID = Depends(get_actor),
    ) -> dict:
        result = UnlinkService(db, **service_options()).delete_debit_note(
            job_order_id,
            task_type_of(task_type_id),
            debit_note_id,
            actor_id,
            expected_edit_version=expected_edit_version,
        )
        return envelope(
            f"Debit note {result.debit_note_no} deleted, "
            f"{len(result.unlinked_record_ids)} record(s) unbilled"
        )

    @app.put(NOTES + "/{debit_note_id}/details/{item_no}")
    def update_detail(
        job_order_id: UUID,
        task_type_id: str,
        debit_note_id: UUID,
        item_no: int,
        payload: UpdateDetailRequest,
        db: Session = Depends(get_db),
        actor_id: UUID = Depends(get_actor),
    ) -> dict:
        view = DetailService(db, **service_options()).update_detail(
            job_order_id,
            task_type_of(task_type_id),
            debit_note_id,
            item_no,
            actor_id,
            expected_edit_version=payload.expected_edit_version,
            remarks=payload.remarks,
            quantity=payload.quantity,
            unit_price=payload.unit_price,
            service_charge_percentage=payload.service_charge_percentage,
        )
        return envelope(f"Item {item_no} updated", dump(DebitNoteOut.from_view(view)))

    @app.post(NOTES + "/{debit_note_id}/details")
    def add_charge_line(
        job_order_id: UUID,
        task_type_id: str,
        debit_note_id: UUID,
        payload: AddChargeLineRequest,
        db: Session = Depends(get_db),
        actor_id: UUID = Depends(get_actor),
    ) -> dict:
        view = DetailService(db, **service_options()).add_charge_line(
            job_order_id,
            task_type_of(task_type_id),
            debit_note_id,
            actor_id,
            charge_id=payload.charge_id,
            gl_account_id=payload.gl_account_id,
            quantity=payload.quantity,
            unit_price=payload.unit_price,
            tax_id=payload.tax_id,
            tax_percentage=payload.tax_percentage,
            remarks=payload.remarks,
            expected_edit_version=payload.expected_edit_version,
        )
        return envelope("Charge line added", dump(DebitNoteOut.from_view(view)))

    @app.post(NOTES + "/{debit_note_id}/details:remove")
    def remove_details(
        job_order_id: UUID,
        task_type_id: str,
        debit_note_id: UUID,
        payload: RemoveDetailsRequest,
        db: Session = Depends(get_db),
        actor_id: UUID = Depends(get_actor),
    ) -> dict:
        result = DetailService(db, **service_options()).remove_details(
            job_order_id,
            task_type_of(task_type_id),
            debit_note_id,
            payload.item_nos,
            actor_id,
            expected_edit_version=payload.expected_edit_version,
        )
        if result.debit_note_deleted:
            return envelope(f"Debit note {result.debit_note_no} deleted", debitNoteDeleted=True)
        return envelope(
            f"{len(payload.item_nos)} item(s) removed",
            dump(DebitNoteOut.from_view(result.debit_note)),
            debitNoteDeleted=False,
        )

    @app.put(NOTES + "/{debit_note_id}/lock")
    def set_locked(
        job_order_id: UUID,
        task_type_id: str,
        debit_note_id: UUID,
        payload: SetLockedRequest,
        db: Session = Depends(get_db),
        actor_id: UUID = Depends(get_actor),
    ) -> dict:
        view = DetailService(db, **service_options()).set_locked(
            job_order_id,
            task_type_of(task_type_id),
            debit_note_id,
            payload.is_locked,
            actor_id,
            expected_edit_version=payload.expected_edit_version,
        )
        message = "locked" if view.is_locked else "unlocked"
        return envelope(f"Debit note {view.debit_note_no} {message}", dump(DebitNoteOut.from_view(view)))

    # ------------------------------------------------------------------
    # Task records
    # ------------------------------------------------------------------

    @app.get(RECORDS)
    def list_task_records(
        job_order_id: UUID,
        task_type_id: str,
        billed: bool | None = None,
        db: Session = Depends(get_db),
    ) -> dict:
        records = TaskRecordService(db, **service_options()).list_records(
            job_order_id, task_type_of(task_type_id), billed=billed
        )
        return envelope("OK", dump([TaskRecordOut.from_info(r) for r in records]))

    @app.post(RECORDS, status_code=status.HTTP_201_CREATED)
    def create_task_record(
        job_order_id: UUID,
        task_type_id: str,
        payload: CreateTaskRecordRequest,
        db: Session = Depends(get_db),
        actor_id: UUID = Depends(get_actor),
    ) -> dict:
        record = TaskRecordService(db, **service_options()).create_record(
            job_order_id,
            task_type_of(task_type_id),
            actor_id,
            **payload.model_dump(exclude_none=True),
        )
        return envelope("Task record created", dump(TaskRecordOut.from_info(record)))

    @app.put(RECORDS + "/{task_record_id}")
    def update_task_record(
        job_order_id: UUID,
        task_type_id: str,
        task_record_id: UUID,
        payload: UpdateTaskRecordRequest,
        db: Session = Depends(get_db),
        actor_id: UUID = Depends(get_actor),
    ) -> dict:
        changes = payload.model_dump(
            exclude_unset=True, exclude_none=True, exclude={"expected_edit_version"}
        )
        record = TaskRecordService(db, **service_options()).update_record(
            job_order_id,
            task_type_of(task_type_id),
            task_record_id,
            payload.expected_edit_version,
            actor_id,
            **changes,
        )
        return envelope("Task record updated", dump(TaskRecordOut.from_info(record)))

    @app.delete(RECORDS + "/{task_record_id}")
    def delete_task_record(
        job_order_id: UUID,
        task_type_id: str,
        task_record_id: UUID,
        expected_edit_version: int = Query(alias="expectedEditVersion"),
        db: Session = Depends(get_db),
        actor_id: UUID = Depends(get_actor),
    ) -> dict:
        TaskRecordService(db, **service_options()).delete_record(
            job_order_id,
            task_type_of(task_type_id),
            task_record_id,
            expected_edit_version,
            actor_id,
        )
        return envelope("Task record deleted")

    return app
