"""FastAPI wrapper over the recurrence, checklist and evaluation engine.

Library code raises the typed errors from ``errors``; this layer is the only
place they turn into HTTP status codes.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import datetime
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

# Ensure legacy absolute imports (e.g., "import database") still resolve.
APP_DIR = Path(__file__).resolve().parent
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from database import (  # noqa: E402
    EmployeeSessionLocal,
    Evaluation,
    ItemInstance,
    ScheduledItem,
    SessionLocal,
    SettingsSessionLocal,
    get_scheduled_item,
    init_database,
)
from errors import AccessDenied, ConfigurationError, NotFoundError, StateConflict, ValidationError  # noqa: E402
from evaluations.scheduler import EvaluationCycleScheduler  # noqa: E402
from evaluations.workflow import EvaluationWorkflow  # noqa: E402
from instances import (  # noqa: E402
    get_or_create_instance,
    instance_metrics,
    list_instances,
    set_work_item_status,
    summarize_instances,
)
from upcoming import due_for_store, upcoming_for_store  # noqa: E402


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_database()
    yield


app = FastAPI(title="Store Operations API", version="0.1", lifespan=lifespan)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_employee_db():
    db = EmployeeSessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_settings_db():
    db = SettingsSessionLocal()
    try:
        yield db
    finally:
        db.close()


def _parse_date(value: Optional[str], field: str) -> datetime.date:
    try:
        return datetime.date.fromisoformat(str(value))
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail=f"{field} must be YYYY-MM-DD")


def _parse_datetime(value: Optional[str], field: str) -> datetime.datetime:
    try:
        parsed = datetime.datetime.fromisoformat(str(value))
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail=f"{field} must be an ISO date or datetime")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed


def _actor_id(payload: Dict[str, Any]) -> int:
    try:
        return int(payload.get("actor_id"))
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="actor_id is required")


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=422, detail={"message": str(exc), "fields": exc.fields})
    if isinstance(exc, AccessDenied):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ConfigurationError):
        return HTTPException(
            status_code=409,
            detail={"message": str(exc), "configuration_issues": exc.configuration_issues},
        )
    if isinstance(exc, StateConflict):
        return HTTPException(
            status_code=409,
            detail={"message": str(exc), "expected": exc.expected, "actual": exc.actual},
        )
    return HTTPException(status_code=500, detail=str(exc))


DOMAIN_ERRORS = (ValidationError, AccessDenied, NotFoundError, ConfigurationError, StateConflict)


def _serialize_item(item: ScheduledItem) -> Dict[str, Any]:
    spec = item.recurrence
    return {
        "id": item.id,
        "kind": item.kind,
        "name": item.name,
        "department": item.department,
        "is_recurring": item.is_recurring,
        "recurrence": spec.to_dict() if spec else None,
        "recurrence_label": spec.label if spec else None,
        "version": item.version,
        "passing_score": item.passing_score,
    }


def _serialize_instance(instance: ItemInstance) -> Dict[str, Any]:
    return {
        "id": instance.id,
        "scheduled_item_id": instance.scheduled_item_id,
        "date": instance.date,
        "status": instance.status,
        "completed_at": instance.completed_at,
        "work_items": [
            {
                "id": item.id,
                "title": item.title,
                "status": item.status,
                "check_type": item.check_type,
                "is_critical": item.is_critical,
                "validation": item.validation,
                "value": item.value,
                "result": item.result,
                "assigned_to": item.assigned_to,
                "completed_by": item.completed_by,
                "completed_at": item.completed_at,
            }
            for item in instance.work_items
        ],
        "metrics": instance_metrics(instance),
    }


def _serialize_evaluation(evaluation: Evaluation) -> Dict[str, Any]:
    return {
        "id": evaluation.id,
        "store_id": evaluation.store_id,
        "employee_id": evaluation.employee_id,
        "evaluator_id": evaluation.evaluator_id,
        "template_id": evaluation.template_id,
        "status": evaluation.status,
        "scheduled_date": evaluation.scheduled_date,
        "review_session_date": evaluation.review_session_date,
        "self_ratings": evaluation.self_ratings,
        "manager_ratings": evaluation.manager_ratings,
        "overall_comments": evaluation.overall_comments,
        "completed_at": evaluation.completed_at,
        "acknowledged": evaluation.acknowledged,
        "acknowledged_at": evaluation.acknowledged_at,
    }


def _workflow(db, employee_db, settings_db, actor: str = "api") -> EvaluationWorkflow:
    return EvaluationWorkflow(db, employee_session=employee_db, settings_session=settings_db, actor=actor)


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/api/v1/stores/{store_id}/upcoming")
def store_upcoming(
    store_id: int,
    from_date: Optional[str] = Query(None, alias="from"),
    days: Optional[int] = Query(None, ge=0, le=366),
    kind: Optional[str] = Query(None),
    db=Depends(get_db),
    settings_db=Depends(get_settings_db),
) -> JSONResponse:
    start = _parse_date(from_date, "from") if from_date else datetime.date.today()
    groups = upcoming_for_store(db, store_id, start, days, kind=kind, settings_session=settings_db)
    payload = [
        {"date": group["date"], "items": [_serialize_item(item) for item in group["items"]]} for group in groups
    ]
    return JSONResponse(content=jsonable_encoder({"store_id": store_id, "from": start, "days": payload}))


@app.get("/api/v1/stores/{store_id}/due")
def store_due(
    store_id: int,
    date: Optional[str] = Query(None),
    kind: Optional[str] = Query(None),
    db=Depends(get_db),
) -> JSONResponse:
    on_date = _parse_date(date, "date") if date else datetime.date.today()
    items = due_for_store(db, store_id, on_date, kind=kind)
    return JSONResponse(
        content=jsonable_encoder({"store_id": store_id, "date": on_date, "items": [_serialize_item(i) for i in items]})
    )


@app.post("/api/v1/scheduled-items/{item_id}/instances")
def materialize_instance(item_id: int, payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    on_date = _parse_date(payload.get("date"), "date")
    actor = (payload.get("actor") or "api").strip() or "api"
    try:
        instance = get_or_create_instance(db, item_id, on_date, actor=actor)
    except DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc
    return JSONResponse(content=jsonable_encoder(_serialize_instance(instance)))


@app.get("/api/v1/scheduled-items/{item_id}/instances")
def item_instances(
    item_id: int,
    start: Optional[str] = Query(None),
    end: Optional[str] = Query(None),
    db=Depends(get_db),
) -> JSONResponse:
    try:
        get_scheduled_item(db, item_id)
    except NotFoundError as exc:
        raise _http_error(exc) from exc
    instances = list_instances(
        db,
        item_id,
        start=_parse_date(start, "start") if start else None,
        end=_parse_date(end, "end") if end else None,
    )
    summary = summarize_instances(instances)
    return JSONResponse(content=jsonable_encoder(summary))


@app.patch("/api/v1/instances/{instance_id}/work-items/{work_item_id}")
def update_work_item(
    instance_id: int,
    work_item_id: int,
    payload: Dict[str, Any],
    db=Depends(get_db),
) -> JSONResponse:
    status = payload.get("status")
    actor_id = _actor_id(payload)
    try:
        instance = set_work_item_status(
            db, instance_id, work_item_id, status, actor_id=actor_id, value=payload.get("value")
        )
    except DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc
    return JSONResponse(content=jsonable_encoder(_serialize_instance(instance)))


@app.put("/api/v1/stores/{store_id}/evaluation-scheduling")
def set_evaluation_scheduling(
    store_id: int,
    payload: Dict[str, Any],
    db=Depends(get_db),
    employee_db=Depends(get_employee_db),
    settings_db=Depends(get_settings_db),
) -> JSONResponse:
    if "enabled" not in payload:
        raise HTTPException(status_code=400, detail="enabled is required")
    today = _parse_date(payload["today"], "today") if payload.get("today") else datetime.date.today()
    actor = (payload.get("actor") or "api").strip() or "api"
    scheduler = EvaluationCycleScheduler(db, employee_session=employee_db, settings_session=settings_db, actor=actor)
    try:
        tally = scheduler.set_auto_schedule(
            store_id,
            bool(payload["enabled"]),
            payload.get("transition_mode"),
            today=today,
        )
    except DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc
    return JSONResponse(content=jsonable_encoder(tally))


@app.post("/api/v1/evaluations/{evaluation_id}/self-evaluation")
def submit_self_evaluation(
    evaluation_id: int,
    payload: Dict[str, Any],
    db=Depends(get_db),
    employee_db=Depends(get_employee_db),
    settings_db=Depends(get_settings_db),
) -> JSONResponse:
    workflow = _workflow(db, employee_db, settings_db)
    try:
        evaluation = workflow.submit_self_evaluation(
            evaluation_id, payload.get("answers") or {}, actor_id=_actor_id(payload)
        )
    except DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc
    return JSONResponse(content=jsonable_encoder(_serialize_evaluation(evaluation)))


@app.post("/api/v1/evaluations/{evaluation_id}/review-session")
def schedule_review_session(
    evaluation_id: int,
    payload: Dict[str, Any],
    db=Depends(get_db),
    employee_db=Depends(get_employee_db),
    settings_db=Depends(get_settings_db),
) -> JSONResponse:
    when = _parse_datetime(payload.get("review_session_date"), "review_session_date")
    workflow = _workflow(db, employee_db, settings_db)
    try:
        evaluation = workflow.schedule_review_session(evaluation_id, when, actor_id=_actor_id(payload))
    except DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc
    return JSONResponse(content=jsonable_encoder(_serialize_evaluation(evaluation)))


@app.post("/api/v1/evaluations/{evaluation_id}/start-review")
def start_review(
    evaluation_id: int,
    payload: Dict[str, Any],
    db=Depends(get_db),
    employee_db=Depends(get_employee_db),
    settings_db=Depends(get_settings_db),
) -> JSONResponse:
    workflow = _workflow(db, employee_db, settings_db)
    try:
        evaluation = workflow.start_review_now(evaluation_id, actor_id=_actor_id(payload))
    except DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc
    return JSONResponse(content=jsonable_encoder(_serialize_evaluation(evaluation)))


@app.post("/api/v1/evaluations/{evaluation_id}/draft")
def save_evaluation_draft(
    evaluation_id: int,
    payload: Dict[str, Any],
    db=Depends(get_db),
    employee_db=Depends(get_employee_db),
    settings_db=Depends(get_settings_db),
) -> JSONResponse:
    workflow = _workflow(db, employee_db, settings_db)
    try:
        evaluation = workflow.save_draft(evaluation_id, payload.get("answers") or {}, actor_id=_actor_id(payload))
    except DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc
    return JSONResponse(content=jsonable_encoder(_serialize_evaluation(evaluation)))


@app.post("/api/v1/evaluations/{evaluation_id}/complete")
def complete_evaluation(
    evaluation_id: int,
    payload: Dict[str, Any],
    db=Depends(get_db),
    employee_db=Depends(get_employee_db),
    settings_db=Depends(get_settings_db),
) -> JSONResponse:
    workflow = _workflow(db, employee_db, settings_db)
    try:
        evaluation = workflow.complete_evaluation(
            evaluation_id,
            payload.get("answers") or {},
            payload.get("overall_comments"),
            actor_id=_actor_id(payload),
        )
    except DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc
    return JSONResponse(content=jsonable_encoder(_serialize_evaluation(evaluation)))


@app.post("/api/v1/evaluations/{evaluation_id}/acknowledge")
def acknowledge_evaluation(
    evaluation_id: int,
    payload: Dict[str, Any],
    db=Depends(get_db),
    employee_db=Depends(get_employee_db),
    settings_db=Depends(get_settings_db),
) -> JSONResponse:
    workflow = _workflow(db, employee_db, settings_db)
    try:
        evaluation = workflow.acknowledge(evaluation_id, actor_id=_actor_id(payload))
    except DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc
    return JSONResponse(content=jsonable_encoder(_serialize_evaluation(evaluation)))


@app.get("/api/v1/evaluations/{evaluation_id}/summary")
def evaluation_summary(
    evaluation_id: int,
    db=Depends(get_db),
    employee_db=Depends(get_employee_db),
    settings_db=Depends(get_settings_db),
) -> JSONResponse:
    workflow = _workflow(db, employee_db, settings_db)
    try:
        summary = workflow.evaluation_summary(evaluation_id)
    except DOMAIN_ERRORS as exc:
        raise _http_error(exc) from exc
    return JSONResponse(content=jsonable_encoder(summary))
