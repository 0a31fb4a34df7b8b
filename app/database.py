from __future__ import annotations

import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional
import json

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    select,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, sessionmaker

from checks import normalize_validation
from errors import NotFoundError, ValidationError
from recurrence import RecurrenceSpec


DATA_DIR = Path(__file__).resolve().parent / "data"
DATA_DIR.mkdir(parents=True, exist_ok=True)
EMPLOYEE_DATABASE_URL = f"sqlite:///{(DATA_DIR / 'employees.db').as_posix()}"
OPERATIONS_DATABASE_URL = f"sqlite:///{(DATA_DIR / 'operations.db').as_posix()}"
SETTINGS_DATABASE_URL = f"sqlite:///{(DATA_DIR / 'settings.db').as_posix()}"
SCHEDULED_ITEM_KINDS = {"task_list", "food_safety"}
DEFAULT_PASSING_SCORE = 70
ONE_OFF_BUCKET = "once"


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _load_json(raw: Optional[str], fallback):
    try:
        value = json.loads(raw or "null")
    except json.JSONDecodeError:
        return fallback
    return value if isinstance(value, type(fallback)) else fallback


class EmployeeBase(DeclarativeBase):
    """Standalone metadata for the employee directory living in employees.db."""

    pass


class SettingsBase(DeclarativeBase):
    """Standalone metadata for per-store settings living in settings.db."""

    pass


class Base(DeclarativeBase):
    """Metadata for checklists, instances and evaluations living in operations.db."""

    pass


class Employee(EmployeeBase):
    __tablename__ = "employees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    store_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    full_name: Mapped[str] = mapped_column(String(120), nullable=False)
    department: Mapped[str] = mapped_column(String(40), nullable=False, default="")
    position: Mapped[str] = mapped_column(String(40), nullable=False, default="Team Member")
    status: Mapped[str] = mapped_column(String(12), default="active", nullable=False)
    hire_date: Mapped[datetime.date | None] = mapped_column(Date, nullable=True)
    evaluator_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    next_evaluation_date: Mapped[datetime.date | None] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    @property
    def has_evaluator_assigned(self) -> bool:
        return self.evaluator_id is not None


class StoreSettings(SettingsBase):
    __tablename__ = "store_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    store_id: Mapped[int] = mapped_column(Integer, nullable=False)
    paramsJSON: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    lastEditedBy: Mapped[str] = mapped_column(String(60), nullable=False, default="system")
    lastEditedAt: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (UniqueConstraint("store_id", name="uq_store_settings_store"),)

    def params_dict(self) -> Dict:
        return _load_json(self.paramsJSON, {})


class ScheduledItem(Base):
    """A task list or food-safety checklist definition."""

    __tablename__ = "scheduled_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    store_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(20), nullable=False, default="task_list")
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    department: Mapped[str] = mapped_column(String(40), nullable=False, default="")
    is_recurring: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    recurrence_kind: Mapped[str | None] = mapped_column(String(12), nullable=True)
    weekly_day: Mapped[int | None] = mapped_column(Integer, nullable=True)  # 0 = Monday
    monthly_week: Mapped[int | None] = mapped_column(Integer, nullable=True)
    monthly_day: Mapped[int | None] = mapped_column(Integer, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    passing_score: Mapped[int] = mapped_column(Integer, nullable=False, default=DEFAULT_PASSING_SCORE)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    items: Mapped[List["ScheduledWorkItem"]] = relationship(
        back_populates="scheduled_item",
        cascade="all, delete-orphan",
        order_by="ScheduledWorkItem.position",
    )
    instances: Mapped[List["ItemInstance"]] = relationship(
        back_populates="scheduled_item", cascade="all, delete-orphan"
    )

    @property
    def recurrence(self) -> Optional[RecurrenceSpec]:
        if not self.is_recurring or not self.recurrence_kind:
            return None
        return RecurrenceSpec(
            kind=self.recurrence_kind,
            weekly_day=self.weekly_day,
            monthly_week=self.monthly_week,
            monthly_day=self.monthly_day,
        )

    def apply_recurrence(self, spec: Optional[RecurrenceSpec]) -> None:
        self.is_recurring = spec is not None
        self.recurrence_kind = spec.kind if spec else None
        self.weekly_day = spec.weekly_day if spec else None
        self.monthly_week = spec.monthly_week if spec else None
        self.monthly_day = spec.monthly_day if spec else None


class ScheduledWorkItem(Base):
    __tablename__ = "scheduled_work_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    scheduled_item_id: Mapped[int] = mapped_column(
        ForeignKey("scheduled_items.id", ondelete="CASCADE"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    title: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    estimated_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_critical: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # NULL for plain tasks; yes_no / temperature / text for recorded checks
    check_type: Mapped[str | None] = mapped_column(String(12), nullable=True)
    validationJSON: Mapped[str] = mapped_column(Text, nullable=False, default="{}")

    scheduled_item: Mapped[ScheduledItem] = relationship(back_populates="items")

    @property
    def validation(self) -> Dict[str, Any]:
        return _load_json(self.validationJSON, {})


class ItemInstance(Base):
    """One dated occurrence of a scheduled item."""

    __tablename__ = "item_instances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    scheduled_item_id: Mapped[int] = mapped_column(
        ForeignKey("scheduled_items.id", ondelete="CASCADE"), nullable=False
    )
    date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    bucket_key: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="in_progress")
    created_by: Mapped[str] = mapped_column(String(60), nullable=False, default="system")
    completed_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    scheduled_item: Mapped[ScheduledItem] = relationship(back_populates="instances")
    work_items: Mapped[List["InstanceWorkItem"]] = relationship(
        back_populates="instance",
        cascade="all, delete-orphan",
        order_by="InstanceWorkItem.position",
    )

    __table_args__ = (
        UniqueConstraint("scheduled_item_id", "bucket_key", name="uq_item_instance_bucket"),
    )


class InstanceWorkItem(Base):
    __tablename__ = "instance_work_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    instance_id: Mapped[int] = mapped_column(ForeignKey("item_instances.id", ondelete="CASCADE"), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    title: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    estimated_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_critical: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    check_type: Mapped[str | None] = mapped_column(String(12), nullable=True)
    validationJSON: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    status: Mapped[str] = mapped_column(String(12), nullable=False, default="pending")
    value: Mapped[str | None] = mapped_column(String(255), nullable=True)
    result: Mapped[str | None] = mapped_column(String(12), nullable=True)  # pass / warning / fail
    assigned_to: Mapped[int | None] = mapped_column(Integer, nullable=True)
    completed_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    completed_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    instance: Mapped[ItemInstance] = relationship(back_populates="work_items")

    @property
    def validation(self) -> Dict[str, Any]:
        return _load_json(self.validationJSON, {})


class GradingScale(Base):
    __tablename__ = "grading_scales"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    store_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(80), nullable=False)
    gradesJSON: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    @property
    def grades(self) -> List[Dict[str, Any]]:
        return _load_json(self.gradesJSON, [])


class EvaluationTemplate(Base):
    __tablename__ = "evaluation_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    store_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    sectionsJSON: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    @property
    def sections(self) -> List[Dict[str, Any]]:
        return _load_json(self.sectionsJSON, [])


class Evaluation(Base):
    __tablename__ = "evaluations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    store_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    employee_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    evaluator_id: Mapped[int] = mapped_column(Integer, nullable=False)
    template_id: Mapped[int] = mapped_column(ForeignKey("evaluation_templates.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending_self_evaluation")
    scheduled_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    review_session_date: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    selfRatingsJSON: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    managerRatingsJSON: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    overall_comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    acknowledged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    acknowledged_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[str] = mapped_column(String(60), nullable=False, default="system")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    template: Mapped[EvaluationTemplate] = relationship()

    @property
    def self_ratings(self) -> Dict[str, Any]:
        return _load_json(self.selfRatingsJSON, {})

    @property
    def manager_ratings(self) -> Dict[str, Any]:
        return _load_json(self.managerRatingsJSON, {})


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(60), nullable=False)
    action: Mapped[str] = mapped_column(String(60), nullable=False)
    target_type: Mapped[str] = mapped_column(String(32), nullable=False, default="Evaluation")
    target_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payloadJSON: Mapped[str] = mapped_column(String(2000), nullable=False, default="{}")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


employee_engine = create_engine(
    EMPLOYEE_DATABASE_URL,
    echo=False,
    future=True,
)
operations_engine = create_engine(
    OPERATIONS_DATABASE_URL,
    echo=False,
    future=True,
)
settings_engine = create_engine(
    SETTINGS_DATABASE_URL,
    echo=False,
    future=True,
)
SessionLocal = sessionmaker(bind=operations_engine, expire_on_commit=False, future=True)
EmployeeSessionLocal = sessionmaker(bind=employee_engine, expire_on_commit=False, future=True)
SettingsSessionLocal = sessionmaker(bind=settings_engine, expire_on_commit=False, future=True)


def init_database() -> None:
    EmployeeBase.metadata.create_all(employee_engine)
    Base.metadata.create_all(operations_engine)
    SettingsBase.metadata.create_all(settings_engine)


def _coerce_employee_session(session):
    """Return (employee_session, should_close) ensuring we talk to the employee database."""
    if session is None:
        return EmployeeSessionLocal(), True
    bind = getattr(session, "bind", None)
    if bind is operations_engine or bind is settings_engine:
        return EmployeeSessionLocal(), True
    return session, False


def _coerce_settings_session(session):
    """Return (settings_session, should_close) ensuring settings stay in their own database."""
    if session is None:
        SettingsBase.metadata.create_all(settings_engine)
        return SettingsSessionLocal(), True
    bind = getattr(session, "bind", None)
    if bind is operations_engine or bind is employee_engine:
        SettingsBase.metadata.create_all(settings_engine)
        return SettingsSessionLocal(), True
    return session, False


# ---------------------------------------------------------------------------
# Employee directory


def list_store_employees(employee_session, store_id: int, only_active: bool = True) -> List[Employee]:
    employee_session, close_session = _coerce_employee_session(employee_session)
    try:
        stmt = select(Employee).where(Employee.store_id == store_id)
        if only_active:
            stmt = stmt.where(Employee.status == "active")
        stmt = stmt.order_by(Employee.full_name.asc(), Employee.id.asc())
        return list(employee_session.scalars(stmt))
    finally:
        if close_session:
            employee_session.close()


# ---------------------------------------------------------------------------
# Store settings


def get_store_settings(session, store_id: int) -> Optional[StoreSettings]:
    session, close_session = _coerce_settings_session(session)
    try:
        stmt = select(StoreSettings).where(StoreSettings.store_id == store_id)
        return session.scalars(stmt).first()
    finally:
        if close_session:
            session.close()


def list_configured_store_ids(session) -> List[int]:
    session, close_session = _coerce_settings_session(session)
    try:
        stmt = select(StoreSettings.store_id).order_by(StoreSettings.store_id.asc())
        return [int(store_id) for store_id in session.scalars(stmt)]
    finally:
        if close_session:
            session.close()


def upsert_store_settings(session, store_id: int, params_dict: Dict, *, edited_by: str = "system") -> StoreSettings:
    session, close_session = _coerce_settings_session(session)
    try:
        stmt = select(StoreSettings).where(StoreSettings.store_id == store_id)
        settings = session.scalars(stmt).first()
        payload = json.dumps(params_dict or {})
        if settings:
            settings.paramsJSON = payload
            settings.lastEditedBy = edited_by or "system"
            settings.lastEditedAt = _utcnow()
        else:
            settings = StoreSettings(
                store_id=store_id,
                paramsJSON=payload,
                lastEditedBy=edited_by or "system",
                lastEditedAt=_utcnow(),
            )
            session.add(settings)
        session.commit()
        session.refresh(settings)
        return settings
    finally:
        if close_session:
            session.close()


# ---------------------------------------------------------------------------
# Scheduled items (task lists and food-safety checklists)


def get_scheduled_item(session, item_id: int) -> ScheduledItem:
    item = session.get(ScheduledItem, item_id)
    if not item:
        raise NotFoundError(f"Scheduled item {item_id} was not found.")
    return item


def list_scheduled_items(
    session,
    store_id: int,
    *,
    kind: Optional[str] = None,
    only_active: bool = True,
) -> List[ScheduledItem]:
    stmt = select(ScheduledItem).where(ScheduledItem.store_id == store_id)
    if kind:
        stmt = stmt.where(ScheduledItem.kind == kind)
    if only_active:
        stmt = stmt.where(ScheduledItem.active.is_(True))
    stmt = stmt.order_by(ScheduledItem.name.asc(), ScheduledItem.id.asc())
    return list(session.scalars(stmt))


def create_scheduled_item(session, payload: Dict[str, Any]) -> ScheduledItem:
    name = (payload.get("name") or "").strip()
    if not name:
        raise ValidationError("Scheduled item name is required.", [{"field": "name"}])
    kind = payload.get("kind") or "task_list"
    if kind not in SCHEDULED_ITEM_KINDS:
        raise ValidationError(f"Unsupported scheduled item kind '{kind}'.", [{"field": "kind", "value": kind}])
    recurrence = payload.get("recurrence")
    if isinstance(recurrence, dict):
        recurrence = RecurrenceSpec.from_dict(recurrence)
    if payload.get("is_recurring") and recurrence is None:
        raise ValidationError("Recurring items need a recurrence rule.", [{"field": "recurrence"}])
    item = ScheduledItem(
        store_id=int(payload["store_id"]),
        kind=kind,
        name=name,
        description=payload.get("description", "") or "",
        department=payload.get("department", "") or "",
        active=bool(payload.get("active", True)),
    )
    passing_score = payload.get("passing_score", payload.get("passingScore"))
    if passing_score is not None:
        passing_score = int(passing_score)
        if not 0 <= passing_score <= 100:
            raise ValidationError("passing_score must be between 0 and 100.", [{"field": "passing_score", "value": passing_score}])
        item.passing_score = passing_score
    item.apply_recurrence(recurrence)
    for position, entry in enumerate(payload.get("items") or []):
        if isinstance(entry, str):
            entry = {"title": entry}
        title = (entry.get("title") or entry.get("name") or "").strip()
        if not title:
            raise ValidationError("Every work item needs a title.", [{"field": f"items[{position}].title"}])
        check_type = entry.get("check_type") or entry.get("type")
        validation = normalize_validation(check_type, entry.get("validation"))
        item.items.append(
            ScheduledWorkItem(
                position=position,
                title=title,
                description=entry.get("description", "") or "",
                estimated_minutes=int(entry.get("estimated_minutes") or entry.get("estimatedTime") or 0),
                is_critical=bool(entry.get("is_critical") or entry.get("isCritical")),
                check_type=check_type,
                validationJSON=json.dumps(validation),
            )
        )
    session.add(item)
    session.commit()
    session.refresh(item)
    return item


def set_scheduled_item_recurrence(session, item_id: int, spec: Optional[RecurrenceSpec]) -> ScheduledItem:
    """Swap the recurrence rule; rules are never edited in place, the item version moves forward."""
    item = get_scheduled_item(session, item_id)
    item.apply_recurrence(spec)
    item.version = (item.version or 1) + 1
    session.commit()
    session.refresh(item)
    return item


def deactivate_scheduled_item(session, item_id: int) -> ScheduledItem:
    item = get_scheduled_item(session, item_id)
    item.active = False
    session.commit()
    return item


def delete_scheduled_item(session, item_id: int) -> None:
    """Hard delete; cascades to every instance of the item."""
    item = session.get(ScheduledItem, item_id)
    if not item:
        return
    session.delete(item)
    session.commit()


# ---------------------------------------------------------------------------
# Templates and grading scales


def get_active_template(session, store_id: int) -> Optional[EvaluationTemplate]:
    stmt = (
        select(EvaluationTemplate)
        .where(EvaluationTemplate.store_id == store_id, EvaluationTemplate.is_active.is_(True))
        .order_by(EvaluationTemplate.created_at.desc(), EvaluationTemplate.id.desc())
    )
    return session.scalars(stmt).first()


def grading_scales_for_store(session, store_id: int) -> Dict[Any, List[Dict[str, Any]]]:
    """Return {scale_id: grades}, plus the store default under the ``None`` key."""
    scales: Dict[Any, List[Dict[str, Any]]] = {}
    for scale in session.scalars(select(GradingScale).where(GradingScale.store_id == store_id)):
        scales[scale.id] = scale.grades
        if scale.is_default and None not in scales:
            scales[None] = scale.grades
    return scales


# ---------------------------------------------------------------------------
# Evaluations


def get_evaluation(session, evaluation_id: int) -> Evaluation:
    evaluation = session.get(Evaluation, evaluation_id)
    if not evaluation:
        raise NotFoundError(f"Evaluation {evaluation_id} was not found.")
    return evaluation


def open_evaluations_by_employee(session, employee_ids: Iterable[int]) -> Dict[int, Evaluation]:
    """Latest non-completed evaluation per employee."""
    ids = list(employee_ids)
    if not ids:
        return {}
    stmt = (
        select(Evaluation)
        .where(Evaluation.employee_id.in_(ids), Evaluation.status != "completed")
        .order_by(Evaluation.scheduled_date.asc(), Evaluation.id.asc())
    )
    return {evaluation.employee_id: evaluation for evaluation in session.scalars(stmt)}


def last_completed_evaluation_dates(session, employee_ids: Iterable[int]) -> Dict[int, datetime.date]:
    ids = list(employee_ids)
    if not ids:
        return {}
    stmt = select(Evaluation).where(Evaluation.employee_id.in_(ids), Evaluation.status == "completed")
    latest: Dict[int, datetime.date] = {}
    for evaluation in session.scalars(stmt):
        completed = evaluation.completed_at.date() if evaluation.completed_at else evaluation.scheduled_date
        if evaluation.employee_id not in latest or completed > latest[evaluation.employee_id]:
            latest[evaluation.employee_id] = completed
    return latest


def record_audit_log(
    session,
    user_id: str,
    action: str,
    target_type: str = "Evaluation",
    target_id: Optional[int] = None,
    payload: Optional[Dict[str, Any]] = None,
    *,
    commit: bool = True,
) -> AuditLog:
    log = AuditLog(
        user_id=str(user_id),
        action=action,
        target_type=target_type,
        target_id=target_id,
        payloadJSON=json.dumps(payload or {}, default=str),
    )
    session.add(log)
    if commit:
        session.commit()
    return log
