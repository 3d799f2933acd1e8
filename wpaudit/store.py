"""
Persistent store (SQLAlchemy ORM).

SQLite is used by default; point WPAUDIT_DATABASE_URL at PostgreSQL for
shared deployments. Timestamps are stored as naive UTC.

Every state transition is a conditional UPDATE so that a racing writer (a
cancel, the stale sweeper, a late progress tick) can never move an audit out
of a terminal state.
"""
import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text, create_engine, or_, select, update
from sqlalchemy.orm import DeclarativeBase, Session
from sqlalchemy.pool import StaticPool

from .errors import AuditNotFoundError, InvalidTransitionError
from .models import Audit, AuditStatus, Category, Host, Issue, IssueStatus, Progress, Severity

logger = logging.getLogger(__name__)

ACTIVE = (AuditStatus.PENDING.value, AuditStatus.RUNNING.value)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class HostRow(Base):
    __tablename__ = "hosts"

    id = Column(String(36), primary_key=True)
    name = Column(String(255), nullable=False)
    domain = Column(String(255), nullable=False, unique=True)
    install_name = Column(String(128), nullable=False, index=True)
    environment = Column(String(32), default="production")
    telemetry_zone_id = Column(String(64), nullable=True)
    page_builder = Column(String(32), nullable=True)
    is_ecommerce = Column(Boolean, default=False)
    platform_site_name = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=utcnow)


class AuditRow(Base):
    __tablename__ = "audits"

    id = Column(String(36), primary_key=True)
    host_id = Column(String(36), nullable=False, index=True)
    status = Column(String(16), nullable=False, default=AuditStatus.PENDING.value, index=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    health_score = Column(Integer, nullable=True)
    summary = Column(Text, nullable=True)
    progress_step = Column(String(64), default="Queued")
    progress_percent = Column(Integer, default=0)
    raw_data = Column(JSON, default=dict)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class IssueRow(Base):
    __tablename__ = "issues"

    id = Column(String(36), primary_key=True)
    host_id = Column(String(36), nullable=False, index=True)
    audit_id = Column(String(36), nullable=False, index=True)
    category = Column(String(16), nullable=False)
    severity = Column(String(16), nullable=False)
    title = Column(String(500), nullable=False)
    description = Column(Text, default="")
    recommendation = Column(Text, default="")
    auto_fixable = Column(Boolean, default=False)
    fix_action = Column(String(64), nullable=True)
    fix_params = Column(JSON, default=dict)
    status = Column(String(16), nullable=False, default=IssueStatus.OPEN.value, index=True)
    created_at = Column(DateTime, default=utcnow)
    resolved_at = Column(DateTime, nullable=True)


class ActionLogRow(Base):
    """One remediation action run against a host."""

    __tablename__ = "action_logs"

    id = Column(String(36), primary_key=True)
    host_id = Column(String(36), nullable=False, index=True)
    action = Column(String(64), nullable=False)
    params = Column(JSON, default=dict)
    status = Column(String(16), nullable=False, default="running")
    result = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    started_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime, nullable=True)


def _host(row: HostRow) -> Host:
    return Host(
        id=row.id,
        name=row.name,
        domain=row.domain,
        install_name=row.install_name,
        environment=row.environment or "production",
        telemetry_zone_id=row.telemetry_zone_id,
        page_builder=row.page_builder,
        is_ecommerce=bool(row.is_ecommerce),
        platform_site_name=row.platform_site_name,
    )


def _audit(row: AuditRow) -> Audit:
    return Audit(
        id=row.id,
        host_id=row.host_id,
        status=AuditStatus(row.status),
        started_at=row.started_at,
        completed_at=row.completed_at,
        health_score=row.health_score,
        summary=row.summary,
        progress=Progress(row.progress_step or "Queued", row.progress_percent or 0),
        raw_data=row.raw_data or {},
        error_message=row.error_message,
        created_at=row.created_at,
    )


def _issue(row: IssueRow) -> Issue:
    return Issue(
        id=row.id,
        host_id=row.host_id,
        audit_id=row.audit_id,
        category=Category(row.category),
        severity=Severity(row.severity),
        title=row.title,
        description=row.description or "",
        recommendation=row.recommendation or "",
        auto_fixable=bool(row.auto_fixable),
        fix_action=row.fix_action,
        fix_params=row.fix_params or {},
        status=IssueStatus(row.status),
        created_at=row.created_at,
        resolved_at=row.resolved_at,
    )


class AuditStore:
    def __init__(self, database_url: str = "sqlite:///wpaudit.db"):
        kwargs: Dict[str, Any] = {}
        if database_url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
        self.engine = create_engine(database_url, **kwargs)
        # SQLite allows one writer at a time; serialise our own transactions
        self._lock = threading.RLock()
        Base.metadata.create_all(self.engine)

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        with self._lock:
            with Session(self.engine, expire_on_commit=False) as session:
                with session.begin():
                    yield session

    # --- Hosts ---

    def add_host(self, host: Host) -> Host:
        """Insert, or update the host with the same id or domain."""
        with self.transaction() as s:
            row = s.get(HostRow, host.id)
            if row is None:
                row = s.execute(select(HostRow).where(HostRow.domain == host.domain)).scalars().first()
            if row is None:
                row = HostRow(id=host.id)
            host.id = row.id
            row.name = host.name
            row.domain = host.domain
            row.install_name = host.install_name
            row.environment = host.environment
            row.telemetry_zone_id = host.telemetry_zone_id
            row.page_builder = host.page_builder
            row.is_ecommerce = host.is_ecommerce
            row.platform_site_name = host.platform_site_name
            s.add(row)
        return host

    def get_host(self, host_id: str) -> Optional[Host]:
        with self.transaction() as s:
            row = s.get(HostRow, host_id)
            return _host(row) if row else None

    def find_host(self, key: str) -> Optional[Host]:
        """Look a host up by id, domain or install name."""
        with self.transaction() as s:
            row = s.execute(
                select(HostRow).where(or_(HostRow.id == key, HostRow.domain == key, HostRow.install_name == key))
            ).scalars().first()
            return _host(row) if row else None

    def list_hosts(self) -> List[Host]:
        with self.transaction() as s:
            return [_host(r) for r in s.execute(select(HostRow).order_by(HostRow.name)).scalars()]

    # --- Audits ---

    def create_audit(self, host_id: str) -> Audit:
        now = utcnow()
        row = AuditRow(
            id=new_id(),
            host_id=host_id,
            status=AuditStatus.PENDING.value,
            started_at=now,
            progress_step="Queued",
            progress_percent=0,
            raw_data={},
            created_at=now,
        )
        with self.transaction() as s:
            s.add(row)
        return _audit(row)

    def get_audit(self, audit_id: str) -> Optional[Audit]:
        with self.transaction() as s:
            row = s.get(AuditRow, audit_id)
            return _audit(row) if row else None

    def latest_audit(self, host_id: str) -> Optional[Audit]:
        with self.transaction() as s:
            row = s.execute(
                select(AuditRow).where(AuditRow.host_id == host_id).order_by(AuditRow.created_at.desc())
            ).scalars().first()
            return _audit(row) if row else None

    def active_audit(self, host_id: str) -> Optional[Audit]:
        with self.transaction() as s:
            row = s.execute(
                select(AuditRow).where(AuditRow.host_id == host_id, AuditRow.status.in_(ACTIVE))
                .order_by(AuditRow.created_at.desc())
            ).scalars().first()
            return _audit(row) if row else None

    def mark_running(self, audit_id: str) -> bool:
        with self.transaction() as s:
            result = s.execute(
                update(AuditRow)
                .where(AuditRow.id == audit_id, AuditRow.status.in_(ACTIVE))
                .values(status=AuditStatus.RUNNING.value, progress_step="Queued", progress_percent=0)
            )
            return result.rowcount == 1

    def update_progress(self, audit_id: str, step: str, percent: int) -> bool:
        """Applied only while active and never moves the percent backwards."""
        with self.transaction() as s:
            result = s.execute(
                update(AuditRow)
                .where(
                    AuditRow.id == audit_id,
                    AuditRow.status.in_(ACTIVE),
                    AuditRow.progress_percent <= percent,
                )
                .values(progress_step=step, progress_percent=percent)
            )
            return result.rowcount == 1

    def complete_audit(self, audit_id: str, host_id: str, health_score: int, summary: str,
                       raw_data: Dict[str, Any], issues: List[Issue]) -> bool:
        """
        Terminal success plus issue replacement, as one transaction.
        Returns False (and changes nothing) if the audit is no longer running.
        """
        now = utcnow()
        with self.transaction() as s:
            result = s.execute(
                update(AuditRow)
                .where(AuditRow.id == audit_id, AuditRow.status == AuditStatus.RUNNING.value)
                .values(
                    status=AuditStatus.COMPLETED.value,
                    completed_at=now,
                    health_score=health_score,
                    summary=summary,
                    raw_data=raw_data,
                    progress_step="Complete",
                    progress_percent=100,
                )
            )
            if result.rowcount != 1:
                return False

            closed = s.execute(
                update(IssueRow)
                .where(IssueRow.host_id == host_id, IssueRow.status == IssueStatus.OPEN.value)
                .values(status=IssueStatus.FIXED.value, resolved_at=now)
            ).rowcount
            for issue in issues:
                s.add(IssueRow(
                    id=new_id(),
                    host_id=host_id,
                    audit_id=audit_id,
                    category=issue.category.value,
                    severity=issue.severity.value,
                    title=issue.title,
                    description=issue.description,
                    recommendation=issue.recommendation,
                    auto_fixable=issue.auto_fixable,
                    fix_action=issue.fix_action,
                    fix_params=issue.fix_params,
                    status=IssueStatus.OPEN.value,
                    created_at=now,
                ))
        logger.debug("[Audit %s] closed %d open issue(s), inserted %d", audit_id, closed, len(issues))
        return True

    def fail_audit(self, audit_id: str, message: str) -> bool:
        with self.transaction() as s:
            result = s.execute(
                update(AuditRow)
                .where(AuditRow.id == audit_id, AuditRow.status.in_(ACTIVE))
                .values(status=AuditStatus.FAILED.value, completed_at=utcnow(), error_message=message)
            )
            return result.rowcount == 1

    def cancel_audit(self, audit_id: str, message: str) -> Audit:
        with self.transaction() as s:
            row = s.get(AuditRow, audit_id)
            if row is None:
                raise AuditNotFoundError(f"Audit {audit_id} not found")
            if row.status not in ACTIVE:
                raise InvalidTransitionError(
                    f"Audit {audit_id} is {row.status}: only pending/running may be cancelled"
                )
            row.status = AuditStatus.FAILED.value
            row.completed_at = utcnow()
            row.error_message = message
            s.flush()
            return _audit(row)

    def fail_stale_audits(self, cutoff: datetime, message: str) -> int:
        with self.transaction() as s:
            result = s.execute(
                update(AuditRow)
                .where(AuditRow.status.in_(ACTIVE), AuditRow.started_at < cutoff)
                .values(status=AuditStatus.FAILED.value, completed_at=utcnow(), error_message=message)
            )
            return result.rowcount

    # --- Issues ---

    def list_issues(self, host_id: str, status: Optional[IssueStatus] = IssueStatus.OPEN) -> List[Issue]:
        query = select(IssueRow).where(IssueRow.host_id == host_id)
        if status is not None:
            query = query.where(IssueRow.status == status.value)
        with self.transaction() as s:
            return [_issue(r) for r in s.execute(query.order_by(IssueRow.created_at)).scalars()]

    def set_issue_status(self, issue_id: str, status: IssueStatus) -> bool:
        resolved = utcnow() if status == IssueStatus.FIXED else None
        with self.transaction() as s:
            result = s.execute(
                update(IssueRow).where(IssueRow.id == issue_id).values(status=status.value, resolved_at=resolved)
            )
            return result.rowcount == 1

    # --- Action log ---

    def start_action(self, host_id: str, action: str, params: Dict[str, Any]) -> str:
        action_id = new_id()
        with self.transaction() as s:
            s.add(ActionLogRow(id=action_id, host_id=host_id, action=action, params=params, status="running"))
        return action_id

    def finish_action(self, action_id: str, result: Optional[Dict[str, Any]] = None,
                      error: Optional[str] = None) -> None:
        with self.transaction() as s:
            s.execute(
                update(ActionLogRow)
                .where(ActionLogRow.id == action_id)
                .values(
                    status="failed" if error else "completed",
                    result=result,
                    error_message=error,
                    completed_at=utcnow(),
                )
            )
