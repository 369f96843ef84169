"""Database persistence for accounts, screenshots and the scheduler audit trail."""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from models import Account, SchedulerLog, Screenshot

from .records import AccountRef, AuditStatus, ExpiredScreenshot, SchedulerAuditRecord, normalize_username


class CaptureStoreError(RuntimeError):
    """Raised when reading from or writing to the capture database fails."""


def utcnow() -> datetime:
    return datetime.utcnow()


class CaptureStore:
    """SQLAlchemy-backed store used by the scheduler."""

    def __init__(self, session_factory) -> None:
        self._session_factory = session_factory

    def list_accounts(self) -> list[AccountRef]:
        try:
            with self._session_factory() as session:
                rows = session.query(Account).order_by(Account.created_at, Account.username).all()
                return [
                    AccountRef(username=row.username, country=row.country, account_id=str(row.id))
                    for row in rows
                ]
        except Exception as exc:  # pragma: no cover - failure path
            raise CaptureStoreError(str(exc)) from exc

    def account_countries(self) -> dict[str, Optional[str]]:
        try:
            with self._session_factory() as session:
                return {
                    normalize_username(username): country
                    for username, country in session.query(Account.username, Account.country)
                }
        except Exception as exc:  # pragma: no cover - failure path
            raise CaptureStoreError(str(exc)) from exc

    def add_account(self, username: str, country: Optional[str] = None) -> AccountRef:
        cleaned = normalize_username(username)
        if not cleaned:
            raise ValueError("username is required")
        try:
            with self._session_factory() as session:
                account = session.query(Account).filter(Account.username == cleaned).one_or_none()
                if account is None:
                    account = Account(username=cleaned, created_at=utcnow())
                    session.add(account)
                account.country = country.upper() if country else None
                session.flush()
                ref = AccountRef(username=account.username, country=account.country, account_id=str(account.id))
                session.commit()
                return ref
        except Exception as exc:  # pragma: no cover - failure path
            raise CaptureStoreError(str(exc)) from exc

    def insert_screenshot(
        self,
        *,
        username: str,
        storage_path: str,
        public_url: Optional[str],
        captured_at: datetime,
        country: Optional[str] = None,
        account_id: Optional[str] = None,
        size_bytes: Optional[int] = None,
        capture_method: Optional[str] = None,
    ) -> str:
        try:
            with self._session_factory() as session:
                screenshot = Screenshot(
                    account_id=UUID(account_id) if account_id else None,
                    username=username,
                    country=country,
                    storage_path=storage_path,
                    public_url=public_url,
                    size_bytes=size_bytes,
                    capture_method=capture_method,
                    captured_at=captured_at,
                    created_at=utcnow(),
                )
                session.add(screenshot)
                session.flush()
                screenshot_id = str(screenshot.id)
                session.commit()
                return screenshot_id
        except Exception as exc:  # pragma: no cover - failure path
            raise CaptureStoreError(str(exc)) from exc

    def insert_audit_record(self, record: SchedulerAuditRecord) -> None:
        try:
            with self._session_factory() as session:
                session.add(
                    SchedulerLog(
                        username=record.username,
                        status=record.status.value,
                        message=record.message,
                        screenshot_id=UUID(record.screenshot_id) if record.screenshot_id else None,
                        error_message=record.error,
                        duration_ms=record.duration_ms,
                        black_warnings=record.black_warnings,
                        render_timeouts=record.render_timeouts,
                        recovered_captures=record.recovered_captures,
                        details=record.details or None,
                        created_at=record.created_at or utcnow(),
                    )
                )
                session.commit()
        except Exception as exc:  # pragma: no cover - failure path
            raise CaptureStoreError(str(exc)) from exc

    def recent_audit_records(self, limit: int) -> list[SchedulerAuditRecord]:
        """Return the newest ``limit`` outcome rows, newest first.

        ``checking`` rows carry no failure counters and are left out of the window.
        """

        if limit <= 0:
            return []
        try:
            with self._session_factory() as session:
                rows = (
                    session.query(SchedulerLog)
                    .filter(SchedulerLog.status != AuditStatus.CHECKING.value)
                    .order_by(SchedulerLog.created_at.desc())
                    .limit(limit)
                    .all()
                )
                return [self._to_record(row) for row in rows]
        except Exception as exc:  # pragma: no cover - failure path
            raise CaptureStoreError(str(exc)) from exc

    @staticmethod
    def _to_record(row: SchedulerLog) -> SchedulerAuditRecord:
        return SchedulerAuditRecord(
            username=row.username,
            status=AuditStatus(row.status),
            message=row.message or "",
            error=row.error_message,
            duration_ms=row.duration_ms or 0,
            screenshot_id=str(row.screenshot_id) if row.screenshot_id else None,
            black_warnings=row.black_warnings or 0,
            render_timeouts=row.render_timeouts or 0,
            recovered_captures=row.recovered_captures or 0,
            details=dict(row.details or {}),
            created_at=row.created_at,
        )

    def delete_screenshots_older_than(self, cutoff: datetime) -> list[ExpiredScreenshot]:
        try:
            with self._session_factory() as session:
                expired = self._expired_screenshots(session, cutoff)
                if expired:
                    ids = [UUID(item.id) for item in expired]
                    session.query(Screenshot).filter(Screenshot.id.in_(ids)).delete(synchronize_session=False)
                session.commit()
                return expired
        except Exception as exc:  # pragma: no cover - failure path
            raise CaptureStoreError(str(exc)) from exc

    @staticmethod
    def _expired_screenshots(session: Session, cutoff: datetime) -> list[ExpiredScreenshot]:
        rows = session.query(Screenshot.id, Screenshot.storage_path).filter(Screenshot.captured_at < cutoff)
        return [ExpiredScreenshot(id=str(row_id), storage_path=path) for row_id, path in rows]

    def count_screenshots(self) -> int:
        try:
            with self._session_factory() as session:
                return session.query(func.count(Screenshot.id)).scalar() or 0
        except Exception as exc:  # pragma: no cover - failure path
            raise CaptureStoreError(str(exc)) from exc


__all__ = ["CaptureStore", "CaptureStoreError", "utcnow"]
