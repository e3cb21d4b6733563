from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, Optional
import logging

from sqlalchemy import event
from sqlalchemy.exc import SQLAlchemyError

from app import models
from app.core.clock import utcnow
from app.database import SessionLocal

_PENDING_KEY = "pending_audit_entries"


@dataclass
class AuditContext:
	"""Who is acting and from where; threaded from the request into services."""
	user_id: Optional[str] = None
	user_role: Optional[str] = None
	ip_address: Optional[str] = None
	user_agent: Optional[str] = None
	request_id: Optional[str] = None
	extra: Dict[str, Any] = field(default_factory=dict)

	@classmethod
	def system(cls, **extra: Any) -> "AuditContext":
		return cls(user_role="system", extra=extra)

class ComplianceLogger:
	"""Append-only audit recorder backed by the AuditLog table.

	Writes are best-effort: a failure is logged and swallowed, never raised into
	the state transition that produced the entry. Entries recorded with
	:meth:`record` are held on the caller's session and written only after that
	session commits; :meth:`log_event` writes immediately in its own session.
	"""

	def __init__(self, session_factory=None):
		self._session_factory = session_factory
		self.logger = logging.getLogger(__name__)

	@property
	def session_factory(self):
		return self._session_factory or SessionLocal

	def record(
		self,
		db,
		action: str,
		resource: str,
		resource_id: Optional[str] = None,
		ctx: Optional[AuditContext] = None,
		details: Optional[Dict[str, Any]] = None,
		status: models.AuditStatus = models.AuditStatus.SUCCESS,
	) -> None:
		"""Queue an entry to be written once ``db`` commits."""
		# begin the transaction now so a rollback before any SQL still discards the entry
		db.connection()
		db.info.setdefault(_PENDING_KEY, []).append(
			dict(action=action, resource=resource, resource_id=resource_id, ctx=ctx, details=details, status=status)
		)

	def log_event(
		self,
		action: str,
		resource: str,
		resource_id: Optional[str] = None,
		ctx: Optional[AuditContext] = None,
		details: Optional[Dict[str, Any]] = None,
		status: models.AuditStatus = models.AuditStatus.SUCCESS,
	) -> Optional[str]:
		"""Write one audit entry now. Returns its id, or None if it could not be stored."""
		ctx = ctx or AuditContext.system()
		db = self.session_factory()
		try:
			entry = models.AuditLog(
				action=action,
				resource=resource,
				resource_id=resource_id,
				user_id=ctx.user_id,
				user_role=ctx.user_role,
				status=status,
				details=_jsonable(details),
				ip_address=ctx.ip_address,
				user_agent=ctx.user_agent,
				request_id=ctx.request_id,
				timestamp=self._next_timestamp(db, resource, resource_id),
			)
			db.add(entry)
			db.commit()
			self.logger.info(
				"audit %s %s:%s by %s (%s)", action, resource, resource_id, ctx.user_id or "system", status.value
			)
			return entry.id
		except SQLAlchemyError as e:
			db.rollback()
			self.logger.error(f"Failed to save audit log {action} for {resource}:{resource_id}: {e}")
			return None
		finally:
			db.close()

	def log_failure(self, action: str, resource: str, resource_id: Optional[str], ctx: Optional[AuditContext], error: Exception) -> Optional[str]:
		details = {"error": getattr(error, "code", type(error).__name__), "message": str(error)}
		details.update(getattr(error, "details", None) or {})
		return self.log_event(action, resource, resource_id, ctx=ctx, details=details, status=models.AuditStatus.FAILED)

	def flush_pending(self, db) -> int:
		entries = db.info.pop(_PENDING_KEY, [])
		for entry in entries:
			self.log_event(**entry)
		return len(entries)

	def discard_pending(self, db) -> None:
		db.info.pop(_PENDING_KEY, None)

	def _next_timestamp(self, db, resource: str, resource_id: Optional[str]):
		"""Current time, nudged past the latest entry for the same resource."""
		now = utcnow()
		last = (
			db.query(models.AuditLog.timestamp)
			.filter(models.AuditLog.resource == resource, models.AuditLog.resource_id == resource_id)
			.order_by(models.AuditLog.timestamp.desc())
			.first()
		)
		if last and last[0] and now <= last[0]:
			now = last[0] + timedelta(microseconds=1)
		return now


def _jsonable(details: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
	if details is None:
		return None
	out = {}
	for key, value in details.items():
		if hasattr(value, "isoformat"):
			value = value.isoformat()
		elif hasattr(value, "value") and isinstance(getattr(value, "value"), str):
			value = value.value
		elif value is not None and not isinstance(value, (str, int, float, bool, list, dict)):
			value = str(value)
		out[key] = value
	return out


# Singleton instance for global import
compliance_logger = ComplianceLogger()


@event.listens_for(SessionLocal, "after_commit")
def _write_audit_after_commit(session):
	compliance_logger.flush_pending(session)


@event.listens_for(SessionLocal, "after_soft_rollback")
def _drop_audit_after_rollback(session, previous_transaction):
	# savepoint rollbacks keep the entries of the enclosing transaction
	if previous_transaction.parent is None:
		compliance_logger.discard_pending(session)
