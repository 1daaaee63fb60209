"""Agent registration, heartbeats and liveness.

Status is derived from the last heartbeat: online under 60s, degraded up to
300s, offline beyond. The ``status`` column is a denormalized copy refreshed
by the health sweep; reads always recompute it.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Callable
import bcrypt
from prometheus_client import Gauge
from sqlalchemy import select, delete
from erp_sync.models.tables import AgentRegistration, utcnow
from erp_sync.sync.alerts import AlertService

logger = logging.getLogger(__name__)

AGENT_STATUSES = ("online", "degraded", "offline")
AGENTS_BY_STATUS = Gauge('erp_sync_agents', 'Registered agents by status', ['status'])


def status_for(last_heartbeat: datetime | None, now: datetime,
               degraded_after: int = 60, offline_after: int = 300) -> str:
    if last_heartbeat is None:
        return "offline"
    elapsed = (now - last_heartbeat).total_seconds()
    if elapsed < degraded_after:
        return "online"
    if elapsed <= offline_after:
        return "degraded"
    return "offline"


def hash_token(token: str, rounds: int = 10) -> str:
    return bcrypt.hashpw(token.encode(), bcrypt.gensalt(rounds=rounds)).decode()


def verify_token(token: str, token_hash: str) -> bool:
    try:
        return bcrypt.checkpw(token.encode(), token_hash.encode())
    except ValueError:
        return False


@dataclass
class AgentView:
    vendor_id: str
    agent_url: str
    erp_type: str
    status: str
    last_heartbeat: datetime | None
    version: str | None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict:
        d = asdict(self)
        return {
            "vendorId": d["vendor_id"],
            "agentUrl": d["agent_url"],
            "erpType": d["erp_type"],
            "status": d["status"],
            "lastHeartbeat": d["last_heartbeat"].isoformat() if d["last_heartbeat"] else None,
            "version": d["version"],
            "createdAt": d["created_at"].isoformat() if d["created_at"] else None,
            "updatedAt": d["updated_at"].isoformat() if d["updated_at"] else None,
        }


class AgentRegistryService:
    def __init__(
        self,
        session_factory,
        alerts: AlertService | None = None,
        degraded_after: int = 60,
        offline_after: int = 300,
        token_rounds: int = 10,
        now: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._alerts = alerts
        self.degraded_after = degraded_after
        self.offline_after = offline_after
        self.token_rounds = token_rounds
        self._now = now

    def _view(self, row: AgentRegistration, now: datetime | None = None) -> AgentView:
        return AgentView(
            vendor_id=row.vendor_id,
            agent_url=row.agent_url,
            erp_type=row.erp_type,
            status=status_for(row.last_heartbeat, now or self._now(), self.degraded_after, self.offline_after),
            last_heartbeat=row.last_heartbeat,
            version=row.version,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def register(self, vendor_id: str, agent_url: str, erp_type: str, auth_token: str,
                 version: str | None = None) -> AgentView:
        """Upsert by vendor; re-registration rotates the stored token hash."""
        token_hash = hash_token(auth_token, self.token_rounds)
        now = self._now()
        with self._session_factory() as s:
            row = s.execute(select(AgentRegistration).where(AgentRegistration.vendor_id == vendor_id)).scalar_one_or_none()
            if row is None:
                row = AgentRegistration(vendor_id=vendor_id, created_at=now)
                s.add(row)
            row.agent_url = agent_url.rstrip("/")
            row.erp_type = erp_type
            row.auth_token_hash = token_hash
            row.version = version
            row.status = "online"
            row.last_heartbeat = now
            row.updated_at = now
            s.commit()
            view = self._view(row, now)
        logger.info(f"Agent registered for vendor {vendor_id} ({erp_type}) at {agent_url}")
        return view

    def heartbeat(self, vendor_id: str, version: str | None = None) -> AgentView | None:
        now = self._now()
        with self._session_factory() as s:
            row = s.execute(select(AgentRegistration).where(AgentRegistration.vendor_id == vendor_id)).scalar_one_or_none()
            if row is None:
                logger.warning(f"Heartbeat from unknown agent {vendor_id}")
                return None
            row.last_heartbeat = now
            row.status = "online"
            if version:
                row.version = version
            row.updated_at = now
            s.commit()
            return self._view(row, now)

    def deregister(self, vendor_id: str) -> bool:
        with self._session_factory() as s:
            result = s.execute(delete(AgentRegistration).where(AgentRegistration.vendor_id == vendor_id))
            s.commit()
        removed = (result.rowcount or 0) > 0
        if removed:
            logger.info(f"Agent deregistered for vendor {vendor_id}")
        return removed

    def get_agent(self, vendor_id: str) -> AgentView | None:
        with self._session_factory() as s:
            row = s.execute(select(AgentRegistration).where(AgentRegistration.vendor_id == vendor_id)).scalar_one_or_none()
            return self._view(row) if row else None

    def get_token_hash(self, vendor_id: str) -> str | None:
        with self._session_factory() as s:
            return s.execute(
                select(AgentRegistration.auth_token_hash).where(AgentRegistration.vendor_id == vendor_id)
            ).scalar_one_or_none()

    def list_agents(self, status: str | None = None) -> list[AgentView]:
        now = self._now()
        with self._session_factory() as s:
            rows = s.execute(select(AgentRegistration).order_by(AgentRegistration.vendor_id)).scalars().all()
            views = [self._view(r, now) for r in rows]
        if status:
            views = [v for v in views if v.status == status]
        return views

    def active_vendor_ids(self) -> list[str]:
        return [v.vendor_id for v in self.list_agents() if v.status in ("online", "degraded")]

    def check_health(self) -> list[dict]:
        """Recompute every agent's status, persist changes and alert on new offline agents."""
        now = self._now()
        changes: list[dict] = []
        with self._session_factory() as s:
            rows = s.execute(select(AgentRegistration)).scalars().all()
            for row in rows:
                current = status_for(row.last_heartbeat, now, self.degraded_after, self.offline_after)
                if current != row.status:
                    changes.append({
                        "vendorId": row.vendor_id,
                        "previousStatus": row.status,
                        "currentStatus": current,
                        "lastHeartbeat": row.last_heartbeat,
                    })
                    row.status = current
            s.commit()
        for change in changes:
            logger.warning(
                f"Agent {change['vendorId']} status changed {change['previousStatus']} -> {change['currentStatus']}"
            )
            if change["currentStatus"] == "offline" and self._alerts is not None:
                self._alerts.send(
                    "agent_offline",
                    f"Agent for vendor {change['vendorId']} is offline",
                    {"vendorId": change["vendorId"], "lastHeartbeat": change["lastHeartbeat"]},
                )
        stats = self.agent_stats()
        for status in AGENT_STATUSES:
            AGENTS_BY_STATUS.labels(status=status).set(stats[status])
        return changes

    def agent_stats(self) -> dict:
        views = self.list_agents()
        stats = {"total": len(views)}
        for status in AGENT_STATUSES:
            stats[status] = sum(1 for v in views if v.status == status)
        return stats
