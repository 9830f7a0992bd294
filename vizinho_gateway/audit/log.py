"""
Vizinho Virtual Gateway - Audit Log

Append-only persistence for audit records on top of the security store.
Each record goes to the daily `audit:{date}` bucket; records that touch
personal data on GDPR-relevant endpoints, financial endpoints, or
administrative actions are also written to their own long-retention
buckets.

Records are append-only: there is no update or delete operation.
"""

import json
import logging
from datetime import date, datetime, timedelta, timezone
from typing import List, Optional

from vizinho_gateway.audit.classification import ADMIN_TTL, AUDIT_TTL, FINANCIAL_TTL, GDPR_TTL
from vizinho_gateway.audit.models import AuditRecord
from vizinho_gateway.store import SecurityStore

logger = logging.getLogger(__name__)


def bucket_key(bucket: str, day: date) -> str:
    return f"{bucket}:{day.isoformat()}"


class AuditLog:
    """
    Writes and queries audit records.

    Usage:
        audit_log = AuditLog(store)
        await audit_log.record(rec)
        records = await audit_log.get_logs(date.today())
    """

    def __init__(self, store: SecurityStore):
        self._store = store

    async def record(self, rec: AuditRecord) -> List[str]:
        """
        Append a record to every bucket it belongs in.

        Returns:
            The keys written to

        Raises:
            StoreError: if the store rejects the write
        """
        day = rec.timestamp.astimezone(timezone.utc).date()
        payload = rec.model_dump_json()

        targets = [(bucket_key("audit", day), AUDIT_TTL)]
        if rec.personal_data_accessed and rec.gdpr_relevant:
            targets.append((bucket_key("gdpr", day), GDPR_TTL))
        if rec.financial_data_accessed:
            targets.append((bucket_key("financial", day), FINANCIAL_TTL))
        if rec.admin_action:
            targets.append((bucket_key("admin", day), ADMIN_TTL))

        for key, ttl in targets:
            await self._store.append_log(key, payload, ttl)

        logger.info(
            "Audit %s %s %s -> %d",
            rec.action.value, rec.method, rec.endpoint, rec.status_code,
            extra={
                "audit_id": rec.id,
                "user_id": rec.principal_id,
                "legal_basis": rec.legal_basis.value,
                "personal_data": rec.personal_data_accessed,
                "financial_data": rec.financial_data_accessed,
            },
        )
        if rec.admin_action:
            logger.warning("Administrative action by %s: %s %s", rec.principal_id, rec.method, rec.endpoint)

        return [key for key, _ in targets]

    async def _read(self, key: str, limit: int) -> List[AuditRecord]:
        records = []
        for raw in await self._store.read_log(key, limit):
            try:
                records.append(AuditRecord.model_validate(json.loads(raw)))
            except ValueError as e:
                logger.error("Skipping unreadable audit entry in %s: %s", key, e)
        return records

    async def get_logs(self, day: date, limit: int = 100, bucket: str = "audit") -> List[AuditRecord]:
        """Newest-first records for one day."""
        return await self._read(bucket_key(bucket, day), limit)

    async def get_gdpr_logs(
        self,
        principal_id: str,
        days: int = 30,
        limit: int = 50,
        today: Optional[date] = None,
    ) -> List[AuditRecord]:
        """GDPR records about one user over the last `days` days."""
        today = today or datetime.now(timezone.utc).date()
        results: List[AuditRecord] = []
        for offset in range(days):
            day = today - timedelta(days=offset)
            # A day's GDPR bucket is read whole; the limit applies to matches
            for rec in await self._read(bucket_key("gdpr", day), 10_000):
                if rec.principal_id == principal_id:
                    results.append(rec)
                    if len(results) >= limit:
                        return results
        return results
