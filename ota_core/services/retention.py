"""
Payload Retention Service

Age-based archive / delete over the payload store:
- archive: record past `archive_after` is written to
  {ARCHIVE_LOCATION}/{yyyy}/{mm}/{payload_id}.json.gz, raw bodies are dropped,
  hash + parsed fields + metadata stay in the active store
- delete: record past `delete_after` is removed together with its archive file

Sweeps run in batches until nothing eligible remains; each run keeps
processed / archived / deleted / bytes-reclaimed statistics.
"""

import base64
import gzip
import json
import logging
import os
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, or_
from sqlalchemy.exc import SQLAlchemyError

from ..config import settings
from ..errors import ValidationError
from ..models.audit_log import ActivityType, AuditLog, EntityType
from ..models.integration_alert import AlertSeverity, AlertType
from ..models.payload import DataLevel, OTAPayload
from ..utils.db_helpers import get_pending_with_skip_locked, run_blocking
from .payload_store import decompress

logger = logging.getLogger(__name__)

MANUAL_CLEANUP_MAX = 1000
OVERDUE_GRACE_DAYS = 7

ARCHIVED = "archived"
DELETED = "deleted"
NONE = "none"


def _b64(blob: Optional[bytes]) -> Optional[str]:
    if not blob:
        return None
    return base64.b64encode(decompress(blob)).decode("ascii")


class RetentionService:
    def __init__(self, session_factory, clock, alerts=None, archive_location: Optional[str] = None,
                 batch_size: Optional[int] = None):
        self.session_factory = session_factory
        self.clock = clock
        self.alerts = alerts
        self.archive_location = archive_location or settings.archive_location
        self.batch_size = batch_size or settings.retention_batch_size
        self.last_run: Dict[str, Any] = {}
        self.totals = {"runs": 0, "processed": 0, "archived": 0, "deleted": 0, "bytesReclaimed": 0}

    # ------------------------------------------------------------------
    # Scheduled jobs
    # ------------------------------------------------------------------

    async def run_sweep(self) -> Dict[str, Any]:
        """Daily sweep: archive and delete everything past its thresholds"""
        return await self._run("sweep", archive=True, delete=True)

    async def run_weekly_archival(self) -> Dict[str, Any]:
        """Archive-only pass for records past their archive threshold"""
        return await self._run("weekly_archival", archive=True, delete=False)

    async def run_compliance_check(self) -> Dict[str, Any]:
        """
        Monthly: force-delete records overdue by more than a week and verify
        archive files. Problems raise a retention_failure alert.
        """
        cutoff = self.clock.now() - timedelta(days=OVERDUE_GRACE_DAYS)
        overdue = await self._run("compliance_check", archive=False, delete=True, delete_before=cutoff)
        issues = await run_blocking(self._verify_archives_sync, 100)

        result = {"overdueDeleted": overdue["deleted"], "archiveIssues": issues}
        if overdue["deleted"] or issues:
            logger.warning(
                f"Retention compliance: {overdue['deleted']} overdue records removed, "
                f"{len(issues)} archive integrity issues"
            )
            if self.alerts:
                await run_blocking(
                    self.alerts.raise_alert,
                    AlertType.RETENTION_FAILURE,
                    f"Retention compliance check found {overdue['deleted']} overdue records "
                    f"and {len(issues)} archive issues",
                    AlertSeverity.MEDIUM,
                    None,
                    None,
                    None,
                    {"overdueDeleted": overdue["deleted"], "archiveIssues": issues[:20]},
                )
        return result

    async def manual_cleanup(self, channel: Optional[str] = None, older_than_days: Optional[int] = None,
                             operation: Optional[str] = None, limit: int = 100,
                             actor: Optional[str] = None) -> Dict[str, Any]:
        if limit < 1 or limit > MANUAL_CLEANUP_MAX:
            raise ValidationError(f"limit must be between 1 and {MANUAL_CLEANUP_MAX}", code="invalid_limit")
        if older_than_days is not None and older_than_days < 0:
            raise ValidationError("olderThanDays must not be negative", code="invalid_age")

        criteria = []
        if channel:
            criteria.append(OTAPayload.channel == channel)
        if operation:
            criteria.append(OTAPayload.operation == operation)
        if older_than_days is not None:
            criteria.append(OTAPayload.created_at < self.clock.now() - timedelta(days=older_than_days))

        logger.info(f"Manual cleanup by {actor or 'system'}: channel={channel} operation={operation} "
                    f"older_than_days={older_than_days} limit={limit}")
        return await self._run("manual", archive=True, delete=True, criteria=criteria, limit=limit, actor=actor)

    def stats(self) -> Dict[str, Any]:
        return {
            "lastRun": self.last_run or None,
            "totals": dict(self.totals),
            "archiveLocation": self.archive_location,
            "batchSize": self.batch_size,
            "defaultPolicies": {level.value: settings.retention_days(level.value) for level in DataLevel},
        }

    async def verify_archive_integrity(self, limit: int = 100) -> List[Dict[str, str]]:
        return await run_blocking(self._verify_archives_sync, limit)

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    async def _run(self, kind: str, archive: bool, delete: bool, criteria: Optional[list] = None,
                   limit: Optional[int] = None, delete_before: Optional[datetime] = None,
                   actor: Optional[str] = None) -> Dict[str, Any]:
        started = self.clock.now()
        stats = {"processed": 0, "archived": 0, "deleted": 0, "bytesReclaimed": 0, "errors": []}
        failed: List[str] = []

        while limit is None or stats["processed"] < limit:
            size = self.batch_size if limit is None else min(self.batch_size, limit - stats["processed"])
            batch = await run_blocking(
                self._process_batch_sync, archive, delete, criteria or [], size, delete_before, failed, actor,
            )
            for key in ("processed", "archived", "deleted", "bytesReclaimed"):
                stats[key] += batch[key]
            stats["errors"].extend(batch["errors"])
            failed.extend(e["payloadId"] for e in batch["errors"])
            if batch["selected"] < size:
                break

        finished = self.clock.now()
        run = {
            "kind": kind,
            "startedAt": started.isoformat(),
            "finishedAt": finished.isoformat(),
            **stats,
        }
        self.last_run = run
        self.totals["runs"] += 1
        for key in ("processed", "archived", "deleted", "bytesReclaimed"):
            self.totals[key] += stats[key]

        if stats["processed"] or stats["errors"]:
            await run_blocking(self._log_run_sync, run, actor)
        logger.info(
            f"Retention {kind}: processed={stats['processed']} archived={stats['archived']} "
            f"deleted={stats['deleted']} reclaimed={stats['bytesReclaimed']}B errors={len(stats['errors'])}"
        )
        return run

    def _process_batch_sync(self, archive: bool, delete: bool, criteria: list, size: int,
                            delete_before: Optional[datetime], exclude: List[str],
                            actor: Optional[str]) -> Dict[str, Any]:
        now = self.clock.now()
        delete_cutoff = delete_before or now
        eligible = []
        if delete:
            eligible.append(and_(OTAPayload.delete_after.isnot(None), OTAPayload.delete_after < delete_cutoff))
        if archive:
            eligible.append(and_(
                OTAPayload.archived_at.is_(None),
                OTAPayload.archive_after.isnot(None),
                OTAPayload.archive_after < now,
            ))

        condition = and_(or_(*eligible), *criteria)
        if exclude:
            condition = and_(condition, OTAPayload.payload_id.notin_(exclude))

        result = {"selected": 0, "processed": 0, "archived": 0, "deleted": 0, "bytesReclaimed": 0, "errors": []}
        db = self.session_factory()
        try:
            records = get_pending_with_skip_locked(
                db, OTAPayload, condition, order_by=OTAPayload.created_at.asc(), limit=size
            )
            result["selected"] = len(records)
            for record in records:
                payload_id = record.payload_id
                archive_file = None
                try:
                    if delete and record.delete_after is not None and record.delete_after < delete_cutoff:
                        archive_file = record.archive_location
                        action, reclaimed = DELETED, self._delete(db, record, now, actor)
                    elif archive and record.archived_at is None:
                        action, reclaimed = ARCHIVED, self._archive(db, record, now, actor)
                    else:
                        action, reclaimed = NONE, 0
                    db.commit()
                except (OSError, SQLAlchemyError) as e:
                    db.rollback()
                    logger.error(f"Retention failed for payload {payload_id}: {e}")
                    result["errors"].append({"payloadId": payload_id, "error": str(e)})
                    continue

                if archive_file:
                    self._remove_archive_file(payload_id, archive_file)

                result["processed"] += 1
                result["bytesReclaimed"] += reclaimed
                if action == ARCHIVED:
                    result["archived"] += 1
                elif action == DELETED:
                    result["deleted"] += 1
            return result
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Record actions
    # ------------------------------------------------------------------

    def archive_path(self, record: OTAPayload) -> str:
        created = record.created_at or self.clock.now()
        return os.path.join(self.archive_location, f"{created:%Y}", f"{created:%m}", f"{record.payload_id}.json.gz")

    def _archive(self, db, record: OTAPayload, now: datetime, actor: Optional[str]) -> int:
        path = self.archive_path(record)
        document = {
            "payloadId": record.payload_id,
            "correlationId": record.correlation_id,
            "direction": record.direction,
            "channel": record.channel,
            "hotelId": record.hotel_id,
            "method": record.method,
            "url": record.url,
            "headers": record.headers,
            "contentHash": record.content_hash,
            "bodyTruncated": record.body_truncated,
            "rawBody": _b64(record.raw_body),
            "response": {
                "status": record.response_status,
                "headers": record.response_headers,
                "body": _b64(record.response_body),
                "timeMs": record.response_time_ms,
            },
            "parsedFields": record.parsed_fields,
            "classification": {
                "containsPii": record.contains_pii,
                "containsPaymentData": record.contains_payment_data,
                "dataLevel": record.data_level,
            },
            "retentionPolicy": record.retention_policy,
            "createdAt": record.created_at.isoformat() if record.created_at else None,
            "archivedAt": now.isoformat(),
        }

        os.makedirs(os.path.dirname(path), exist_ok=True)
        with gzip.open(path, "wt", encoding="utf-8") as fh:
            json.dump(document, fh)

        reclaimed = len(record.raw_body or b"") + len(record.response_body or b"")
        record.raw_body = None
        record.response_body = None
        record.archived_at = now
        record.archive_location = path
        record.updated_at = now

        AuditLog.log(
            db, ActivityType.PAYLOAD_ARCHIVE, EntityType.PAYLOAD,
            entity_id=record.payload_id,
            actor_id=actor,
            description=f"Archived to {path}",
            new_values={"archiveLocation": path, "bytesReclaimed": reclaimed},
            correlation_id=record.correlation_id,
            created_at=now,
        )
        return reclaimed

    def _delete(self, db, record: OTAPayload, now: datetime, actor: Optional[str]) -> int:
        """Removes the row; its archive file goes only once the delete is committed"""
        reclaimed = len(record.raw_body or b"") + len(record.response_body or b"")
        AuditLog.log(
            db, ActivityType.PAYLOAD_DELETE, EntityType.PAYLOAD,
            entity_id=record.payload_id,
            actor_id=actor,
            description=f"Deleted after {record.retention_policy} retention",
            old_values={
                "contentHash": record.content_hash,
                "channel": record.channel,
                "createdAt": record.created_at,
                "deleteAfter": record.delete_after,
            },
            correlation_id=record.correlation_id,
            created_at=now,
        )
        db.delete(record)
        return reclaimed

    @staticmethod
    def _remove_archive_file(payload_id: str, path: str):
        try:
            os.remove(path)
        except FileNotFoundError:
            logger.warning(f"Archive file already gone for {payload_id}: {path}")
        except OSError as e:
            logger.error(f"Deleted payload {payload_id} but could not remove archive {path}: {e}")

    def _verify_archives_sync(self, limit: int) -> List[Dict[str, str]]:
        db = self.session_factory()
        try:
            archived = db.query(OTAPayload.payload_id, OTAPayload.archive_location).filter(
                OTAPayload.archived_at.isnot(None),
                OTAPayload.archive_location.isnot(None),
            ).order_by(OTAPayload.archived_at.desc()).limit(limit).all()
        finally:
            db.close()

        issues = []
        for payload_id, location in archived:
            if not os.path.exists(location):
                issues.append({"payloadId": payload_id, "issue": "missing", "location": location})
            elif os.path.getsize(location) == 0:
                issues.append({"payloadId": payload_id, "issue": "empty", "location": location})
        return issues

    def _log_run_sync(self, run: Dict[str, Any], actor: Optional[str]):
        db = self.session_factory()
        try:
            AuditLog.log(
                db, ActivityType.RETENTION_CLEANUP, EntityType.SYSTEM,
                actor_id=actor,
                description=f"Retention {run['kind']} run",
                new_values={**{k: v for k, v in run.items() if k != "errors"}, "errors": len(run["errors"])},
                created_at=self.clock.now(),
                commit=True,
            )
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Could not record retention run: {e}")
        finally:
            db.close()
