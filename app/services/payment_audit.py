"""Append-only audit trail for payment-side mutations.

Writing an entry never fails the caller: any error while recording is
logged and dropped. Reads cover per-entity history, filtered listing,
summaries, anomaly scans and compliance export.
"""

from __future__ import annotations

import csv
import io
import json
import logging
from collections import Counter
from datetime import datetime, timedelta

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.config import settings
from app.errors import ValidationError
from app.models.audit import AuditAction, AuditEntityType, PaymentAuditLog
from app.schemas.billing import RequestContext
from app.services.audit_helpers import model_to_dict, normalize_value
from app.services.common import (
    apply_pagination,
    coerce_uuid,
    utcnow,
    validate_enum,
)

logger = logging.getLogger(__name__)

EXPORT_HEADERS = [
    "timestamp",
    "action",
    "entity_type",
    "entity_id",
    "user_id",
    "user_email",
    "ip_address",
    "user_agent",
    "old_data",
    "new_data",
]


def snapshot(model) -> dict | None:
    if model is None:
        return None
    return model_to_dict(model)


def _csv_field(value) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True, ensure_ascii=False)
    return str(value)


class PaymentAudit:
    @staticmethod
    def log_payment_action(
        db: Session,
        organization_id,
        action: AuditAction,
        entity_type: AuditEntityType,
        entity_id,
        old_data: dict | None = None,
        new_data: dict | None = None,
        context: RequestContext | None = None,
    ) -> PaymentAuditLog | None:
        """Queue one audit row on the caller's session.

        The row is committed together with the business change it
        describes.
        """
        try:
            context = context or RequestContext()
            entry = PaymentAuditLog(
                organization_id=coerce_uuid(organization_id),
                action=action,
                entity_type=entity_type,
                entity_id=str(entity_id),
                old_data=normalize_value(old_data) if old_data is not None else None,
                new_data=normalize_value(new_data) if new_data is not None else None,
                user_id=context.user_id,
                user_email=context.user_email,
                ip_address=context.ip_address,
                user_agent=context.user_agent,
            )
            db.add(entry)
            return entry
        except Exception:
            logger.exception(
                "Failed to record payment audit entry action=%s entity=%s:%s",
                getattr(action, "value", action),
                getattr(entity_type, "value", entity_type),
                entity_id,
            )
            return None

    @staticmethod
    def get_entity_history(
        db: Session, entity_type, entity_id, limit: int = 50
    ) -> list[PaymentAuditLog]:
        entity_type = validate_enum(entity_type, AuditEntityType, "entity_type")
        return (
            db.query(PaymentAuditLog)
            .filter(PaymentAuditLog.entity_type == entity_type)
            .filter(PaymentAuditLog.entity_id == str(entity_id))
            .order_by(PaymentAuditLog.created_at.desc())
            .limit(limit)
            .all()
        )

    @staticmethod
    def _org_query(db: Session, organization_id, date_from=None, date_to=None):
        query = db.query(PaymentAuditLog).filter(
            PaymentAuditLog.organization_id == coerce_uuid(organization_id)
        )
        if date_from:
            query = query.filter(PaymentAuditLog.created_at >= date_from)
        if date_to:
            query = query.filter(PaymentAuditLog.created_at <= date_to)
        return query

    @staticmethod
    def list_organization_logs(
        db: Session,
        organization_id,
        actions: list | None = None,
        entity_types: list | None = None,
        user_id: str | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> dict:
        query = PaymentAudit._org_query(db, organization_id, date_from, date_to)
        if actions:
            query = query.filter(
                PaymentAuditLog.action.in_(
                    [validate_enum(a, AuditAction, "action") for a in actions]
                )
            )
        if entity_types:
            query = query.filter(
                PaymentAuditLog.entity_type.in_(
                    [validate_enum(e, AuditEntityType, "entity_type") for e in entity_types]
                )
            )
        if user_id:
            query = query.filter(PaymentAuditLog.user_id == user_id)
        total = query.count()
        items = apply_pagination(
            query.order_by(PaymentAuditLog.created_at.desc()), limit, offset
        ).all()
        return {"items": items, "total": total, "limit": limit, "offset": offset}

    @staticmethod
    def get_summary(
        db: Session,
        organization_id,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
    ) -> dict:
        base = PaymentAudit._org_query(db, organization_id, date_from, date_to)
        total = base.count()
        by_action = (
            base.with_entities(PaymentAuditLog.action, func.count(PaymentAuditLog.id))
            .group_by(PaymentAuditLog.action)
            .all()
        )
        by_entity = (
            base.with_entities(PaymentAuditLog.entity_type, func.count(PaymentAuditLog.id))
            .group_by(PaymentAuditLog.entity_type)
            .all()
        )
        count_col = func.count(PaymentAuditLog.id)
        top_users = (
            base.filter(PaymentAuditLog.user_id.isnot(None))
            .with_entities(PaymentAuditLog.user_id, count_col)
            .group_by(PaymentAuditLog.user_id)
            .order_by(count_col.desc())
            .limit(10)
            .all()
        )
        return {
            "total_actions": total,
            "action_breakdown": {action.value: count for action, count in by_action},
            "entity_breakdown": {entity.value: count for entity, count in by_entity},
            "top_users": [
                {"user_id": user_id, "action_count": count} for user_id, count in top_users
            ],
        }

    @staticmethod
    def get_suspicious_activity(
        db: Session,
        organization_id,
        window_hours: int | None = None,
        failed_payment_threshold: int | None = None,
        refund_threshold: int | None = None,
        method_change_threshold: int | None = None,
        now: datetime | None = None,
    ) -> dict:
        """Flag identities whose activity in the window crosses a threshold."""
        window_hours = window_hours or settings.audit_window_hours
        failed_threshold = failed_payment_threshold or settings.audit_failed_payment_threshold
        refund_limit = refund_threshold or settings.audit_refund_threshold
        method_limit = method_change_threshold or settings.audit_method_change_threshold
        since = (now or utcnow()) - timedelta(hours=window_hours)
        rows = (
            PaymentAudit._org_query(db, organization_id, date_from=since)
            .filter(
                PaymentAuditLog.action.in_(
                    [
                        AuditAction.create,
                        AuditAction.update,
                        AuditAction.delete,
                        AuditAction.refund,
                        AuditAction.status_change,
                    ]
                )
            )
            .all()
        )
        failed: Counter = Counter()
        refunds: Counter = Counter()
        method_changes: Counter = Counter()
        for row in rows:
            new_status = (row.new_data or {}).get("status")
            if (
                row.entity_type == AuditEntityType.payment
                and row.action in (AuditAction.create, AuditAction.status_change)
                and new_status == "failed"
            ):
                failed[(row.ip_address, row.user_email)] += 1
            elif row.action == AuditAction.refund:
                refunds[(row.user_id, row.user_email)] += 1
            elif row.entity_type == AuditEntityType.payment_method and row.action in (
                AuditAction.create,
                AuditAction.update,
                AuditAction.delete,
            ):
                method_changes[(row.user_id, row.user_email)] += 1
        return {
            "window_hours": window_hours,
            "multiple_failed_payments": [
                {"ip_address": ip, "user_email": email, "failed_attempts": count}
                for (ip, email), count in failed.items()
                if count >= failed_threshold
            ],
            "rapid_refunds": [
                {"user_id": user_id, "user_email": email, "refund_count": count}
                for (user_id, email), count in refunds.items()
                if count >= refund_limit
            ],
            "bulk_payment_method_changes": [
                {"user_id": user_id, "user_email": email, "change_count": count}
                for (user_id, email), count in method_changes.items()
                if count >= method_limit
            ],
        }

    @staticmethod
    def export_logs(
        db: Session,
        organization_id,
        date_from: datetime,
        date_to: datetime,
        fmt: str = "json",
    ) -> str:
        rows = (
            PaymentAudit._org_query(db, organization_id, date_from, date_to)
            .order_by(PaymentAuditLog.created_at.asc())
            .all()
        )
        if fmt == "csv":
            buffer = io.StringIO()
            writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
            writer.writerow(EXPORT_HEADERS)
            for row in rows:
                values = [
                    normalize_value(row.created_at),
                    row.action.value,
                    row.entity_type.value,
                    row.entity_id,
                    row.user_id,
                    row.user_email,
                    row.ip_address,
                    row.user_agent,
                    row.old_data,
                    row.new_data,
                ]
                writer.writerow([_csv_field(value) for value in values])
            return buffer.getvalue()
        if fmt != "json":
            raise ValidationError(f"Unsupported export format: {fmt}")
        records = [
            {
                "id": str(row.id),
                "timestamp": normalize_value(row.created_at),
                "action": row.action.value,
                "entity_type": row.entity_type.value,
                "entity_id": row.entity_id,
                "user_id": row.user_id,
                "user_email": row.user_email,
                "ip_address": row.ip_address,
                "user_agent": row.user_agent,
                "old_data": row.old_data,
                "new_data": row.new_data,
            }
            for row in rows
        ]
        payload = {
            "records": records,
            "metadata": {
                "organization_id": str(organization_id),
                "date_from": normalize_value(date_from),
                "date_to": normalize_value(date_to),
                "record_count": len(records),
                "exported_at": normalize_value(utcnow()),
            },
        }
        return json.dumps(payload, ensure_ascii=False, indent=2)
