"""
نموذج سجل الأنشطة - Audit Log Model
يسجل القرارات والعمليات الإدارية على طبقة التكامل
(amendment decisions, manual status changes, archival, deletion, exports)
"""
from sqlalchemy import Column, String, DateTime, Text, JSON, Index
from datetime import datetime
from decimal import Decimal
import uuid
import enum

from ..database import Base


def _serialize_for_json(obj):
    """Convert non-JSON-serializable types to serializable ones"""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return {k: _serialize_for_json(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_serialize_for_json(i) for i in obj]
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, datetime):
        return obj.isoformat()
    if hasattr(obj, "isoformat"):
        return obj.isoformat()
    if isinstance(obj, enum.Enum):
        return obj.value
    return obj


class ActivityType(str, enum.Enum):
    """أنواع الأنشطة"""
    AMENDMENT_APPROVE = "amendment_approve"
    AMENDMENT_PARTIAL_APPROVE = "amendment_partial_approve"
    AMENDMENT_REJECT = "amendment_reject"
    AMENDMENT_AUTO_APPROVE = "amendment_auto_approve"
    AMENDMENT_EXPIRE = "amendment_expire"
    BOOKING_STATUS_CHANGE = "booking_status_change"
    PAYLOAD_ARCHIVE = "payload_archive"
    PAYLOAD_DELETE = "payload_delete"
    PAYLOAD_QUARANTINE = "payload_quarantine"
    RETENTION_CLEANUP = "retention_cleanup"
    DEAD_LETTER_REPLAY = "dead_letter_replay"
    EXPORT = "export"


class EntityType(str, enum.Enum):
    """أنواع الكيانات"""
    AMENDMENT = "amendment"
    BOOKING = "booking"
    PAYLOAD = "payload"
    DEAD_LETTER = "dead_letter"
    SYSTEM = "system"


ACTIVITY_LABELS = {
    ActivityType.AMENDMENT_APPROVE: "قبول تعديل",
    ActivityType.AMENDMENT_PARTIAL_APPROVE: "قبول جزئي لتعديل",
    ActivityType.AMENDMENT_REJECT: "رفض تعديل",
    ActivityType.AMENDMENT_AUTO_APPROVE: "قبول تلقائي لتعديل",
    ActivityType.AMENDMENT_EXPIRE: "انتهاء صلاحية تعديل",
    ActivityType.BOOKING_STATUS_CHANGE: "تغيير حالة حجز",
    ActivityType.PAYLOAD_ARCHIVE: "أرشفة رسالة",
    ActivityType.PAYLOAD_DELETE: "حذف رسالة",
    ActivityType.PAYLOAD_QUARANTINE: "عزل رسالة",
    ActivityType.RETENTION_CLEANUP: "تنظيف الاحتفاظ",
    ActivityType.DEAD_LETTER_REPLAY: "إعادة إرسال حدث",
    ActivityType.EXPORT: "تصدير",
}


class AuditLog(Base):
    """
    سجل الأنشطة - يحتفظ بكل العمليات المهمة
    """
    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # من قام بالعملية (user id from the auth service, or "system")
    actor_id = Column(String(100), nullable=True)
    actor_role = Column(String(30), nullable=True)

    activity_type = Column(String(40), nullable=False)
    entity_type = Column(String(20), nullable=False)
    entity_id = Column(String(64), nullable=True)

    description = Column(Text, nullable=True)
    old_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)
    correlation_id = Column(String(64), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_audit_entity", "entity_type", "entity_id"),
        Index("ix_audit_created", "created_at"),
    )

    def __repr__(self):
        return f"<AuditLog {self.activity_type} {self.entity_type}:{self.entity_id} by {self.actor_id}>"

    @classmethod
    def log(cls, db, activity_type: ActivityType, entity_type: EntityType,
            entity_id: str = None, actor_id: str = None, actor_role: str = None,
            description: str = None, old_values: dict = None, new_values: dict = None,
            correlation_id: str = None, created_at: datetime = None, commit: bool = False):
        """
        تسجيل نشاط جديد
        """
        log_entry = cls(
            actor_id=actor_id or "system",
            actor_role=actor_role,
            activity_type=activity_type.value,
            entity_type=entity_type.value,
            entity_id=entity_id,
            description=description,
            old_values=_serialize_for_json(old_values),
            new_values=_serialize_for_json(new_values),
            correlation_id=correlation_id,
            created_at=created_at or datetime.utcnow(),
        )
        db.add(log_entry)
        if commit:
            db.commit()
        return log_entry
