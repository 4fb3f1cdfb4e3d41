from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.rdms.models import Base

# APPROVAL: change request approved; REJECTION: change request rejected;
# REVISION_REQUEST: QC/PM asked for changes; COMPLETED: QC document fully signed.
NOTIFICATION_TYPES = ("APPROVAL", "REJECTION", "REVISION_REQUEST", "COMPLETED")


class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (
        Index("idx_notifications_user_read", "user_id", "is_read"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    link: Mapped[str | None] = mapped_column(String(512), nullable=True)

    change_request_id: Mapped[int | None] = mapped_column(
        ForeignKey("change_requests.id", ondelete="SET NULL"),
        nullable=True,
    )
    qc_approval_id: Mapped[int | None] = mapped_column(
        ForeignKey("qc_document_approvals.id", ondelete="SET NULL"),
        nullable=True,
    )
    item_history_id: Mapped[int | None] = mapped_column(
        ForeignKey("item_histories.id", ondelete="SET NULL"),
        nullable=True,
    )

    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
