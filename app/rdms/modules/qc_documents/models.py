from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.rdms.models import Base

if TYPE_CHECKING:
    from app.rdms.modules.history.models import ItemHistory

QC_STATUSES = ("PENDING_QC", "PENDING_PM", "APPROVED", "REJECTED", "REVISION_REQUESTED")


class QCDocumentApproval(Base):
    __tablename__ = "qc_document_approvals"
    __table_args__ = (
        Index("idx_qc_document_approvals_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    item_history_id: Mapped[int] = mapped_column(
        ForeignKey("item_histories.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="PENDING_QC")

    qc_approved_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    qc_approver_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    qc_approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    qc_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    pm_approved_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    pm_approver_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    pm_approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    pm_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    revision_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    item_history: Mapped["ItemHistory"] = relationship(
        "ItemHistory",
        back_populates="qc_approval",
        lazy="selectin",
    )
    revisions: Mapped[list["QCRevisionRequest"]] = relationship(
        "QCRevisionRequest",
        back_populates="approval",
        cascade="all, delete-orphan",
        order_by="QCRevisionRequest.revision_number",
        lazy="selectin",
    )


class QCRevisionRequest(Base):
    __tablename__ = "qc_revision_requests"
    __table_args__ = (Index("idx_qc_revision_requests_approval", "approval_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    approval_id: Mapped[int] = mapped_column(
        ForeignKey("qc_document_approvals.id", ondelete="CASCADE"),
        nullable=False,
    )
    revision_number: Mapped[int] = mapped_column(Integer, nullable=False)
    requested_stage: Mapped[str] = mapped_column(String(32), nullable=False)  # PENDING_QC or PENDING_PM

    requested_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    requester_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    request_note: Mapped[str] = mapped_column(Text, nullable=False)

    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    resolved_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    resolution_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    approval: Mapped[QCDocumentApproval] = relationship(
        "QCDocumentApproval",
        back_populates="revisions",
        lazy="selectin",
    )
