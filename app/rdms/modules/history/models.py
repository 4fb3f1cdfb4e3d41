from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.rdms.models import Base

if TYPE_CHECKING:
    from app.rdms.modules.items.models import Item, Project
    from app.rdms.modules.qc_documents.models import QCDocumentApproval

CHANGE_TYPES = ("CREATE", "UPDATE", "DELETE", "RESTORE")


class ItemHistory(Base):
    __tablename__ = "item_histories"
    __table_args__ = (
        UniqueConstraint("item_id", "version", name="uq_item_history_version"),
        UniqueConstraint("change_request_id", name="uq_item_history_change_request"),
        Index("idx_item_histories_project", "project_id"),
        Index("idx_item_histories_full_id", "item_full_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    item_id: Mapped[int | None] = mapped_column(ForeignKey("items.id", ondelete="SET NULL"), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    change_type: Mapped[str] = mapped_column(String(16), nullable=False)

    snapshot: Mapped[str] = mapped_column(Text, nullable=False)  # JSON
    diff: Mapped[str | None] = mapped_column(Text, nullable=True)  # JSON, UPDATE only

    submitted_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    reviewed_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    submitter_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reviewer_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    submit_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    review_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    change_request_id: Mapped[int | None] = mapped_column(
        ForeignKey("change_requests.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Survive item deletion
    item_full_id: Mapped[str] = mapped_column(String(128), nullable=False)
    item_title: Mapped[str] = mapped_column(String(255), nullable=False)
    project_id: Mapped[int | None] = mapped_column(ForeignKey("projects.id", ondelete="SET NULL"), nullable=True)

    # Set once the QC document has been generated
    iso_doc_path: Mapped[str | None] = mapped_column(String(512), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    item: Mapped["Item | None"] = relationship("Item", lazy="selectin")
    project: Mapped["Project | None"] = relationship("Project", lazy="selectin")
    qc_approval: Mapped["QCDocumentApproval | None"] = relationship(
        "QCDocumentApproval",
        back_populates="item_history",
        uselist=False,
        lazy="selectin",
    )
