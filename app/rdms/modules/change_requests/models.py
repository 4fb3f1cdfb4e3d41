from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.rdms.models import Base, User

if TYPE_CHECKING:
    from app.rdms.modules.items.models import Item, Project

REQUEST_TYPES = ("CREATE", "UPDATE", "DELETE", "PROJECT_UPDATE", "PROJECT_DELETE")
ITEM_REQUEST_TYPES = ("CREATE", "UPDATE", "DELETE")
REQUEST_STATUSES = ("PENDING", "APPROVED", "REJECTED", "RESUBMITTED")


class ChangeRequest(Base):
    __tablename__ = "change_requests"
    __table_args__ = (
        Index("idx_change_requests_status", "status"),
        Index("idx_change_requests_submitter_status", "submitted_by_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    type: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")

    # JSON payload; parse with payloads.parse_payload, never read raw elsewhere
    data: Mapped[str] = mapped_column(Text, nullable=False, default="{}")

    target_project_id: Mapped[int | None] = mapped_column(ForeignKey("projects.id", ondelete="SET NULL"), nullable=True)
    target_parent_id: Mapped[int | None] = mapped_column(ForeignKey("items.id", ondelete="SET NULL"), nullable=True)
    item_id: Mapped[int | None] = mapped_column(ForeignKey("items.id", ondelete="SET NULL"), nullable=True)

    submitted_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    submitter_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    submit_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    reviewed_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    reviewer_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    review_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    previous_request_id: Mapped[int | None] = mapped_column(
        ForeignKey("change_requests.id", ondelete="SET NULL"),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    submitted_by: Mapped[User | None] = relationship("User", foreign_keys=[submitted_by_id], lazy="selectin")
    reviewed_by: Mapped[User | None] = relationship("User", foreign_keys=[reviewed_by_id], lazy="selectin")
    target_project: Mapped["Project | None"] = relationship("Project", lazy="selectin")
    target_parent: Mapped["Item | None"] = relationship("Item", foreign_keys=[target_parent_id], lazy="selectin")
    item: Mapped["Item | None"] = relationship("Item", foreign_keys=[item_id], lazy="selectin")

    @property
    def submitter_display(self) -> str | None:
        return self.submitted_by.username if self.submitted_by else self.submitter_name

    @property
    def reviewer_display(self) -> str | None:
        return self.reviewed_by.username if self.reviewed_by else self.reviewer_name
