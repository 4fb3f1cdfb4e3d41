from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.rdms.models import Base


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    code_prefix: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)  # e.g. "QP-01"

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class Item(Base):
    """
    Hierarchical content node. Never physically removed: DELETE approvals set
    is_deleted so history rows keep a valid item_id.
    """

    __tablename__ = "items"
    __table_args__ = (
        Index("idx_items_project_parent", "project_id", "parent_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    full_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)  # e.g. "QP-01-2-1"
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    content: Mapped[str | None] = mapped_column(Text, nullable=True)  # rich text, opaque
    attachments: Mapped[str | None] = mapped_column(Text, nullable=True)  # JSON list

    project_id: Mapped[int] = mapped_column(ForeignKey("projects.id", ondelete="RESTRICT"), nullable=False)
    parent_id: Mapped[int | None] = mapped_column(ForeignKey("items.id", ondelete="RESTRICT"), nullable=True)

    current_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    project: Mapped[Project] = relationship("Project", lazy="selectin")
    parent: Mapped["Item | None"] = relationship("Item", remote_side=[id], lazy="selectin")


class ItemRelation(Base):
    """
    One direction of a "related items" edge. Symmetric relations are stored as
    two rows; each direction keeps its own description.
    """

    __tablename__ = "item_relations"
    __table_args__ = (
        UniqueConstraint("source_id", "target_id", name="uq_item_relation_pair"),
        Index("idx_item_relations_target", "target_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    source_id: Mapped[int] = mapped_column(ForeignKey("items.id", ondelete="CASCADE"), nullable=False)
    target_id: Mapped[int] = mapped_column(ForeignKey("items.id", ondelete="CASCADE"), nullable=False)
    description: Mapped[str | None] = mapped_column(String(512), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    source: Mapped[Item] = relationship("Item", foreign_keys=[source_id], lazy="selectin")
    target: Mapped[Item] = relationship("Item", foreign_keys=[target_id], lazy="selectin")
