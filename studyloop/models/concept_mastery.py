from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from studyloop.models.base import Base, TimestampMixin


class ConceptMastery(Base, TimestampMixin):
    """Derived per-user mastery of a concept, updated on every graded card."""

    __tablename__ = "concept_mastery"
    __table_args__ = (UniqueConstraint("user_id", "concept_id", name="uq_mastery_user_concept"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    concept_id: Mapped[str] = mapped_column(String(100), nullable=False)
    mastery_level: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)  # 0-1
    peak_mastery: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    total_exposures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    successful_recalls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_reviewed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class KnowledgeGap(Base, TimestampMixin):
    __tablename__ = "knowledge_gaps"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    concept_id: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="open")  # open, resolved
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
