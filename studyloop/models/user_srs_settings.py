from sqlalchemy import Boolean, Float, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from studyloop.config import settings
from studyloop.models.base import Base, TimestampMixin


class UserSrsSettings(Base, TimestampMixin):
    """Per-user scheduling preferences; read-only to the engine."""

    __tablename__ = "user_srs_settings"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), unique=True, nullable=False)
    target_retention: Mapped[float] = mapped_column(Float, nullable=False, default=0.9)
    max_new_cards_per_day: Mapped[int] = mapped_column(Integer, nullable=False, default=20)
    max_reviews_per_day: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    interleave_reviews: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")  # IANA name

    @classmethod
    def defaults(cls, user_id: int) -> "UserSrsSettings":
        """Build an unsaved settings object from the application defaults."""
        return cls(
            user_id=user_id,
            target_retention=settings.target_retention,
            max_new_cards_per_day=settings.max_new_cards_per_day,
            max_reviews_per_day=settings.max_reviews_per_day,
            interleave_reviews=settings.interleave_reviews,
            timezone="UTC",
        )
