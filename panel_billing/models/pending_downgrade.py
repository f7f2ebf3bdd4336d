"""
Pending downgrade model.
"""
import uuid
from datetime import datetime

from sqlalchemy import String, DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from panel_billing.database import Base


class PendingDowngrade(Base):
    """Deferred plan downgrade, one row per user at most."""

    __tablename__ = "pending_downgrades"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id"), unique=True, nullable=False
    )
    current_plan_id: Mapped[str] = mapped_column(String(36), ForeignKey("plans.id"))
    new_plan_id: Mapped[str] = mapped_column(String(36), ForeignKey("plans.id"))
    effective_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    current_plan = relationship("Plan", foreign_keys=[current_plan_id], lazy="noload")
    new_plan = relationship("Plan", foreign_keys=[new_plan_id], lazy="noload")
