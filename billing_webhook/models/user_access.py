from datetime import datetime

from sqlalchemy import Boolean, DateTime, String, false
from sqlalchemy.orm import Mapped, mapped_column

from billing_webhook.db.base import Base


class UserAccess(Base):
    """
    Per-user access flag. Only the lock fields are written by this service;
    unlocking is an administrative action done elsewhere.
    """
    __tablename__ = "users"

    # Stripe customer id or the checkout client_reference_id
    id: Mapped[str] = mapped_column(String(255), primary_key=True)

    email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    subscription_locked: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=false(),
    )
    lock_reason: Mapped[str | None] = mapped_column(String(100), nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
