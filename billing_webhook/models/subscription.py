import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import BigInteger, Date, DateTime, Numeric, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from billing_webhook.db.base import Base, JSONDocument


class WeeklySubscription(Base):
    """
    Recurring billing state, upserted on subscription_id by every lifecycle event.
    """
    __tablename__ = "weekly_subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    subscription_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
    )

    # Not every event carries the user (subscription.updated does not)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    status: Mapped[str] = mapped_column(String(30), nullable=False, default="active")
    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    next_billing_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(10), nullable=True)
    user_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONDocument, nullable=True)

    # Provider `created` of the last applied event (ordering guard)
    last_event_created: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return f"<WeeklySubscription subscription_id={self.subscription_id} status={self.status}>"
