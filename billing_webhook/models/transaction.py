import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, Numeric, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from billing_webhook.db.base import Base, JSONDocument


class BnplTransaction(Base):
    """
    One-time payment (card or buy-now-pay-later). Written once, never updated.
    """
    __tablename__ = "bnpl_transactions"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    order_id: Mapped[str] = mapped_column(String(255), nullable=False)

    # Stripe PaymentIntent id; at most one row per payment
    payment_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        unique=True,
        index=True,
    )

    payment_method: Mapped[str] = mapped_column(String(50), nullable=False, default="card")
    amount_paid: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    bnpl_status: Mapped[str] = mapped_column(String(20), nullable=False)
    user_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONDocument, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<BnplTransaction payment_id={self.payment_id} status={self.bnpl_status}>"
