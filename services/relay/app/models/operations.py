from sqlalchemy import Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ..db import Base
from .mixins import CreatedAtMixin

OPERATION_PENDING = "pending"
OPERATION_COMPLETED = "completed"
OPERATION_FAILED = "failed"


class Operation(CreatedAtMixin, Base):
    __tablename__ = "operations"
    __table_args__ = (
        # Index for filtering history by kind
        Index("ix_operations_kind", "kind"),
        # Index for time-range queries
        Index("ix_operations_created_at", "created_at"),
        # Lookup of the operation behind an idempotency key
        Index("ix_operations_idempotency_key", "idempotency_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)  # mint|burn|freeze|...
    target: Mapped[str] = mapped_column(String(64), nullable=False)
    # Base units as a decimal string; u64 and wider do not fit every backend's integer
    amount: Mapped[str] = mapped_column(String(80), nullable=False, default="0")
    memo: Mapped[str | None] = mapped_column(String(200), nullable=True)
    signature: Mapped[str | None] = mapped_column(String(128), nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(128), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=OPERATION_PENDING)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
