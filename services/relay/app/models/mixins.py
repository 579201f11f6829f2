"""Model mixins for common patterns."""

from datetime import UTC, datetime

from sqlalchemy import DateTime
from sqlalchemy.orm import Mapped, mapped_column


class CreatedAtMixin:
    """
    Mixin for an immutable creation timestamp.

    Relay rows are append-only or mutated only by their owning component, so
    there is no updated_at column; the audit trail is the row history itself.
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
