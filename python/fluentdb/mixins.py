"""Mixins for common entity patterns."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime

from fluentdb.fields import mapped_column


@dataclass(kw_only=True)
class SoftDeleteMixin:
    """Mixin that adds a ``deleted_at`` soft-delete column.

    Rows whose ``deleted_at`` is set are excluded from queries unless the
    query asks for them with ``with_deleted()`` or ``only_deleted()``.

    Example:
        >>> @dataclass
        ... class Article(SoftDeleteMixin):
        ...     title: str
        ...     id: int = mapped_column(primary_key=True, generated=True)
        >>>
        >>> db.soft_delete(article)
        >>> db.from_(Article).find()                 # excludes it
        >>> db.from_(Article).with_deleted().find()  # includes it
        >>> db.restore(article)
    """

    deleted_at: datetime | None = mapped_column(soft_delete=True)

    @property
    def is_deleted(self) -> bool:
        """Check if this instance is soft-deleted."""
        return self.deleted_at is not None

    def mark_deleted(self) -> None:
        """Set ``deleted_at`` to now."""
        self.deleted_at = datetime.now(UTC)

    def mark_restored(self) -> None:
        """Clear ``deleted_at``."""
        self.deleted_at = None
