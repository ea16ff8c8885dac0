"""Tests for soft delete mixin."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

import pytest

from fluentdb import DescriptorCache, MappingError, NotFoundError, SoftDeleteMixin, mapped_column


@dataclass
class Article(SoftDeleteMixin):
    """Test model with soft delete."""

    title: str = ""
    id: int | None = mapped_column(primary_key=True, generated=True)


@dataclass
class RegularModel:
    """Test model without soft delete."""

    name: str
    id: int | None = mapped_column(primary_key=True, generated=True)


class TestSoftDeleteMixinDefinition:
    """Test SoftDeleteMixin model definition."""

    def test_adds_deleted_at_column(self) -> None:
        """Mixin adds a nullable deleted_at column."""
        desc = DescriptorCache().resolve(Article)
        assert desc.soft_delete_column == "deleted_at"
        assert desc.binding("deleted_at").nullable is True

    def test_regular_model_no_soft_delete(self) -> None:
        assert DescriptorCache().resolve(RegularModel).soft_delete_column is None

    def test_is_deleted_property(self) -> None:
        """Instance has is_deleted property."""
        article = Article(title="Test")
        assert article.is_deleted is False

        article.mark_deleted()
        assert article.is_deleted is True

        article.mark_restored()
        assert article.is_deleted is False


@pytest.fixture
def articles(db, run_ddl):
    """Create articles and regular_models tables with three live articles."""
    run_ddl(
        """
        CREATE TABLE articles (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            title TEXT NOT NULL,
            deleted_at TIMESTAMP
        )
        """,
        "CREATE TABLE regular_models (id INTEGER PRIMARY KEY AUTOINCREMENT, name TEXT NOT NULL)",
    )
    return [db.insert(Article(title=t)) for t in ("first", "second", "third")]


class TestSoftDeleteOperations:
    """Test soft_delete / restore through the façade."""

    def test_soft_delete_sets_timestamp(self, db, articles) -> None:
        article = db.soft_delete(articles[0])
        assert isinstance(article.deleted_at, datetime)
        stored = db.find_by_pk(Article, article.id, include_deleted=True)
        assert stored.deleted_at == article.deleted_at

    def test_excluded_from_queries(self, db, articles) -> None:
        """Soft-deleted rows are hidden by default."""
        db.soft_delete(articles[0])
        assert [a.title for a in db.from_(Article).order_by("id").find()] == ["second", "third"]
        assert db.from_(Article).count() == 2
        assert not db.from_(Article).where(title="first").exists()

    def test_find_by_pk_hides_deleted(self, db, articles) -> None:
        db.soft_delete(articles[0])
        with pytest.raises(NotFoundError):
            db.find_by_pk(Article, articles[0].id)

    def test_with_deleted(self, db, articles) -> None:
        db.soft_delete(articles[0])
        assert db.from_(Article).with_deleted().count() == 3

    def test_only_deleted(self, db, articles) -> None:
        db.soft_delete(articles[1])
        deleted = db.from_(Article).only_deleted().find()
        assert [a.title for a in deleted] == ["second"]
        assert deleted[0].is_deleted

    def test_restore(self, db, articles) -> None:
        db.soft_delete(articles[0])
        restored = db.restore(articles[0])
        assert restored.deleted_at is None
        assert db.from_(Article).count() == 3
        assert db.from_(Article).only_deleted().count() == 0

    def test_bulk_delete_skips_deleted_rows(self, db, articles) -> None:
        """Bulk statements only see live rows unless asked otherwise."""
        db.soft_delete(articles[0])
        assert db.from_(Article).where(title__in=["first", "second"]).delete() == 1
        assert db.from_(Article).with_deleted().count() == 2

    def test_update_deleted_entity(self, db, articles) -> None:
        article = db.soft_delete(articles[0])
        article.title = "edited"
        db.update(article)
        assert db.find_by_pk(Article, article.id, include_deleted=True).title == "edited"

    def test_hard_delete(self, db, articles) -> None:
        assert db.delete(articles[0]) == 1
        assert db.from_(Article).with_deleted().count() == 2

    def test_soft_delete_missing_row(self, db, articles) -> None:
        with pytest.raises(NotFoundError):
            db.soft_delete(Article(title="ghost", id=99))

    def test_model_without_soft_delete(self, db, articles) -> None:
        """Models without the mixin refuse soft_delete."""
        model = db.insert(RegularModel(name="plain"))
        with pytest.raises(MappingError, match="doesn't support soft delete"):
            db.soft_delete(model)
        with pytest.raises(MappingError):
            db.restore(model)
