"""Tests for tags.py"""

import pytest

from linkvault.core.errors import LinkvaultError, NotFoundError
from linkvault.core.models import Tag, TagSource
from linkvault.core.tags import TagLookup, TagNameCache


@pytest.fixture
def tags(db):
    return TagLookup(db)


class TestTagNameCache:
    def test_loads_once_until_invalidated(self):
        cache = TagNameCache()
        loads = []

        def loader():
            loads.append(1)
            return {"t1": "python", "t2": "web"}

        assert cache.resolve(["t2", "t1"], loader) == ["web", "python"]
        assert cache.resolve(["t1", "missing"], loader) == ["python"]
        assert (cache.misses, cache.hits) == (1, 1)

        cache.invalidate()
        assert cache.is_loaded is False
        cache.resolve(["t1"], loader)
        assert len(loads) == 2


class TestTagNames:
    """Cache behaviour through the lookup the indexer uses."""

    def test_miss_then_hits_then_miss_after_rename(self, tags):
        python = tags.create_tag("python")
        tags.assign_tag("b1", python.id)

        assert tags.get_tag_names("b1") == ["python"]
        assert tags.get_tag_names("b1") == ["python"]
        assert tags.get_tag_names("b2") == []
        assert (tags.cache.misses, tags.cache.hits) == (1, 2)

        tags.rename_tag(python.id, "py")

        assert tags.get_tag_names("b1") == ["py"]
        assert tags.cache.misses == 2

    def test_create_and_delete_invalidate(self, tags):
        tags.get_tag_names("b1")
        tag = tags.create_tag("rust")
        assert tags.cache.is_loaded is False

        tags.get_tag_names("b1")
        tags.delete_tag(tag.id)
        assert tags.cache.is_loaded is False


class TestMutations:
    def test_create_rejects_duplicates_and_blank(self, tags):
        tags.create_tag("python")
        with pytest.raises(LinkvaultError, match="already exists"):
            tags.create_tag("python")
        with pytest.raises(LinkvaultError, match="must not be empty"):
            tags.create_tag("   ")

    def test_rename_onto_existing_name_rejected(self, tags):
        a = tags.create_tag("a")
        tags.create_tag("b")
        with pytest.raises(LinkvaultError, match="merge_tags"):
            tags.rename_tag(a.id, "b")

    def test_rename_strips_and_rejects_blank(self, tags):
        tag = tags.create_tag("python")

        assert tags.rename_tag(tag.id, "  py  ").name == "py"
        with pytest.raises(LinkvaultError, match="must not be empty"):
            tags.rename_tag(tag.id, "   ")
        assert tags.get_tag(tag.id).name == "py"

    def test_names_keep_assignment_order(self, tags):
        names = ["zeta", "alpha", "mid", "beta", "omega"]
        for name in names:
            tags.assign_tag("b1", tags.create_tag(name).id)

        assert tags.get_tag_names("b1") == names

    def test_default_tags_are_protected(self, db, tags):
        db.save_tag(Tag(id="builtin", name="Read later", source=TagSource.DEFAULT))
        other = tags.create_tag("other")

        with pytest.raises(LinkvaultError, match="Cannot delete default tags"):
            tags.delete_tag("builtin")
        with pytest.raises(LinkvaultError, match="Cannot merge default tags"):
            tags.merge_tags("builtin", other.id)

    def test_missing_tag(self, tags):
        with pytest.raises(NotFoundError):
            tags.delete_tag("nope")

    def test_assign_and_remove_track_usage(self, tags):
        tag = tags.create_tag("python")

        assert tags.assign_tag("b1", tag.id) is True
        assert tags.assign_tag("b1", tag.id) is False
        assert tags.assign_tag("b2", tag.id) is True
        assert tags.get_tag(tag.id).usage_count == 2

        assert tags.remove_tag("b1", tag.id) is True
        assert tags.remove_tag("b1", tag.id) is False
        assert tags.get_tag(tag.id).usage_count == 1
        assert [t.name for t in tags.get_bookmark_tags("b2")] == ["python"]

    def test_merge_moves_links_and_recounts(self, tags):
        js = tags.create_tag("js")
        javascript = tags.create_tag("javascript")
        tags.assign_tag("b1", js.id)
        tags.assign_tag("b2", js.id)
        tags.assign_tag("b2", javascript.id)

        merged = tags.merge_tags(js.id, javascript.id)

        assert merged.usage_count == 2
        assert tags.get_tag(js.id) is None
        assert tags.get_tag_names("b1") == ["javascript"]
        assert tags.get_tag_names("b2") == ["javascript"]

    def test_merge_with_itself_rejected(self, tags):
        tag = tags.create_tag("a")
        with pytest.raises(LinkvaultError):
            tags.merge_tags(tag.id, tag.id)
