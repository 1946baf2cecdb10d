"""
Unit tests for the document store backends.
"""

import pytest
import pytest_asyncio

from practice_relay.errors import ErrorKind, SessionError
from practice_relay.store import MemoryDocumentStore, SqlDocumentStore, get_async_url


@pytest_asyncio.fixture(params=["memory", "sql"])
async def doc_store(request, tmp_path):
    """Each test runs against both backends."""
    if request.param == "memory":
        store = MemoryDocumentStore()
    else:
        store = SqlDocumentStore.from_url(f"sqlite+aiosqlite:///{tmp_path / 'documents.db'}")
        await store.create_tables()
    yield store
    await store.close()


class TestBasicOperations:
    @pytest.mark.asyncio
    async def test_missing_document(self, doc_store):
        assert await doc_store.get("users", "nobody") is None
        assert await doc_store.get_versioned("users", "nobody") == (None, 0)

    @pytest.mark.asyncio
    async def test_set_and_get(self, doc_store):
        await doc_store.set("users", "u-1", {"uid": "u-1", "tags": ["a", "b"]})

        assert await doc_store.get("users", "u-1") == {"uid": "u-1", "tags": ["a", "b"]}

    @pytest.mark.asyncio
    async def test_collections_are_separate(self, doc_store):
        await doc_store.set("users", "x", {"kind": "user"})
        await doc_store.set("courses", "x", {"kind": "course"})

        assert (await doc_store.get("users", "x"))["kind"] == "user"
        assert (await doc_store.get("courses", "x"))["kind"] == "course"

    @pytest.mark.asyncio
    async def test_update_merges_top_level(self, doc_store):
        await doc_store.set("users", "u-1", {"uid": "u-1", "course_completions": {"c-1": {"completed": True}}})

        await doc_store.update("users", "u-1", {"course_completions": {"c-2": {"completed": True}}, "x": 1})

        doc = await doc_store.get("users", "u-1")
        assert doc["uid"] == "u-1"
        assert doc["x"] == 1
        assert doc["course_completions"] == {"c-2": {"completed": True}}

    @pytest.mark.asyncio
    async def test_update_missing_document(self, doc_store):
        with pytest.raises(SessionError) as exc_info:
            await doc_store.update("users", "nobody", {"x": 1})

        assert exc_info.value.kind is ErrorKind.CONFIG

    @pytest.mark.asyncio
    async def test_returned_documents_are_copies(self, doc_store):
        await doc_store.set("users", "u-1", {"nested": {"count": 1}})

        doc = await doc_store.get("users", "u-1")
        doc["nested"]["count"] = 99

        assert (await doc_store.get("users", "u-1"))["nested"]["count"] == 1


class TestVersions:
    @pytest.mark.asyncio
    async def test_every_write_bumps_version(self, doc_store):
        await doc_store.set("usage", "u_2026-03-02", {"conversation_count": 0})
        _, first = await doc_store.get_versioned("usage", "u_2026-03-02")

        await doc_store.update("usage", "u_2026-03-02", {"conversation_count": 1})
        _, second = await doc_store.get_versioned("usage", "u_2026-03-02")

        assert first == 1
        assert second == 2

    @pytest.mark.asyncio
    async def test_create_if_absent(self, doc_store):
        assert await doc_store.compare_and_set("usage", "k", {"n": 0}, expected_version=0) is True
        assert await doc_store.compare_and_set("usage", "k", {"n": 5}, expected_version=0) is False

        assert await doc_store.get("usage", "k") == {"n": 0}

    @pytest.mark.asyncio
    async def test_compare_and_set_with_current_version(self, doc_store):
        await doc_store.set("usage", "k", {"n": 0})
        _, version = await doc_store.get_versioned("usage", "k")

        assert await doc_store.compare_and_set("usage", "k", {"n": 1}, expected_version=version) is True
        assert await doc_store.get_versioned("usage", "k") == ({"n": 1}, version + 1)

    @pytest.mark.asyncio
    async def test_compare_and_set_with_stale_version(self, doc_store):
        await doc_store.set("usage", "k", {"n": 0})
        _, stale = await doc_store.get_versioned("usage", "k")
        await doc_store.update("usage", "k", {"n": 1})

        assert await doc_store.compare_and_set("usage", "k", {"n": 2}, expected_version=stale) is False
        assert await doc_store.get("usage", "k") == {"n": 1}

    @pytest.mark.asyncio
    async def test_compare_and_set_on_missing_document(self, doc_store):
        assert await doc_store.compare_and_set("usage", "k", {"n": 1}, expected_version=3) is False


class TestAsyncUrl:
    @pytest.mark.parametrize(
        "url,expected",
        [
            ("postgresql://u:p@localhost/db", "postgresql+asyncpg://u:p@localhost/db"),
            ("sqlite:///./relay.db", "sqlite+aiosqlite:///./relay.db"),
            ("sqlite+aiosqlite:///./relay.db", "sqlite+aiosqlite:///./relay.db"),
            ("postgresql+asyncpg://u@h/db", "postgresql+asyncpg://u@h/db"),
        ],
    )
    def test_conversion(self, url, expected):
        assert get_async_url(url) == expected
