"""
Tests for ContentService: read-through caching, invalidation and edits.
"""

import asyncio
import base64
import dataclasses
import json
from datetime import timedelta

import httpx
import pytest

from wikicache.services.cache import DEFAULT_TIERS, Tiers
from wikicache.services.errors import ConflictError, ServerError, ServiceError
from wikicache.wiki import WikiCache

FILE_PATH = "/repos/acme/wiki/contents/docs/intro.md"
COMMITS_PATH = "/repos/acme/wiki/commits"


def file_reply(text: str, sha: str = "abc123", path: str = "docs/intro.md") -> dict:
    encoded = base64.b64encode(text.encode("utf-8")).decode("ascii")
    return {
        "type": "file",
        "path": path,
        "sha": sha,
        "size": len(text),
        "encoding": "base64",
        "content": encoded,
    }


def commit_reply(sha: str, message: str) -> dict:
    return {
        "sha": sha,
        "html_url": f"https://github.com/acme/wiki/commit/{sha}",
        "commit": {
            "message": message,
            "author": {"name": "Alice", "date": "2024-01-01T10:00:00Z"},
        },
        "author": {"login": "alice", "avatar_url": "https://avatars/alice"},
    }


def day_long_tiers():
    return tuple(
        dataclasses.replace(config, ttl=timedelta(hours=24))
        if config.name == Tiers.FILE_CONTENT
        else config
        for config in DEFAULT_TIERS
    )


class TestGetFileContent:
    """Read-through caching of file content."""

    async def test_second_call_served_from_cache(self, wiki, github):
        github.on("GET", FILE_PATH, json=file_reply("# Intro"))

        first = await wiki.content.get_file_content("acme", "wiki", "docs/intro.md", "main")
        second = await wiki.content.get_file_content("acme", "wiki", "docs/intro.md", "main")

        assert first == second
        assert first["content"] == "# Intro"
        assert first["sha"] == "abc123"
        assert github.count("GET", FILE_PATH) == 1

    async def test_ref_is_sent_and_part_of_key(self, wiki, github):
        github.on("GET", FILE_PATH, json=file_reply("main text"))

        await wiki.content.get_file_content("acme", "wiki", "docs/intro.md", "main")
        await wiki.content.get_file_content("acme", "wiki", "docs/intro.md", "draft")

        assert [r.url.params["ref"] for r in github.requests] == ["main", "draft"]

    async def test_invalidate_then_refetch_once(self, wiki, github):
        github.on("GET", FILE_PATH, json=file_reply("v1", sha="s1"))
        github.on("GET", FILE_PATH, json=file_reply("v2", sha="s2"))

        await wiki.content.get_file_content("acme", "wiki", "docs/intro.md", "main")
        assert wiki.content.invalidate_file("acme", "wiki", "docs/intro.md") == 1

        again = await wiki.content.get_file_content("acme", "wiki", "docs/intro.md", "main")
        await wiki.content.get_file_content("acme", "wiki", "docs/intro.md", "main")

        assert again["content"] == "v2"
        assert github.count("GET", FILE_PATH) == 2

    async def test_cached_value_survives_remote_outage(self, wiki, github):
        github.on("GET", FILE_PATH, json=file_reply("cached"))
        github.on("GET", FILE_PATH, json={"message": "down"}, status=500)

        await wiki.content.get_file_content("acme", "wiki", "docs/intro.md")
        page = await wiki.content.get_file_content("acme", "wiki", "docs/intro.md")

        assert page["content"] == "cached"

    async def test_expired_entry_refetched(self, wiki, github, clock):
        github.on("GET", FILE_PATH, json=file_reply("x"))

        await wiki.content.get_file_content("acme", "wiki", "docs/intro.md")
        clock.advance(minutes=10)
        await wiki.content.get_file_content("acme", "wiki", "docs/intro.md")

        assert github.count("GET", FILE_PATH) == 2

    async def test_ttl_boundary_with_day_long_tier(self, settings, github, clock, sleeps, durable):
        github.on("GET", FILE_PATH, json=file_reply("x"))
        async with WikiCache(
            settings,
            store=durable,
            transport=github.transport,
            clock=clock,
            sleep=sleeps,
            tiers=day_long_tiers(),
        ) as wiki:
            await wiki.content.get_file_content("acme", "wiki", "docs/intro.md")

            clock.advance(hours=24, microseconds=-1)
            await wiki.content.get_file_content("acme", "wiki", "docs/intro.md")
            assert github.count("GET", FILE_PATH) == 1

            clock.advance(microseconds=2)
            await wiki.content.get_file_content("acme", "wiki", "docs/intro.md")
            assert github.count("GET", FILE_PATH) == 2

    async def test_missing_file_is_not_cached(self, wiki, github):
        assert await wiki.content.get_file_content("acme", "wiki", "docs/intro.md") is None
        assert await wiki.content.get_file_content("acme", "wiki", "docs/intro.md") is None
        assert github.count("GET", FILE_PATH) == 2

    async def test_directory_rejected(self, wiki, github):
        github.on("GET", "/repos/acme/wiki/contents/docs", json=[{"name": "intro.md"}])

        with pytest.raises(ServiceError):
            await wiki.content.get_file_content("acme", "wiki", "docs")

    async def test_non_utf8_bytes_replaced(self, wiki, github):
        reply = file_reply("")
        reply["content"] = base64.b64encode(b"caf\xe9 latin-1 page").decode("ascii")
        github.on("GET", FILE_PATH, json=reply)

        page = await wiki.content.get_file_content("acme", "wiki", "docs/intro.md")

        assert page["content"] == "caf\ufffd latin-1 page"

    async def test_oversized_file_is_an_error_not_empty(self, wiki, github):
        reply = dict(file_reply(""), encoding="none", content="", size=5_000_000)
        github.on("GET", FILE_PATH, json=reply)

        with pytest.raises(ServiceError, match="too large"):
            await wiki.content.get_file_content("acme", "wiki", "docs/intro.md")
        assert len(wiki.cache.tier(Tiers.FILE_CONTENT)) == 0

    async def test_concurrent_readers_share_one_fetch(self, wiki, github):
        github.on("GET", FILE_PATH, json=file_reply("shared"))

        pages = await asyncio.gather(
            *(wiki.content.get_file_content("acme", "wiki", "docs/intro.md") for _ in range(10))
        )

        assert all(page["content"] == "shared" for page in pages)
        assert github.count("GET", FILE_PATH) == 1

    async def test_failed_fetch_is_not_cached(self, wiki, github):
        github.on("GET", FILE_PATH, json={"message": "down"}, status=500)
        github.on("GET", FILE_PATH, json=file_reply("back"))

        page = await wiki.content.get_file_content("acme", "wiki", "docs/intro.md")

        # retried past the 500, then cached
        assert page["content"] == "back"
        assert wiki.cache.tier(Tiers.FILE_CONTENT).peek("acme/wiki/docs/intro.md:main")

    async def test_exhausted_retries_leave_cache_empty(self, wiki, github):
        github.on("GET", FILE_PATH, json={"message": "down"}, status=502)

        with pytest.raises(ServerError):
            await wiki.content.get_file_content("acme", "wiki", "docs/intro.md")

        assert len(wiki.cache.tier(Tiers.FILE_CONTENT)) == 0
        assert wiki.deduplicator.get_in_flight_count() == 0

    async def test_invalidation_during_fetch_is_not_overwritten(self, wiki, github):
        gate = asyncio.Event()

        async def slow(request):
            await gate.wait()
            return httpx.Response(200, json=file_reply("stale"))

        github.on_request("GET", FILE_PATH, slow)
        github.on("GET", FILE_PATH, json=file_reply("fresh"))

        pending = asyncio.ensure_future(
            wiki.content.get_file_content("acme", "wiki", "docs/intro.md")
        )
        while not github.requests:
            await asyncio.sleep(0)

        wiki.content.invalidate_file("acme", "wiki", "docs/intro.md")
        gate.set()

        assert (await pending)["content"] == "stale"
        fresh = await wiki.content.get_file_content("acme", "wiki", "docs/intro.md")
        assert fresh["content"] == "fresh"


class TestGetFileCommits:
    """File history pages."""

    async def test_page_with_more(self, wiki, github):
        github.on(
            "GET",
            COMMITS_PATH,
            json=[commit_reply("c2", "Update intro"), commit_reply("c1", "Create intro")],
            headers={"Link": '<https://api.github.com/x?page=2>; rel="next"'},
        )

        history = await wiki.content.get_file_commits("acme", "wiki", "docs/intro.md", per_page=2)
        await wiki.content.get_file_commits("acme", "wiki", "docs/intro.md", per_page=2)

        assert history["has_more"] is True
        assert [c["sha"] for c in history["commits"]] == ["c2", "c1"]
        assert history["commits"][0]["author_login"] == "alice"
        assert github.requests[0].url.params["path"] == "docs/intro.md"
        assert github.count("GET", COMMITS_PATH) == 1

    async def test_pages_cached_separately(self, wiki, github):
        github.on("GET", COMMITS_PATH, json=[commit_reply("c1", "Create intro")])

        await wiki.content.get_file_commits("acme", "wiki", "docs/intro.md", page=1)
        last = await wiki.content.get_file_commits("acme", "wiki", "docs/intro.md", page=2)

        assert last["has_more"] is False
        assert github.count("GET", COMMITS_PATH) == 2

    async def test_missing_repository_has_empty_history(self, wiki, github):
        history = await wiki.content.get_file_commits("acme", "wiki", "docs/intro.md")
        assert history == {"commits": [], "page": 1, "per_page": 10, "has_more": False}


class TestUpdateFile:
    """Edits go to the remote and invalidate every cached revision."""

    async def test_update_invalidates_content_and_history(self, wiki, github):
        github.on("GET", FILE_PATH, json=file_reply("old", sha="s1"))
        github.on("GET", FILE_PATH, json=file_reply("new", sha="s2"))
        github.on("GET", COMMITS_PATH, json=[commit_reply("c1", "Create intro")])
        github.on(
            "PUT",
            FILE_PATH,
            json={"content": {"path": "docs/intro.md", "sha": "s2"}, "commit": {"sha": "c2"}},
        )

        await wiki.content.get_file_content("acme", "wiki", "docs/intro.md")
        await wiki.content.get_file_content("acme", "wiki", "docs/intro.md", "draft")
        await wiki.content.get_file_commits("acme", "wiki", "docs/intro.md")

        result = await wiki.content.update_file(
            "acme", "wiki", "docs/intro.md", "new", "Update intro", sha="s1"
        )

        assert result == {"path": "docs/intro.md", "sha": "s2", "commit_sha": "c2"}
        assert len(wiki.cache.tier(Tiers.FILE_CONTENT)) == 0
        assert len(wiki.cache.tier(Tiers.COMMIT_LIST)) == 0
        page = await wiki.content.get_file_content("acme", "wiki", "docs/intro.md")
        assert page["content"] == "new"

    async def test_request_body(self, wiki, github):
        github.on("PUT", FILE_PATH, json={"content": {"sha": "s2"}, "commit": {"sha": "c2"}})

        await wiki.content.update_file(
            "acme", "wiki", "docs/intro.md", "héllo", "Edit", sha="s1", branch="draft"
        )

        body = json.loads(github.requests[0].content)
        assert base64.b64decode(body["content"]).decode("utf-8") == "héllo"
        assert body["sha"] == "s1"
        assert body["branch"] == "draft"
        assert body["message"] == "Edit"

    async def test_conflict_raises_and_still_invalidates(self, wiki, github):
        github.on("GET", FILE_PATH, json=file_reply("old", sha="s1"))
        github.on(
            "PUT", FILE_PATH, json={"message": "docs/intro.md does not match s1"}, status=409
        )

        await wiki.content.get_file_content("acme", "wiki", "docs/intro.md")

        with pytest.raises(ConflictError) as exc_info:
            await wiki.content.update_file(
                "acme", "wiki", "docs/intro.md", "mine", "Edit", sha="s1"
            )

        assert "modified by someone else" in exc_info.value.user_message
        assert github.count("PUT", FILE_PATH) == 1
        assert len(wiki.cache.tier(Tiers.FILE_CONTENT)) == 0

    async def test_invalidate_repository_files(self, wiki, github):
        github.on("GET", FILE_PATH, json=file_reply("a"))
        github.on("GET", "/repos/acme/wiki/contents/docs/other.md", json=file_reply("b"))

        await wiki.content.get_file_content("acme", "wiki", "docs/intro.md")
        await wiki.content.get_file_content("acme", "wiki", "docs/other.md")

        assert wiki.content.invalidate_repository_files("acme", "wiki") == 2
