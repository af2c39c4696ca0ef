"""
Tests for PermissionService.
"""

import pytest

from wikicache.services.cache import Tiers
from wikicache.services.errors import ServerError

OLD_NAME_PATH = "/repos/acme/wiki/collaborators/oldname/permission"
NEW_NAME_PATH = "/repos/acme/wiki/collaborators/newname/permission"
ALICE_PATH = "/repos/acme/wiki/collaborators/alice/permission"


class TestGetUserPermission:
    """Level lookup and caching."""

    @pytest.mark.parametrize(
        "remote,expected",
        [
            ("admin", "admin"),
            ("maintain", "write"),
            ("write", "write"),
            ("triage", "read"),
            ("read", "read"),
            ("none", "none"),
        ],
    )
    async def test_levels(self, wiki, github, remote, expected):
        github.on("GET", ALICE_PATH, json={"permission": remote})

        assert await wiki.permissions.get_user_permission("acme", "wiki", "alice") == expected

    async def test_cached(self, wiki, github):
        github.on("GET", ALICE_PATH, json={"permission": "write"})

        await wiki.permissions.get_user_permission("acme", "wiki", "alice")
        await wiki.permissions.get_user_permission("Acme", "Wiki", "Alice")

        assert github.count("GET", ALICE_PATH) == 1

    async def test_not_a_collaborator(self, wiki, github):
        assert await wiki.permissions.get_user_permission("acme", "wiki", "alice") == "none"
        assert wiki.cache.tier(Tiers.PERMISSIONS).get("acme/wiki/alice") == "none"

    async def test_forbidden_falls_back_to_repository_probe(self, wiki, github):
        github.on("GET", ALICE_PATH, json={"message": "Must have push access"}, status=403)
        github.on("GET", "/repos/acme/wiki", json={"id": 1, "name": "wiki"})

        assert await wiki.permissions.get_user_permission("acme", "wiki", "alice") == "read"
        assert github.count("GET", "/repos/acme/wiki") == 1

    async def test_probe_of_hidden_repository(self, wiki, github):
        github.on("GET", ALICE_PATH, json={"message": "Must have push access"}, status=403)

        assert await wiki.permissions.get_user_permission("acme", "wiki", "alice") == "none"

    async def test_server_errors_propagate_uncached(self, wiki, github):
        github.on("GET", ALICE_PATH, json={"message": "down"}, status=500)

        with pytest.raises(ServerError):
            await wiki.permissions.get_user_permission("acme", "wiki", "alice")

        assert len(wiki.cache.tier(Tiers.PERMISSIONS)) == 0

    async def test_expires_after_ten_minutes(self, wiki, github, clock):
        github.on("GET", ALICE_PATH, json={"permission": "write"})

        await wiki.permissions.get_user_permission("acme", "wiki", "alice")
        clock.advance(minutes=9, seconds=59)
        await wiki.permissions.get_user_permission("acme", "wiki", "alice")
        clock.advance(seconds=1)
        await wiki.permissions.get_user_permission("acme", "wiki", "alice")

        assert github.count("GET", ALICE_PATH) == 2

    async def test_access_helpers(self, wiki, github):
        github.on("GET", ALICE_PATH, json={"permission": "maintain"})

        assert await wiki.permissions.has_write_access("acme", "wiki", "alice")
        assert not await wiki.permissions.has_admin_access("acme", "wiki", "alice")

    async def test_invalidate(self, wiki, github):
        github.on("GET", ALICE_PATH, json={"permission": "read"})
        github.on("GET", ALICE_PATH, json={"permission": "write"})

        await wiki.permissions.get_user_permission("acme", "wiki", "alice")
        assert wiki.permissions.invalidate_permission("acme", "wiki", "alice")

        assert await wiki.permissions.get_user_permission("acme", "wiki", "alice") == "write"


class TestUsernameChange:
    """Entries under a user's previous name are never served after a rename."""

    async def test_rename_supersedes_old_entry(self, wiki, github):
        github.on("GET", OLD_NAME_PATH, json={"permission": "write"})
        github.on("GET", OLD_NAME_PATH, json={"permission": "none"})
        github.on("GET", NEW_NAME_PATH, json={"permission": "write"})

        assert (
            await wiki.permissions.get_user_permission("acme", "wiki", "oldname", user_id=7)
            == "write"
        )
        assert (
            await wiki.permissions.get_user_permission("acme", "wiki", "newname", user_id=7)
            == "write"
        )

        tier = wiki.cache.tier(Tiers.PERMISSIONS)
        assert "acme/wiki/oldname" not in tier
        assert "acme/wiki/newname" in tier

        # the old name now belongs to nobody we know; it must be asked again
        assert await wiki.permissions.get_user_permission("acme", "wiki", "oldname") == "none"
        assert github.count("GET", OLD_NAME_PATH) == 2
        assert github.count("GET", NEW_NAME_PATH) == 1
        # not cached under the superseded name either
        assert "acme/wiki/oldname" not in tier

    async def test_reused_name_cached_once_owner_known(self, wiki, github):
        github.on("GET", "/users/oldname", json={"id": 99, "login": "oldname"})
        wiki.cache.update_user_mapping(7, "oldname")
        wiki.cache.update_user_mapping(7, "newname")

        for _ in range(3):
            profile = await wiki.users.get_user_profile("oldname")

        assert profile["id"] == 99
        assert github.count("GET", "/users/oldname") == 2

    async def test_profile_fetch_detects_rename(self, wiki, github):
        github.on("GET", OLD_NAME_PATH, json={"permission": "admin"})
        github.on("GET", "/users/newname", json={"id": 7, "login": "NewName"})

        await wiki.permissions.get_user_permission("acme", "wiki", "oldname", user_id=7)
        await wiki.users.get_user_profile("newname")

        assert len(wiki.cache.tier(Tiers.PERMISSIONS)) == 0
