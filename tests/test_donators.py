"""
Tests for the donator registry.
"""

import json

import pytest
from pydantic import ValidationError

from wikicache.github.donators import DonatorStatus, donator_title, find_donator_issue
from wikicache.services.cache import Tiers
from wikicache.services.errors import AuthenticationError

ISSUES_PATH = "/repos/acme/wiki/issues"

STATUS = {
    "isDonator": True,
    "donatedAt": "2024-01-01T00:00:00Z",
    "badge": "gold",
    "color": "#ffd700",
    "assignedBy": "admin",
    "amount": 25,
}


def donator_issue(number: int, username: str, user_id: int | None, body) -> dict:
    labels = [{"name": "donator"}]
    if user_id is not None:
        labels.append({"name": f"user-id:{user_id}"})
    return {
        "number": number,
        "title": donator_title(username),
        "labels": labels,
        "body": body if isinstance(body, str) else json.dumps(body),
    }


class TestDonatorStatusModel:
    def test_aliases(self):
        status = DonatorStatus.model_validate(STATUS)
        assert status.is_donator
        assert status.assigned_by == "admin"
        assert status.model_dump(by_alias=True, exclude_none=True)["donatedAt"] == (
            "2024-01-01T00:00:00Z"
        )

    def test_donator_requires_details(self):
        with pytest.raises(ValidationError):
            DonatorStatus.model_validate({"isDonator": True, "badge": "gold"})

    def test_bad_date(self):
        with pytest.raises(ValidationError):
            DonatorStatus.model_validate(dict(STATUS, donatedAt="yesterday"))

    def test_non_donator_needs_nothing(self):
        assert not DonatorStatus.model_validate({"isDonator": False}).is_donator

    def test_extra_fields_kept(self):
        status = DonatorStatus.model_validate(dict(STATUS, note="thanks"))
        assert status.model_dump(by_alias=True)["note"] == "thanks"


class TestFindDonatorIssue:
    def test_label_preferred_over_title(self):
        issues = [
            donator_issue(1, "alice", None, {}),
            donator_issue(2, "renamed", 7, {}),
        ]
        assert find_donator_issue(issues, "alice", 7)["number"] == 2

    def test_legacy_title_case_insensitive(self):
        issues = [donator_issue(1, "Alice", None, {})]
        assert find_donator_issue(issues, "alice", 7)["number"] == 1

    def test_none(self):
        assert find_donator_issue([], "alice", 7) is None


class TestGetDonatorStatus:
    """Lookups are cached until a write busts them."""

    async def test_found_and_cached(self, wiki, github):
        github.on("GET", ISSUES_PATH, json=[donator_issue(3, "alice", 7, STATUS)])

        status = await wiki.donators.get_donator_status("acme", "wiki", "alice", user_id=7)
        await wiki.donators.get_donator_status("acme", "wiki", "alice", user_id=7)

        assert status["badge"] == "gold"
        assert github.count("GET", ISSUES_PATH) == 1
        assert github.requests[0].url.params["labels"] == "donator"

    async def test_absent_cached(self, wiki, github):
        github.on("GET", ISSUES_PATH, json=[])

        assert await wiki.donators.get_donator_status("acme", "wiki", "alice") is None
        assert await wiki.donators.get_donator_status("acme", "wiki", "alice") is None
        assert github.count("GET", ISSUES_PATH) == 1

    @pytest.mark.parametrize("body", ["{not json", "[1, 2]", ""])
    async def test_malformed_record(self, wiki, github, body):
        github.on("GET", ISSUES_PATH, json=[donator_issue(3, "alice", 7, body)])

        assert await wiki.donators.get_donator_status("acme", "wiki", "alice", user_id=7) is None

    async def test_remote_failure_raises(self, wiki, github):
        github.on("GET", ISSUES_PATH, json={"message": "x"}, status=401)

        with pytest.raises(AuthenticationError):
            await wiki.donators.get_donator_status("acme", "wiki", "alice")

        assert len(wiki.cache.tier(Tiers.DONATOR_STATUS)) == 0


class TestSaveDonatorStatus:
    """Writes create or update the user's issue."""

    async def test_create_new_issue(self, wiki, github):
        github.on("GET", ISSUES_PATH, json=[])
        github.on("POST", ISSUES_PATH, json={"number": 11}, status=201)

        await wiki.donators.get_donator_status("acme", "wiki", "alice", user_id=7)
        record = await wiki.donators.save_donator_status("acme", "wiki", "alice", 7, STATUS)

        assert record["userId"] == 7
        assert record["username"] == "alice"
        assert record["badge"] == "gold"
        assert "lastUpdated" in record
        payload = json.loads(github.requests[-1].content)
        assert payload["title"] == "[Donator] alice"
        assert payload["labels"] == ["donator", "user-id:7"]
        assert json.loads(payload["body"])["isDonator"] is True
        assert len(wiki.cache.tier(Tiers.DONATOR_STATUS)) == 0

    async def test_update_existing_issue(self, wiki, github):
        github.on("GET", ISSUES_PATH, json=[donator_issue(3, "alice", None, STATUS)])
        github.on("PATCH", f"{ISSUES_PATH}/3", json={"number": 3})

        await wiki.donators.save_donator_status(
            "acme", "wiki", "alice", 7, dict(STATUS, badge="silver")
        )

        payload = json.loads(github.requests[-1].content)
        assert github.requests[-1].method == "PATCH"
        assert json.loads(payload["body"])["badge"] == "silver"
        assert "user-id:7" in payload["labels"]

    async def test_invalid_status_rejected_before_any_call(self, wiki, github):
        with pytest.raises(ValidationError):
            await wiki.donators.save_donator_status(
                "acme", "wiki", "alice", 7, {"isDonator": True}
            )
        assert github.requests == []

    async def test_remove(self, wiki, github):
        github.on("GET", ISSUES_PATH, json=[donator_issue(3, "alice", 7, STATUS)])
        github.on("PATCH", f"{ISSUES_PATH}/3", json={"number": 3, "state": "closed"})

        await wiki.donators.get_donator_status("acme", "wiki", "alice", user_id=7)
        assert await wiki.donators.remove_donator_status("acme", "wiki", "alice", 7)

        assert json.loads(github.requests[-1].content) == {"state": "closed"}
        assert len(wiki.cache.tier(Tiers.DONATOR_STATUS)) == 0

    async def test_remove_without_record(self, wiki, github):
        github.on("GET", ISSUES_PATH, json=[])

        assert not await wiki.donators.remove_donator_status("acme", "wiki", "alice", 7)

    async def test_invalidate_by_user_id_after_rename(self, wiki, github):
        tier = wiki.cache.tier(Tiers.DONATOR_STATUS)
        tier.set("acme/wiki/donator/oldname/id/7", {"badge": "gold"})
        tier.set("acme/wiki/donator/bob/id/8", {"badge": "gold"})
        tier.set("other/wiki/donator/oldname/id/7", {"badge": "gold"})

        removed = wiki.donators.invalidate_donator_status("acme", "wiki", "newname", 7)

        assert removed == 1
        assert sorted(tier.keys()) == [
            "acme/wiki/donator/bob/id/8",
            "other/wiki/donator/oldname/id/7",
        ]
