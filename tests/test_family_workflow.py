"""
Tests for the family membership workflow.

Covers creation, joining by alias, capacity, leaving with head reassignment, invitations,
join requests with their attempt throttle, member removal and renaming.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from expense_tracker.config import settings
from expense_tracker.managers.family_manager import (
    AlreadyInFamily,
    FamilyConflict,
    FamilyFull,
    FamilyManager,
    FamilyNotFound,
    FamilyValidationError,
    JoinRequestThrottled,
    NoPendingInvitation,
    NotFamilyHead,
    NotInFamily,
    validate_alias_name,
    validate_family_name,
)
from expense_tracker.models import JoinRequestStatus, NotificationType
from expense_tracker.utils.alias import ALIAS_ALPHABET, AliasGenerationExhausted, generate_alias, generate_unique_alias


@pytest.fixture
def manager(fake_db, mock_notifications):
    return FamilyManager(db_manager=fake_db, notifications=mock_notifications)


@pytest_asyncio.fixture
async def family(manager, user_factory):
    """A family 'Smiths' headed by alice, with dave and erin registered but unattached."""
    alice = await user_factory("alice")
    await user_factory("dave")
    await user_factory("erin")
    response = await manager.create_family(alice, "Smiths")
    return response["data"]["family"]


class TestValidation:
    @pytest.mark.parametrize(
        "name,message",
        [
            ("", "Family name cannot be blank"),
            ("A", "Family name must be at least 2 characters"),
            ("x" * 101, "Family name cannot exceed 100 characters"),
            (" Smiths", "Family name cannot have leading or trailing spaces"),
            ("Smiths!", "Family name contains invalid characters"),
        ],
    )
    def test_family_name(self, name, message):
        assert validate_family_name(name) == message

    def test_valid_family_name(self):
        assert validate_family_name("The Smith-Jones_2") is None

    @pytest.mark.parametrize(
        "alias,message",
        [
            ("", "Alias name cannot be blank"),
            ("ABC", "Alias name must be exactly 6 characters"),
            ("abc123", "Alias name must contain only uppercase letters and numbers"),
        ],
    )
    def test_alias(self, alias, message):
        assert validate_alias_name(alias) == message


class TestAliasGeneration:
    def test_alias_shape(self):
        alias = generate_alias()
        assert len(alias) == settings.ALIAS_LENGTH
        assert set(alias) <= set(ALIAS_ALPHABET)

    @pytest.mark.asyncio
    async def test_exhaustion_is_retryable(self):
        collection = MagicMock()
        collection.name = "families"
        collection.find_one = AsyncMock(return_value={"_id": "taken"})

        with pytest.raises(AliasGenerationExhausted) as exc_info:
            await generate_unique_alias(collection, max_attempts=5)

        assert collection.find_one.await_count == 5
        assert exc_info.value.status_code == 503
        assert exc_info.value.to_detail()["retryable"] is True


class TestCreateAndJoin:
    @pytest.mark.asyncio
    async def test_create_family(self, manager, family, reload_user):
        assert family["headId"] == "alice"
        assert family["membersIds"] == ["alice"]
        assert family["maxSize"] == settings.FAMILY_MAX_SIZE
        assert validate_alias_name(family["aliasName"]) is None
        assert (await reload_user("alice"))["familyId"] == family["familyId"]

    @pytest.mark.asyncio
    async def test_cannot_create_twice(self, manager, family, reload_user):
        with pytest.raises(AlreadyInFamily):
            await manager.create_family(await reload_user("alice"), "Other")

    @pytest.mark.asyncio
    async def test_member_of_another_family_cannot_join(self, manager, fake_db, family, user_factory, reload_user):
        bob = await user_factory("bob")
        browns = (await manager.create_family(bob, "Browns"))["data"]["family"]
        families = fake_db.get_collection("families")
        await families.update_one(
            {"familyId": family["familyId"]}, {"$push": {"pendingMemberEmails": "bob@example.com"}}
        )

        attempts = [
            manager.join_family(await reload_user("bob"), family["aliasName"]),
            manager.accept_invitation(await reload_user("bob"), family["aliasName"]),
            manager.request_to_join(await reload_user("bob"), alias_name=family["aliasName"]),
            manager.request_to_join(await reload_user("bob"), family_id=family["familyId"]),
        ]
        for attempt in attempts:
            with pytest.raises(AlreadyInFamily) as exc_info:
                await attempt
            assert exc_info.value.status_code == 409

        assert (await reload_user("bob"))["familyId"] == browns["familyId"]
        smiths = await families.find_one({"familyId": family["familyId"]})
        assert smiths["membersIds"] == ["alice"]
        assert smiths["pendingJoinRequests"] == []
        assert await fake_db.get_collection("join_requests").count_documents({"requesterId": "bob"}) == 0

    @pytest.mark.asyncio
    async def test_invalid_name(self, manager, user_factory):
        user = await user_factory("zoe")
        with pytest.raises(FamilyValidationError) as exc_info:
            await manager.create_family(user, "!")
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_join_by_alias(self, manager, family, reload_user, mock_notifications):
        response = await manager.join_family(await reload_user("dave"), family["aliasName"])

        assert response["message"] == "Joined family successfully"
        assert response["data"]["family"]["membersIds"] == ["alice", "dave"]
        assert [m["id"] for m in response["data"]["members"]] == ["alice", "dave"]
        assert (await reload_user("dave"))["familyId"] == family["familyId"]

        receiver, sender, notification_type = mock_notifications.notify_user.await_args.args[:3]
        assert (receiver["id"], sender["id"]) == ("alice", "dave")
        assert notification_type == NotificationType.FAMILY_MEMBER_JOINED

    @pytest.mark.asyncio
    async def test_join_unknown_alias(self, manager, family, reload_user):
        with pytest.raises(FamilyNotFound):
            await manager.join_family(await reload_user("dave"), "ZZZZZZ")

    @pytest.mark.asyncio
    async def test_join_full_family(self, manager, fake_db, family, reload_user):
        await fake_db.get_collection("families").update_one({"familyId": family["familyId"]}, {"$set": {"maxSize": 1}})
        with pytest.raises(FamilyFull) as exc_info:
            await manager.join_family(await reload_user("dave"), family["aliasName"])
        assert exc_info.value.status_code == 409
        assert (await reload_user("dave"))["familyId"] is None

    @pytest.mark.asyncio
    async def test_last_slot_race_rolls_back_claim(self, manager, fake_db, family, reload_user):
        """A stale view of the family passes the pre-check; the conditional push still refuses."""
        families = fake_db.get_collection("families")
        await families.update_one(
            {"familyId": family["familyId"]}, {"$set": {"maxSize": 2}, "$push": {"membersIds": "erin"}}
        )
        await fake_db.get_collection("users").update_one({"id": "erin"}, {"$set": {"familyId": family["familyId"]}})
        stale = dict(family, maxSize=2)

        with pytest.raises(FamilyFull):
            await manager._add_member(stale, "dave")

        assert (await reload_user("dave"))["familyId"] is None
        stored = await families.find_one({"familyId": family["familyId"]})
        assert stored["membersIds"] == ["alice", "erin"]


class TestLeave:
    @pytest.mark.asyncio
    async def test_head_leaving_hands_over(self, manager, family, reload_user, mock_notifications):
        await manager.join_family(await reload_user("dave"), family["aliasName"])
        await manager.join_family(await reload_user("erin"), family["aliasName"])

        result = await manager.leave_family(await reload_user("alice"))

        assert result == {"message": "Left family successfully"}
        details = await manager.get_family_details(await reload_user("dave"))
        assert details["family"]["headId"] == "dave"
        assert details["family"]["membersIds"] == ["dave", "erin"]
        assert (await reload_user("alice"))["familyId"] is None

        receiver, _, notification_type, title = mock_notifications.notify_user.await_args.args[:4]
        assert receiver["id"] == "dave"
        assert notification_type == NotificationType.FAMILY_MEMBER_LEFT
        assert title == "You are now the family head"

    @pytest.mark.asyncio
    async def test_last_member_deletes_family(self, manager, fake_db, family, reload_user):
        result = await manager.leave_family(await reload_user("alice"))

        assert result == {"message": "Family deleted"}
        assert await fake_db.get_collection("families").count_documents({}) == 0
        assert (await reload_user("alice"))["familyId"] is None

    @pytest.mark.asyncio
    async def test_not_in_family(self, manager, family, reload_user):
        with pytest.raises(NotInFamily):
            await manager.leave_family(await reload_user("dave"))


class TestInvitations:
    @pytest.mark.asyncio
    async def test_invite_and_accept(self, manager, family, reload_user, mock_notifications):
        response = await manager.invite_member(await reload_user("alice"), "Dave@Example.com")
        assert response["data"]["family"]["pendingMemberEmails"] == ["dave@example.com"]
        assert mock_notifications.notify_user.await_args.args[2] == NotificationType.JOIN_FAMILY_INVITATION
        assert mock_notifications.notify_user.await_args.kwargs["actionable"] is True

        response = await manager.accept_invitation(await reload_user("dave"), family["aliasName"])
        assert response["data"]["family"]["membersIds"] == ["alice", "dave"]
        assert response["data"]["family"]["pendingMemberEmails"] == []
        assert mock_notifications.notify_user.await_args.args[2] == NotificationType.JOIN_FAMILY_INVITATION_ACCEPTED

    @pytest.mark.asyncio
    async def test_invite_twice(self, manager, family, reload_user):
        alice = await reload_user("alice")
        await manager.invite_member(alice, "dave@example.com")
        with pytest.raises(FamilyConflict) as exc_info:
            await manager.invite_member(alice, "dave@example.com")
        assert exc_info.value.error_code == "ALREADY_INVITED"

    @pytest.mark.asyncio
    async def test_only_head_invites(self, manager, family, reload_user):
        await manager.join_family(await reload_user("dave"), family["aliasName"])
        with pytest.raises(NotFamilyHead) as exc_info:
            await manager.invite_member(await reload_user("dave"), "erin@example.com")
        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_invitee_with_pending_request(self, manager, family, reload_user):
        await manager.request_to_join(await reload_user("dave"), alias_name=family["aliasName"])
        with pytest.raises(FamilyConflict) as exc_info:
            await manager.invite_member(await reload_user("alice"), "dave@example.com")
        assert exc_info.value.error_code == "JOIN_REQUEST_PENDING"

    @pytest.mark.asyncio
    async def test_reject_invitation(self, manager, family, reload_user, mock_notifications):
        await manager.invite_member(await reload_user("alice"), "dave@example.com")
        response = await manager.reject_invitation(await reload_user("dave"), family["aliasName"])

        assert response["data"]["family"]["pendingMemberEmails"] == []
        assert (await reload_user("dave"))["familyId"] is None
        assert mock_notifications.notify_user.await_args.args[0]["id"] == "alice"

        with pytest.raises(NoPendingInvitation):
            await manager.accept_invitation(await reload_user("dave"), family["aliasName"])

    @pytest.mark.asyncio
    async def test_cancel_invitation(self, manager, family, reload_user, mock_notifications):
        alice = await reload_user("alice")
        await manager.invite_member(alice, "dave@example.com")
        response = await manager.cancel_invitation(alice, "dave@example.com")

        assert response["message"] == "Invitation cancelled successfully"
        assert mock_notifications.notify_user.await_args.args[2] == NotificationType.JOIN_FAMILY_INVITATION_CANCELLED


class TestJoinRequests:
    @pytest.mark.asyncio
    async def test_request_and_accept(self, manager, fake_db, family, reload_user, mock_notifications):
        sent = await manager.request_to_join(await reload_user("dave"), alias_name=family["aliasName"], message="hi")
        assert sent["status"] == "pending"
        assert mock_notifications.notify_user.await_args.args[2] == NotificationType.JOIN_FAMILY_REQUEST

        received = await manager.list_received_join_requests(await reload_user("alice"))
        assert [r["id"] for r in received] == [sent["requestId"]]
        assert received[0]["requester"]["email"] == "dave@example.com"

        response = await manager.accept_join_request(await reload_user("alice"), request_id=sent["requestId"])
        assert response["data"]["family"]["membersIds"] == ["alice", "dave"]
        assert response["data"]["family"]["pendingJoinRequests"] == []

        stored = await fake_db.get_collection("join_requests").find_one({"id": sent["requestId"]})
        assert stored["status"] == JoinRequestStatus.ACCEPTED.value
        assert stored["processedBy"] == "alice"

    @pytest.mark.asyncio
    async def test_accept_cancels_requests_elsewhere(self, manager, fake_db, family, user_factory, reload_user):
        bob = await user_factory("bob")
        other = (await manager.create_family(bob, "Browns"))["data"]["family"]
        dave = await reload_user("dave")
        first = await manager.request_to_join(dave, alias_name=family["aliasName"])
        second = await manager.request_to_join(dave, family_id=other["familyId"])

        await manager.accept_join_request(await reload_user("alice"), request_id=first["requestId"])

        stored = await fake_db.get_collection("join_requests").find_one({"id": second["requestId"]})
        assert stored["status"] == JoinRequestStatus.CANCELLED.value
        browns = await fake_db.get_collection("families").find_one({"familyId": other["familyId"]})
        assert browns["pendingJoinRequests"] == []

    @pytest.mark.asyncio
    async def test_reject(self, manager, fake_db, family, reload_user, mock_notifications):
        sent = await manager.request_to_join(await reload_user("dave"), alias_name=family["aliasName"])
        response = await manager.reject_join_request(await reload_user("alice"), requester_id="dave")

        assert response["data"]["family"]["pendingJoinRequests"] == []
        stored = await fake_db.get_collection("join_requests").find_one({"id": sent["requestId"]})
        assert stored["status"] == JoinRequestStatus.REJECTED.value
        assert mock_notifications.notify_user.await_args.args[2] == NotificationType.JOIN_FAMILY_REQUEST_REJECTED

    @pytest.mark.asyncio
    async def test_duplicate_pending_request(self, manager, family, reload_user):
        dave = await reload_user("dave")
        await manager.request_to_join(dave, alias_name=family["aliasName"])
        with pytest.raises(FamilyConflict) as exc_info:
            await manager.request_to_join(dave, alias_name=family["aliasName"])
        assert exc_info.value.error_code == "JOIN_REQUEST_PENDING"

    @pytest.mark.asyncio
    async def test_invited_user_cannot_request(self, manager, family, reload_user):
        await manager.invite_member(await reload_user("alice"), "dave@example.com")
        with pytest.raises(FamilyConflict) as exc_info:
            await manager.request_to_join(await reload_user("dave"), alias_name=family["aliasName"])
        assert exc_info.value.error_code == "ALREADY_INVITED"

    @pytest.mark.asyncio
    async def test_cancelled_requests_do_not_count(self, manager, family, reload_user):
        dave = await reload_user("dave")
        for _ in range(settings.JOIN_REQUEST_MAX_ATTEMPTS + 1):
            await manager.request_to_join(dave, alias_name=family["aliasName"])
            await manager.cancel_own_join_request(dave, alias_name=family["aliasName"])

    @pytest.mark.asyncio
    async def test_resends_are_throttled(self, manager, family, reload_user):
        dave = await reload_user("dave")
        await manager.request_to_join(dave, alias_name=family["aliasName"])
        for _ in range(settings.JOIN_REQUEST_MAX_ATTEMPTS - 1):
            await manager.resend_own_join_request(dave, alias_name=family["aliasName"])

        with pytest.raises(JoinRequestThrottled) as exc_info:
            await manager.resend_own_join_request(dave, alias_name=family["aliasName"])

        detail = exc_info.value.to_detail()
        assert exc_info.value.status_code == 409
        assert detail["reason"] == "MAX_RETRIES"
        assert detail["attemptsInWindow"] == settings.JOIN_REQUEST_MAX_ATTEMPTS
        assert detail["maxAttemptsPerWindow"] == settings.JOIN_REQUEST_MAX_ATTEMPTS

    @pytest.mark.asyncio
    async def test_resend_supersedes_pending(self, manager, fake_db, family, reload_user):
        dave = await reload_user("dave")
        first = await manager.request_to_join(dave, alias_name=family["aliasName"])
        second = await manager.resend_own_join_request(dave, request_id=first["requestId"])

        old = await fake_db.get_collection("join_requests").find_one({"id": first["requestId"]})
        assert old["status"] == JoinRequestStatus.CANCELLED.value
        assert old["supersededBy"] == second["requestId"]
        pending = await manager.get_own_pending_join_requests(dave)
        assert [p["request"]["id"] for p in pending["pendingJoinRequests"]] == [second["requestId"]]

    @pytest.mark.asyncio
    async def test_creating_a_family_cancels_own_requests(self, manager, fake_db, family, reload_user):
        dave = await reload_user("dave")
        sent = await manager.request_to_join(dave, alias_name=family["aliasName"])
        await manager.create_family(dave, "Daves")

        stored = await fake_db.get_collection("join_requests").find_one({"id": sent["requestId"]})
        assert stored["status"] == JoinRequestStatus.CANCELLED.value


class TestHeadOperations:
    @pytest.mark.asyncio
    async def test_remove_member(self, manager, family, reload_user, mock_notifications):
        await manager.join_family(await reload_user("dave"), family["aliasName"])
        response = await manager.remove_member(await reload_user("alice"), "dave@example.com")

        assert response["data"]["family"]["membersIds"] == ["alice"]
        assert (await reload_user("dave"))["familyId"] is None
        assert mock_notifications.notify_user.await_args.args[2] == NotificationType.FAMILY_MEMBER_REMOVED

    @pytest.mark.asyncio
    async def test_head_cannot_remove_self(self, manager, family, reload_user):
        with pytest.raises(FamilyValidationError) as exc_info:
            await manager.remove_member(await reload_user("alice"), "alice@example.com")
        assert exc_info.value.message == "Head cannot remove self"

    @pytest.mark.asyncio
    async def test_rename_rejects_name_in_use(self, manager, family, user_factory, reload_user):
        bob = await user_factory("bob")
        await manager.create_family(bob, "Browns")

        with pytest.raises(FamilyConflict) as exc_info:
            await manager.update_family_name(await reload_user("alice"), "browns")
        assert exc_info.value.error_code == "FAMILY_NAME_IN_USE"

        response = await manager.update_family_name(await reload_user("alice"), "Smith Family")
        assert response["data"]["family"]["name"] == "Smith Family"
