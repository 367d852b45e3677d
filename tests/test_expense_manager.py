"""
Tests for expense CRUD, authorization, pagination and monthly sums.
"""

from datetime import date
from unittest.mock import AsyncMock

from pymongo.errors import PyMongoError
import pytest
import pytest_asyncio

from expense_tracker.managers.expense_manager import (
    ExpenseAccessDenied,
    ExpenseManager,
    ExpenseNotFound,
    ExpenseValidationError,
    FamilyPreconditionFailed,
    day_start_millis,
    normalize_page_request,
)
from expense_tracker.managers.push_manager import PushResult
from expense_tracker.models import FamilyScope, NotificationType, PersonalScope, now_millis
from expense_tracker.utils.error_handling import CreationError, ValidationError, to_http_exception

MARCH_10 = day_start_millis(date(2024, 3, 10))
APRIL_2 = day_start_millis(date(2024, 4, 2))


@pytest.fixture
def manager(fake_db, mock_notifications):
    return ExpenseManager(db_manager=fake_db, notifications=mock_notifications)


@pytest.fixture
def insert_expense(fake_db):
    """Store an expense document directly, bypassing validation."""

    async def insert(expense_id, user_id, family_id=None, amount=10.0, day=MARCH_10, **extra):
        expense = {
            "expenseId": expense_id,
            "userId": user_id,
            "familyId": family_id,
            "amount": amount,
            "category": "FOOD",
            "description": f"expense {expense_id}",
            "date": day,
            "expenseCreatedOn": day,
            "lastModifiedOn": day,
            "currencyPrefix": "₹",
            "deleted": False,
            "deletedOn": None,
        }
        expense.update(extra)
        await fake_db.get_collection("expenses").insert_one(expense)
        return expense

    return insert


@pytest_asyncio.fixture
async def family_setup(fake_db, user_factory):
    """alice heads family fam-1 with bob; carol has no family."""
    alice = await user_factory("alice", familyId="fam-1")
    bob = await user_factory("bob", familyId="fam-1")
    carol = await user_factory("carol")
    await fake_db.get_collection("families").insert_one(
        {
            "familyId": "fam-1",
            "headId": "alice",
            "name": "Smiths",
            "aliasName": "ABC123",
            "maxSize": 10,
            "membersIds": ["alice", "bob"],
            "pendingMemberEmails": [],
            "pendingJoinRequests": [],
        }
    )
    return alice, bob, carol


def valid_payload(**overrides):
    payload = {"amount": 120.0, "category": "food", "description": "Lunch", "date": now_millis() - 1000}
    payload.update(overrides)
    return payload


class TestCreateExpense:
    @pytest.mark.asyncio
    async def test_personal_expense_is_stored_and_announced(self, manager, fake_db, mock_notifications, family_setup):
        _, _, carol = family_setup
        expense = await manager.create_expense(carol, valid_payload())

        assert expense["userId"] == "carol"
        assert expense["familyId"] is None
        assert expense["category"] == "FOOD"
        assert expense["currencyPrefix"] == "₹"
        assert expense["deleted"] is False
        assert "_id" not in expense
        assert await fake_db.get_collection("expenses").count_documents({"expenseId": expense["expenseId"]}) == 1

        mock_notifications.notify_expense_event.assert_awaited_once()
        assert mock_notifications.notify_expense_event.await_args.args[0] == NotificationType.EXPENSE_ADDED

    @pytest.mark.asyncio
    async def test_family_expense_uses_family_event(self, manager, mock_notifications, family_setup):
        _, bob, _ = family_setup
        expense = await manager.create_expense(bob, valid_payload(familyId="fam-1"))

        assert expense["familyId"] == "fam-1"
        assert mock_notifications.notify_expense_event.await_args.args[0] == NotificationType.FAMILY_EXPENSE_ADDED

    @pytest.mark.asyncio
    async def test_family_target_requires_membership(self, manager, family_setup):
        _, _, carol = family_setup
        with pytest.raises(FamilyPreconditionFailed) as exc_info:
            await manager.create_expense(carol, valid_payload(familyId="fam-1"))
        assert exc_info.value.status_code == 412
        assert exc_info.value.message == "You are not part of this family"

    @pytest.mark.asyncio
    async def test_unknown_family_target(self, manager, family_setup):
        alice, _, _ = family_setup
        with pytest.raises(FamilyPreconditionFailed) as exc_info:
            await manager.create_expense(alice, valid_payload(familyId="fam-404"))
        assert exc_info.value.message == "Family not found"

    @pytest.mark.asyncio
    async def test_invalid_payload_lists_errors(self, manager, mock_notifications, family_setup):
        alice, _, _ = family_setup
        with pytest.raises(ExpenseValidationError) as exc_info:
            await manager.create_expense(alice, valid_payload(amount=0, category="RENT"))
        assert len(exc_info.value.errors) == 2
        mock_notifications.notify_expense_event.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_nan_amount_is_not_stored(self, manager, fake_db, family_setup):
        _, _, carol = family_setup
        with pytest.raises(ExpenseValidationError) as exc_info:
            await manager.create_expense(carol, valid_payload(amount=float("nan")))
        assert exc_info.value.errors == ["Amount is required and must be greater than 0"]
        assert await fake_db.get_collection("expenses").count_documents({}) == 0

    @pytest.mark.asyncio
    async def test_created_expense_reads_back_unchanged(self, manager, family_setup):
        alice, bob, _ = family_setup
        payload = valid_payload(
            amount=42.75, category=" travel ", description="Train tickets", familyId="fam-1", userId="bob", synced=True
        )

        created = await manager.create_expense(alice, payload)
        fetched = await manager.get_expense(bob, created["expenseId"])

        assert fetched == created
        assert fetched["expenseId"]
        assert fetched["expenseCreatedOn"] == fetched["lastModifiedOn"]
        assert (fetched["userId"], fetched["createdBy"], fetched["modifiedBy"]) == ("alice", "alice", "alice")
        assert fetched["category"] == "TRAVEL"
        assert fetched["amount"] == payload["amount"]
        assert fetched["description"] == payload["description"]
        assert fetched["date"] == payload["date"]
        assert fetched["familyId"] == payload["familyId"]
        assert fetched["synced"] is True
        assert fetched["deleted"] is False

    @pytest.mark.asyncio
    async def test_storage_failure_is_wrapped(self, manager, fake_db, mock_notifications, family_setup):
        _, _, carol = family_setup
        fake_db.get_collection("expenses").insert_one = AsyncMock(side_effect=PyMongoError("disk full"))

        with pytest.raises(CreationError) as exc_info:
            await manager.create_expense(carol, valid_payload())

        assert exc_info.value.status_code == 500
        assert to_http_exception(exc_info.value).detail["message"] == "An internal error occurred. Please try again later."
        mock_notifications.notify_expense_event.assert_not_awaited()


class TestExpenseAuthorization:
    @pytest.mark.asyncio
    async def test_owner_and_family_can_read(self, manager, insert_expense, family_setup):
        alice, bob, carol = family_setup
        await insert_expense("exp-shared", "alice", family_id="fam-1")

        assert (await manager.get_expense(alice, "exp-shared"))["expenseId"] == "exp-shared"
        assert (await manager.get_expense(bob, "exp-shared"))["expenseId"] == "exp-shared"
        with pytest.raises(ExpenseAccessDenied):
            await manager.get_expense(carol, "exp-shared")

    @pytest.mark.asyncio
    async def test_family_member_can_read_personal_expense_of_member(self, manager, insert_expense, family_setup):
        _, bob, _ = family_setup
        await insert_expense("exp-personal", "alice")
        assert (await manager.get_expense(bob, "exp-personal"))["userId"] == "alice"

    @pytest.mark.asyncio
    async def test_former_family_expense_stays_readable_by_family(self, manager, insert_expense, family_setup):
        _, bob, carol = family_setup
        # carol owns a fam-1 expense but is no longer in fam-1
        await insert_expense("exp-old", "carol", family_id="fam-1")
        assert (await manager.get_expense(bob, "exp-old"))["userId"] == "carol"

    @pytest.mark.asyncio
    async def test_missing_expense(self, manager, family_setup):
        alice, _, _ = family_setup
        with pytest.raises(ExpenseNotFound) as exc_info:
            await manager.get_expense(alice, "nope")
        assert exc_info.value.message == "Expense with ID 'nope' not found"

    @pytest.mark.asyncio
    async def test_only_owner_updates(self, manager, insert_expense, family_setup):
        alice, bob, _ = family_setup
        await insert_expense("exp-1", "alice", family_id="fam-1")

        with pytest.raises(ExpenseAccessDenied):
            await manager.update_expense(bob, "exp-1", valid_payload())

        updated = await manager.update_expense(alice, "exp-1", valid_payload(amount=99.5, familyId="fam-1"))
        assert updated["amount"] == 99.5
        assert updated["modifiedBy"] == "alice"

    @pytest.mark.asyncio
    async def test_family_member_can_delete_family_expense(self, manager, fake_db, insert_expense, family_setup):
        _, bob, carol = family_setup
        await insert_expense("exp-1", "alice", family_id="fam-1")

        with pytest.raises(ExpenseAccessDenied):
            await manager.delete_expense(carol, "exp-1")

        result = await manager.delete_expense(bob, "exp-1")
        assert result == {"message": "Expense Deleted Successfully"}
        stored = await fake_db.get_collection("expenses").find_one({"expenseId": "exp-1"})
        assert stored["deleted"] is True
        assert stored["deletedBy"] == "bob"

    @pytest.mark.asyncio
    async def test_member_cannot_delete_personal_expense_of_another(self, manager, insert_expense, family_setup):
        _, bob, _ = family_setup
        await insert_expense("exp-personal", "alice")
        with pytest.raises(ExpenseAccessDenied):
            await manager.delete_expense(bob, "exp-personal")

    @pytest.mark.asyncio
    async def test_deleted_expense_is_gone(self, manager, insert_expense, family_setup):
        alice, _, _ = family_setup
        await insert_expense("exp-1", "alice")
        await manager.delete_expense(alice, "exp-1")

        with pytest.raises(ExpenseNotFound):
            await manager.get_expense(alice, "exp-1")
        with pytest.raises(ExpenseNotFound):
            await manager.delete_expense(alice, "exp-1")


class TestPagination:
    @pytest.mark.asyncio
    async def test_offset_pages(self, manager, insert_expense, family_setup):
        _, _, carol = family_setup
        for i in range(25):
            await insert_expense(f"exp-{i:02d}", "carol", day=MARCH_10 + i)

        request = normalize_page_request(2, 10, "date", False)
        page = await manager.list_expenses(PersonalScope(carol["id"]), request)

        assert [e["expenseId"] for e in page["content"]] == [f"exp-{i:02d}" for i in range(4, -1, -1)]
        assert page["totalElements"] == 25
        assert page["totalPages"] == 3
        assert page["isLast"] is True
        assert page["hasPrevious"] is True
        assert page["lastExpenseId"] == "exp-00"

    @pytest.mark.asyncio
    async def test_cursor_walks_ties_without_gaps(self, manager, insert_expense, family_setup):
        _, _, carol = family_setup
        for i in range(1, 8):
            await insert_expense(f"exp-{i:02d}", "carol")

        seen = []
        cursor = None
        while True:
            request = normalize_page_request(0, 3, "date", False, cursor)
            page = await manager.list_expenses(PersonalScope("carol"), request)
            seen.extend(e["expenseId"] for e in page["content"])
            if not page["hasNext"]:
                break
            cursor = page["lastExpenseId"]

        assert seen == [f"exp-{i:02d}" for i in range(7, 0, -1)]

    @pytest.mark.asyncio
    async def test_cursor_wins_over_page(self, manager, insert_expense, family_setup):
        for i in range(1, 6):
            await insert_expense(f"exp-{i}", "carol", day=MARCH_10 + i)
        request = normalize_page_request(3, 2, "date", True, "exp-2")
        page = await manager.list_expenses(PersonalScope("carol"), request)
        assert [e["expenseId"] for e in page["content"]] == ["exp-3", "exp-4"]
        assert page["hasNext"] is True

    @pytest.mark.asyncio
    async def test_cursor_outside_filter(self, manager, insert_expense, family_setup):
        await insert_expense("exp-alice", "alice")
        request = normalize_page_request(0, 10, "date", False, "exp-alice")
        with pytest.raises(ExpenseAccessDenied):
            await manager.list_expenses(PersonalScope("carol"), request)

        request = normalize_page_request(0, 10, "date", False, "exp-missing")
        with pytest.raises(ExpenseNotFound):
            await manager.list_expenses(PersonalScope("carol"), request)

    @pytest.mark.asyncio
    async def test_personal_listing_skips_family_and_deleted(self, manager, insert_expense, family_setup):
        await insert_expense("exp-personal", "alice")
        await insert_expense("exp-family", "alice", family_id="fam-1")
        await insert_expense("exp-deleted", "alice", deleted=True)

        page = await manager.list_expenses(PersonalScope("alice"), normalize_page_request(0, 10, "date", False))
        assert [e["expenseId"] for e in page["content"]] == ["exp-personal"]

        page = await manager.list_expenses(FamilyScope("fam-1"), normalize_page_request(0, 10, "date", False))
        assert [e["expenseId"] for e in page["content"]] == ["exp-family"]

    @pytest.mark.asyncio
    async def test_since_listing_includes_deleted(self, manager, insert_expense, family_setup):
        alice, _, _ = family_setup
        await insert_expense("exp-old", "alice", lastModifiedOn=100)
        await insert_expense("exp-new", "alice", lastModifiedOn=300)
        await insert_expense("exp-gone", "alice", lastModifiedOn=400, deleted=True)

        request = normalize_page_request(0, 10, "lastModifiedOn", True)
        page = await manager.list_user_since(alice, 200, request)
        assert [e["expenseId"] for e in page["content"]] == ["exp-new", "exp-gone"]

    @pytest.mark.asyncio
    async def test_family_since_requires_family(self, manager, family_setup):
        _, _, carol = family_setup
        with pytest.raises(FamilyPreconditionFailed):
            await manager.list_family_since(carol, 0, normalize_page_request(0, 10, "lastModifiedOn", True))

    @pytest.mark.asyncio
    async def test_invalid_category_listing(self, manager, family_setup):
        alice, _, _ = family_setup
        with pytest.raises(ExpenseValidationError):
            await manager.list_by_category(alice, "RENT", normalize_page_request(0, 10, "date", False))

    @pytest.mark.asyncio
    async def test_between_dates_rejects_reversed_range(self, manager, family_setup):
        alice, _, _ = family_setup
        with pytest.raises(ValidationError):
            await manager.list_between_dates(
                alice, "2024-03-10", "2024-03-01", normalize_page_request(0, 10, "date", False)
            )


class TestMonthlySum:
    @pytest.mark.asyncio
    async def test_personal_sum_excludes_family_expenses(self, manager, insert_expense, family_setup):
        await insert_expense("e1", "alice", amount=10.25)
        await insert_expense("e2", "alice", amount=5.5)
        await insert_expense("e3", "alice", family_id="fam-1", amount=100)
        await insert_expense("e4", "alice", amount=1000, day=APRIL_2)
        await insert_expense("e5", "alice", amount=7, deleted=True)

        result = await manager.monthly_sum(PersonalScope("alice"), 2024, 3)
        assert result == {"year": 2024, "month": 3, "totalAmount": 15.75, "expenseCount": 2, "userId": "alice"}

    @pytest.mark.asyncio
    async def test_family_sum_covers_every_member(self, manager, insert_expense, family_setup):
        _, bob, _ = family_setup
        await insert_expense("e1", "alice", family_id="fam-1", amount=40)
        await insert_expense("e2", "bob", family_id="fam-1", amount=60)
        await insert_expense("e3", "bob", amount=500)

        result = await manager.family_monthly_sum(bob, 2024, 3)
        assert result["totalAmount"] == 100
        assert result["expenseCount"] == 2
        assert result["familyId"] == "fam-1"

    @pytest.mark.asyncio
    async def test_family_sum_without_family(self, manager, family_setup):
        _, _, carol = family_setup
        with pytest.raises(FamilyPreconditionFailed):
            await manager.family_monthly_sum(carol, 2024, 3)


class TestNotifyExpense:
    @pytest.mark.asyncio
    async def test_requires_device_tokens(self, manager, insert_expense, family_setup):
        alice, _, _ = family_setup
        await insert_expense("exp-1", "alice")
        with pytest.raises(ValidationError) as exc_info:
            await manager.notify_expense(alice, "exp-1")
        assert "No FCM tokens found" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_pushes_to_own_devices(self, manager, mock_notifications, insert_expense, family_setup):
        alice, _, _ = family_setup
        await insert_expense("exp-1", "alice")
        mock_notifications.tokens_for_user.return_value = ["token-a", "token-b"]
        mock_notifications.push_to_tokens.return_value = PushResult(
            success_count=1, failure_count=1, invalid_tokens=["token-b"]
        )

        result = await manager.notify_expense(alice, "exp-1")
        assert result == {
            "message": "Notification sent successfully to 1 device(s)",
            "deliveredCount": 1,
            "invalidTokenCount": 1,
        }
        tokens, message = mock_notifications.push_to_tokens.await_args.args
        assert tokens == ["token-a", "token-b"]
        assert message.data == {"expenseId": "exp-1"}
