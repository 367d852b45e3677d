"""
Background cleanup of family references, stale join requests and soft-deleted expenses.

What this file does:
- Family orphan cleanup: users whose ``familyId`` points at a family that no longer exists get
  it cleared, and the expenses of that family are deleted (every FAMILY_CLEANUP_INTERVAL seconds).
- Join request expiry: PENDING requests older than JOIN_REQUEST_TTL_HOURS become CANCELLED and
  leave the family's pending list (every JOIN_REQUEST_CLEANUP_INTERVAL seconds).
- Expense purge: soft-deleted expenses older than EXPENSE_PURGE_RETENTION_DAYS are removed for
  good (every EXPENSE_PURGE_INTERVAL seconds).
- Tracks the last run of each task in the 'system' collection so a restart does not re-run
  a task that ran recently.

Each task body is a plain coroutine returning the number of records it touched, so it can be
called directly in tests; the ``periodic_*`` wrappers loop forever and are meant for
``asyncio.create_task``.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from expense_tracker.config import settings
from expense_tracker.database import db_manager
from expense_tracker.managers.logging_manager import get_logger
from expense_tracker.models import JoinRequestStatus, now_millis, to_millis

logger = get_logger(prefix="[Periodic Cleanup]")

SYSTEM_COLLECTION = "system"
USERS_COLLECTION = "users"
FAMILIES_COLLECTION = "families"
EXPENSES_COLLECTION = "expenses"
JOIN_REQUESTS_COLLECTION = "join_requests"

FAMILY_CLEANUP_DOC_ID = "family_orphan_cleanup"
JOIN_REQUEST_CLEANUP_DOC_ID = "join_request_expiry"
EXPENSE_PURGE_DOC_ID = "expense_purge"


async def get_last_cleanup_time(doc_id: str) -> Optional[datetime]:
    """Last run of a task, or None if it never ran."""
    system = db_manager.get_collection(SYSTEM_COLLECTION)
    doc = await system.find_one({"_id": doc_id})
    if doc and "last_cleanup" in doc:
        return datetime.fromisoformat(doc["last_cleanup"])
    return None


async def set_last_cleanup_time(doc_id: str, dt: datetime) -> None:
    system = db_manager.get_collection(SYSTEM_COLLECTION)
    await system.update_one({"_id": doc_id}, {"$set": {"last_cleanup": dt.isoformat()}}, upsert=True)
    logger.debug("Set last %s time to: %s", doc_id, dt.isoformat())


async def cleanup_orphaned_family_references() -> int:
    users = db_manager.get_collection(USERS_COLLECTION)
    families = db_manager.get_collection(FAMILIES_COLLECTION)
    expenses = db_manager.get_collection(EXPENSES_COLLECTION)

    referenced = await users.find({"familyId": {"$ne": None}}, {"familyId": 1}).to_list(length=None)
    family_ids = {u["familyId"] for u in referenced if u.get("familyId")}
    if not family_ids:
        return 0
    existing = await families.find({"familyId": {"$in": list(family_ids)}}, {"familyId": 1}).to_list(length=None)
    orphaned = family_ids - {f["familyId"] for f in existing}
    if not orphaned:
        return 0

    cleaned = await users.update_many(
        {"familyId": {"$in": list(orphaned)}}, {"$set": {"familyId": None, "updatedAt": now_millis()}}
    )
    removed = await expenses.delete_many({"familyId": {"$in": list(orphaned)}})
    logger.info(
        "Cleared %d orphaned family reference(s) for %d missing families, deleted %d expense(s)",
        cleaned.modified_count,
        len(orphaned),
        removed.deleted_count,
    )
    return cleaned.modified_count


async def expire_join_requests() -> int:
    join_requests = db_manager.get_collection(JOIN_REQUESTS_COLLECTION)
    families = db_manager.get_collection(FAMILIES_COLLECTION)
    cutoff = now_millis() - settings.JOIN_REQUEST_TTL_HOURS * 60 * 60 * 1000

    stale = await join_requests.find(
        {"status": JoinRequestStatus.PENDING.value, "createdAt": {"$lt": cutoff}}, {"_id": 0}
    ).to_list(length=None)
    expired = 0
    for request in stale:
        now = now_millis()
        result = await join_requests.update_one(
            {"id": request["id"], "status": JoinRequestStatus.PENDING.value},
            {"$set": {"status": JoinRequestStatus.CANCELLED.value, "updatedAt": now}},
        )
        if result.modified_count == 0:
            continue
        await families.update_one(
            {"familyId": request["familyId"]},
            {"$pull": {"pendingJoinRequests": request["requesterId"]}, "$set": {"updatedAt": now}},
        )
        expired += 1
    if expired:
        logger.info("Expired %d join request(s) older than %dh", expired, settings.JOIN_REQUEST_TTL_HOURS)
    return expired


async def purge_deleted_expenses() -> int:
    cutoff = to_millis(datetime.now(timezone.utc) - timedelta(days=settings.EXPENSE_PURGE_RETENTION_DAYS))
    result = await db_manager.get_collection(EXPENSES_COLLECTION).delete_many(
        {"deleted": True, "deletedOn": {"$lt": cutoff}}
    )
    if result.deleted_count:
        logger.info("Purged %d soft-deleted expense(s)", result.deleted_count)
    return result.deleted_count


async def _run_periodically(doc_id: str, interval: int, job: Callable[[], Awaitable[int]]) -> None:
    logger.info("Starting periodic %s task with interval %ds", doc_id, interval)
    while True:
        try:
            now = datetime.now(timezone.utc)
            last_cleanup = await get_last_cleanup_time(doc_id)
            if not last_cleanup or (now - last_cleanup).total_seconds() >= interval:
                await job()
                await set_last_cleanup_time(doc_id, now)
            else:
                logger.debug(
                    "Skipping %s; only %ds since last run (interval: %ds)",
                    doc_id,
                    (now - last_cleanup).total_seconds(),
                    interval,
                )
        except Exception as exc:
            logger.error("Error in periodic %s task: %s", doc_id, exc, exc_info=True)
        finally:
            await asyncio.sleep(interval)


async def periodic_family_cleanup() -> None:
    await _run_periodically(FAMILY_CLEANUP_DOC_ID, settings.FAMILY_CLEANUP_INTERVAL, cleanup_orphaned_family_references)


async def periodic_join_request_cleanup() -> None:
    await _run_periodically(JOIN_REQUEST_CLEANUP_DOC_ID, settings.JOIN_REQUEST_CLEANUP_INTERVAL, expire_join_requests)


async def periodic_expense_purge() -> None:
    await _run_periodically(EXPENSE_PURGE_DOC_ID, settings.EXPENSE_PURGE_INTERVAL, purge_deleted_expenses)
