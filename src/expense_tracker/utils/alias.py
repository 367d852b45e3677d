"""Short human-shareable join codes for families and users."""

import secrets
import string
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorCollection

from expense_tracker.config import settings
from expense_tracker.managers.logging_manager import get_logger
from expense_tracker.utils.error_handling import RetryableError

logger = get_logger(prefix="[Alias]")

ALIAS_ALPHABET = string.ascii_uppercase + string.digits


class AliasGenerationExhausted(RetryableError):
    """No free alias was found within the attempt bound."""

    def __init__(self, attempts: int):
        super().__init__(
            "Unable to generate a unique alias right now. Please try again.",
            error_code="ALIAS_GENERATION_EXHAUSTED",
            context={"attempts": attempts},
        )


def generate_alias(length: Optional[int] = None) -> str:
    length = length or settings.ALIAS_LENGTH
    return "".join(secrets.choice(ALIAS_ALPHABET) for _ in range(length))


async def generate_unique_alias(
    collection: AsyncIOMotorCollection, max_attempts: Optional[int] = None, length: Optional[int] = None
) -> str:
    """
    Draw random aliases until one is not used by ``collection``.

    The unique index on ``aliasName`` still guards the insert; this only keeps the
    expected number of insert retries near zero.

    Raises:
        AliasGenerationExhausted: if every attempt collided
    """
    max_attempts = max_attempts or settings.ALIAS_MAX_GENERATION_ATTEMPTS
    for attempt in range(max_attempts):
        alias = generate_alias(length)
        if await collection.find_one({"aliasName": alias}, {"_id": 1}) is None:
            if attempt:
                logger.debug("Alias found after %d collisions", attempt)
            return alias
    logger.error("Alias generation exhausted after %d attempts on '%s'", max_attempts, collection.name)
    raise AliasGenerationExhausted(max_attempts)
