"""Database module for the Expense Tracker API."""

import asyncio
from contextlib import asynccontextmanager
import time
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorClientSession, AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo.errors import ConnectionFailure, DuplicateKeyError, OperationFailure, PyMongoError, ServerSelectionTimeoutError

from expense_tracker.config import settings
from expense_tracker.managers.logging_manager import get_logger
from expense_tracker.utils.error_handling import TransactionError

db_logger = get_logger(prefix="[DATABASE]")
perf_logger = get_logger(prefix="[DB_PERFORMANCE]")
health_logger = get_logger(prefix="[DB_HEALTH]")

# (collection, field spec, options)
INDEX_SPECS: List[Tuple[str, Any, Dict[str, Any]]] = [
    ("users", "id", {"unique": True}),
    ("users", "email", {"unique": True}),
    ("users", "aliasName", {"unique": True, "sparse": True}),
    ("users", "familyId", {"sparse": True}),
    ("families", "familyId", {"unique": True}),
    ("families", "aliasName", {"unique": True}),
    ("families", "headId", {}),
    ("families", "membersIds", {}),
    ("expenses", "expenseId", {"unique": True}),
    ("expenses", [("userId", 1), ("date", -1)], {}),
    ("expenses", [("familyId", 1), ("date", -1)], {}),
    ("expenses", [("userId", 1), ("lastModifiedOn", 1)], {}),
    ("expenses", [("deleted", 1), ("deletedOn", 1)], {}),
    ("join_requests", "id", {"unique": True}),
    ("join_requests", [("requesterId", 1), ("familyId", 1), ("createdAt", -1)], {}),
    ("join_requests", [("familyId", 1), ("status", 1)], {}),
    ("join_requests", [("status", 1), ("createdAt", 1)], {}),
    ("notifications", [("receiverId", 1), ("timestamp", -1)], {}),
    ("notifications", "id", {"unique": True}),
    ("user_devices", "fcmToken", {"unique": True}),
    ("user_devices", "userId", {}),
    ("refresh_tokens", "token", {"unique": True}),
    ("refresh_tokens", "expiresAt", {"expireAfterSeconds": 0}),
]


class DatabaseManager:
    """MongoDB database manager using Motor (async MongoDB driver)"""

    def __init__(self):
        self.client: Optional[AsyncIOMotorClient] = None
        self.database: Optional[AsyncIOMotorDatabase] = None
        self._connection_retries = 3
        # Set after connect(); True when connected to a replica-set or mongos
        self.transactions_supported: Optional[bool] = None

    async def connect(self):
        """Connect to MongoDB with retry logic"""
        start_time = time.time()
        db_logger.info("Starting MongoDB connection process")

        for attempt in range(self._connection_retries):
            attempt_start = time.time()
            try:
                db_logger.info("Connection attempt %d/%d to MongoDB", attempt + 1, self._connection_retries)

                if settings.MONGODB_USERNAME and settings.MONGODB_PASSWORD:
                    connection_string = (
                        f"mongodb://{settings.MONGODB_USERNAME}:"
                        f"{settings.MONGODB_PASSWORD.get_secret_value()}@"
                        f"{settings.MONGODB_URL.replace('mongodb://', '')}"
                    )
                else:
                    connection_string = settings.MONGODB_URL

                self.client = AsyncIOMotorClient(
                    connection_string,
                    serverSelectionTimeoutMS=settings.MONGODB_SERVER_SELECTION_TIMEOUT,
                    connectTimeoutMS=settings.MONGODB_CONNECTION_TIMEOUT,
                    maxPoolSize=50,
                    minPoolSize=5,
                    tz_aware=True,
                )
                self.database = self.client[settings.MONGODB_DATABASE]

                ping_start = time.time()
                await self.client.admin.command("ping")
                ping_duration = time.time() - ping_start

                # Replica set (setName) or mongos (isdbgrid) means multi-document transactions work
                try:
                    hello = await self.client.admin.command({"hello": 1})
                    self.transactions_supported = bool(hello.get("setName") or hello.get("msg") == "isdbgrid")
                except PyMongoError:
                    self.transactions_supported = False

                perf_logger.info(
                    "MongoDB connection established in %.3fs (ping: %.3fs)", time.time() - start_time, ping_duration
                )
                db_logger.info(
                    "Connected to MongoDB database: %s (transactions: %s)",
                    settings.MONGODB_DATABASE,
                    self.transactions_supported,
                )
                return

            except (ServerSelectionTimeoutError, ConnectionFailure) as e:
                perf_logger.warning(
                    "Connection attempt %d failed after %.3fs", attempt + 1, time.time() - attempt_start
                )
                db_logger.warning(
                    "Failed to connect to MongoDB (attempt %d/%d): %s", attempt + 1, self._connection_retries, e
                )
                if attempt == self._connection_retries - 1:
                    db_logger.error("All connection attempts failed after %.3fs", time.time() - start_time)
                    raise

                backoff_time = 2**attempt
                db_logger.info("Waiting %.1fs before retry (exponential backoff)", backoff_time)
                await asyncio.sleep(backoff_time)

    async def disconnect(self):
        """Disconnect from MongoDB"""
        if self.client:
            self.client.close()
            self.client = None
            self.database = None
            db_logger.info("Successfully disconnected from MongoDB")
        else:
            db_logger.warning("Disconnect called but no active MongoDB connection found")

    async def health_check(self) -> bool:
        """Check database connection health"""
        if self.client is None:
            health_logger.warning("Health check failed: No database client available")
            return False
        start_time = time.time()
        try:
            await self.client.admin.command("ping")
            perf_logger.debug("Database health check completed in %.3fs", time.time() - start_time)
            return True
        except (ServerSelectionTimeoutError, ConnectionFailure) as e:
            health_logger.error("Database health check failed: %s", e)
            return False
        except PyMongoError as e:
            health_logger.error("Unexpected error during health check: %s", e)
            return False

    def get_collection(self, collection_name: str) -> AsyncIOMotorCollection:
        """Get a collection from the database"""
        if self.database is None:
            db_logger.error("Cannot get collection '%s': Database not connected", collection_name)
            raise RuntimeError("Database not connected")
        return self.database[collection_name]

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Optional[AsyncIOMotorClientSession]]:
        """
        Yield a session inside a started transaction, or None when the deployment
        cannot run multi-document transactions.

        Callers pass the yielded value as ``session=`` to every write; None makes
        the writes run one by one without a transaction.
        """
        if not getattr(self, "transactions_supported", False) or self.client is None:
            yield None
            return

        session = await self.client.start_session()
        try:
            async with session.start_transaction():
                yield session
        except DuplicateKeyError:
            raise
        except PyMongoError as e:
            db_logger.error("Transaction aborted: %s", e)
            raise TransactionError("Database transaction failed") from e
        finally:
            await session.end_session()

    async def create_indexes(self):
        """Create database indexes for every collection the service uses"""
        start_time = time.time()
        db_logger.info("Starting database index creation process")
        for collection_name, field_spec, options in INDEX_SPECS:
            await self._create_index_if_not_exists(self.get_collection(collection_name), field_spec, options)
        perf_logger.info("Index creation completed in %.3fs", time.time() - start_time)

    async def _create_index_if_not_exists(self, collection: AsyncIOMotorCollection, field_spec, options: Dict):
        """Create an index, logging instead of failing when an equivalent one already exists"""
        try:
            await collection.create_index(field_spec, **options)
            db_logger.debug("Ensured index %s on '%s'", field_spec, collection.name)
        except OperationFailure as e:
            db_logger.warning("Index %s on '%s' not created: %s", field_spec, collection.name, e)

    def log_query_start(
        self, collection_name: str, operation: str, query: Optional[Dict] = None, options: Optional[Dict] = None
    ) -> float:
        """Log the start of a database query and return start time for performance tracking"""
        start_time = time.time()
        safe_query = self._sanitize_query_for_logging(query) if query else {}
        safe_options = self._sanitize_query_for_logging(options) if options else {}
        db_logger.debug(
            "Starting %s operation on collection '%s' - Query: %s, Options: %s",
            operation,
            collection_name,
            safe_query,
            safe_options,
        )
        return start_time

    def log_query_success(
        self,
        collection_name: str,
        operation: str,
        start_time: float,
        result_count: Optional[int] = None,
        result_info: Optional[str] = None,
    ):
        """Log successful completion of a database query with performance metrics"""
        duration = time.time() - start_time
        if result_count is not None:
            perf_logger.info(
                "%s on '%s' completed in %.3fs - %d records", operation, collection_name, duration, result_count
            )
        else:
            perf_logger.info("%s on '%s' completed in %.3fs", operation, collection_name, duration)
        if result_info:
            db_logger.debug("Result info for %s on '%s': %s", operation, collection_name, result_info)

    def log_query_error(
        self, collection_name: str, operation: str, start_time: float, error: Exception, query: Optional[Dict] = None
    ):
        """Log database query errors with context and performance metrics"""
        duration = time.time() - start_time
        safe_query = self._sanitize_query_for_logging(query) if query else {}
        perf_logger.error("%s on '%s' failed after %.3fs", operation, collection_name, duration)
        db_logger.error(
            "%s operation failed on collection '%s' after %.3fs - Error: %s, Query: %s",
            operation,
            collection_name,
            duration,
            error,
            safe_query,
        )

    def _sanitize_query_for_logging(self, query: Dict[str, Any]) -> Dict[str, Any]:
        """Sanitize database queries for safe logging by removing sensitive data"""
        if not isinstance(query, dict):
            return {}

        sensitive_fields = {"password", "token", "secret", "key", "credential"}

        sanitized: Dict[str, Any] = {}
        for key, value in query.items():
            if any(sensitive_field in key.lower() for sensitive_field in sensitive_fields):
                sanitized[key] = "[REDACTED]"
            elif isinstance(value, dict):
                sanitized[key] = self._sanitize_query_for_logging(value)
            elif isinstance(value, list):
                sanitized[key] = [
                    self._sanitize_query_for_logging(item) if isinstance(item, dict) else item for item in value
                ]
            else:
                sanitized[key] = value
        return sanitized


db_manager = DatabaseManager()
