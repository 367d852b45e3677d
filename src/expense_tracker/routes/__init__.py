"""Routes package initialization."""

from expense_tracker.routes.auth import router as auth_router
from expense_tracker.routes.currencies import router as currencies_router
from expense_tracker.routes.expenses import router as expenses_router
from expense_tracker.routes.family import router as family_router
from expense_tracker.routes.join_requests import router as join_requests_router
from expense_tracker.routes.main import router as main_router
from expense_tracker.routes.notifications import router as notifications_router
from expense_tracker.routes.stats import router as stats_router
from expense_tracker.routes.users import router as users_router
