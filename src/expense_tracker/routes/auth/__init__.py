"""Authentication package initialization."""

from expense_tracker.routes.auth.dependencies import get_current_user_dep
from expense_tracker.routes.auth.routes import router
