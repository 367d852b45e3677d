from expense_tracker.routes.users.routes import router
