from expense_tracker.routes.currencies.routes import router
