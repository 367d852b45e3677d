from expense_tracker.routes.stats.routes import router
