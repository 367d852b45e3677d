from expense_tracker.routes.family.routes import router
