from expense_tracker.routes.expenses.routes import router
