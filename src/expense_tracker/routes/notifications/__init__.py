from expense_tracker.routes.notifications.routes import router
