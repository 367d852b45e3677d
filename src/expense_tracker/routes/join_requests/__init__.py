from expense_tracker.routes.join_requests.routes import router
