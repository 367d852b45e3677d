"""Background maintenance tasks started by the application lifespan."""
