"""Authentication services: Firebase identity, app tokens and the token blacklist."""
