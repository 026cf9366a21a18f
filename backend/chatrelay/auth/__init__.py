"""Identity Gate: JWT verification and the FastAPI auth dependency."""
