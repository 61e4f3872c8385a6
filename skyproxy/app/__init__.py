"""SkyProxy FastAPI application package."""
