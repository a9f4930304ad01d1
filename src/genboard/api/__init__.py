"""HTTP surface (FastAPI) and access-token checks."""
