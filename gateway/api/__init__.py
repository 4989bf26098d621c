"""HTTP surface: FastAPI routers."""
