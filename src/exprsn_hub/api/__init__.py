"""HTTP API routers and shared dependencies."""
