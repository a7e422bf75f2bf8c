"""HTTP routers for the read-only status API."""
