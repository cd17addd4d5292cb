"""
pytest test suite for the Beat Marketplace fulfillment backend.

Test categories:
- Unit tests: verifiers, rate limiter and auth with fake rail clients
- Service tests: fulfillment, reconciliation and sweep against a file-backed SQLite DB
- API tests: full FastAPI app over httpx ASGITransport
"""
