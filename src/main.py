"""
main.py

Entry point for the Tailor Marketplace order fulfillment API.

Configures logging, wires the in-memory infrastructure into the FastAPI app
and starts uvicorn.

Usage
-----
    # Option 1: run directly
    python main.py

    # Option 2: run via uvicorn CLI (recommended for development)
    uvicorn main:app --reload --port 8000

Once running, open your browser at:
    http://localhost:8000/docs      ← Swagger UI  (try every endpoint interactively)
    http://localhost:8000/redoc     ← ReDoc
    http://localhost:8000/health    ← liveness check

Quick-start walkthrough (use Swagger UI or curl)
-------------------------------------------------
Every call below except registration sends
``Authorization: Bearer <user-id>``.  The admin id is ADMIN_USER_ID
(default 00000000-0000-0000-0000-000000000001).

1.  POST /api/v1/users                           register a customer and a tailor
2.  POST /api/v1/tailors                         (tailor) open a storefront
3.  POST /api/v1/bookings                        (customer) request a slot
4.  PUT  /api/v1/bookings/{id}/confirm           (tailor)
5.  PUT  /api/v1/bookings/{id}/consultation      (admin)
6.  PUT  /api/v1/bookings/{id}/quote             (tailor) price the job
7.  PUT  /api/v1/bookings/{id}/quote/accept      (customer)
8.  POST /api/v1/bookings/{id}/pay               (customer) escrow hold
9.  POST /api/v1/orders                          convert the booking
10. POST /api/v1/orders/{id}/work-plan           (tailor)
11. PUT  /api/v1/orders/{id}/work-plan/approve   (customer)
12. PUT  /api/v1/orders/{id}/stages/{i}/complete (tailor) once per stage
13. PUT  /api/v1/orders/{id}/complete            (customer) escrow captured

Configuration
-------------
Settings come from the environment or a ``.env`` file in the project root;
see config.py for the full list.
"""

import uvicorn

from api import app, get_uow
from config import LOG_LEVEL, configure_logging
from infrastructure import InMemoryUnitOfWork

configure_logging()


# ---------------------------------------------------------------------------
# Wire the concrete Unit of Work into the FastAPI dependency system.
# To swap databases, replace InMemoryUnitOfWork with your SQL implementation.
# ---------------------------------------------------------------------------

app.dependency_overrides[get_uow] = lambda: InMemoryUnitOfWork()


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="127.0.0.1",
        port=8000,
        reload=True,          # auto-reload on file changes during development
        log_level=LOG_LEVEL.lower(),
    )
