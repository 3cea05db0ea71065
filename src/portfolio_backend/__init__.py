"""
Portfolio Backend - document store connection lifecycle for a serverless API

This package provides the FastAPI layer of a content-management backend that
runs as a pool of short-lived, concurrently invoked request handlers. Its job
is to keep one MongoDB connection per process alive and shared:

- A single process-wide connection, reused across invocations (warm reuse)
- At most one connection attempt in flight, however many requests arrive
  during a cold start
- Connection failures classified (DNS, auth, timeout, access, config) and
  surfaced as HTTP 503 instead of business-logic errors
- Orderly teardown when the process is asked to terminate

Key Components:
    - database: ConnectionManager, the connection state machine
    - gate: RequestGate, the per-request readiness check and diagnostics
    - main: FastAPI application, health and status endpoints
    - lifecycle: termination signal handling and exit codes
    - configuration: OmegaConf defaults merged with environment variables
    - transport: motor client adapter driven by the manager

Usage:
    Run the API server with:
        uvicorn portfolio_backend.main:app --host 0.0.0.0 --port 5000

    Or use the console script:
        portfolio-backend
"""
