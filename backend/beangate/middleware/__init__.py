"""
BeanGate Backend: Middleware Package
======================================

What:  Cross-cutting concerns applied to every request.

Middleware Chain:
    Request → [Request ID] → [Logging] → [GZip] → [CORS] → Route Handler

    - Request ID runs first so every later log line carries the id
    - Logging measures the full handler duration and the final status
"""
