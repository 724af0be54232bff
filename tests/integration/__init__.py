"""
Integration tests.

Component interactions:
- Request correlator and worker sharing one store and queue set
- HTTP routes over the in-memory pipeline
- Redis Streams queue, distributed lock and record store (USE_REAL_REDIS=1)
"""
