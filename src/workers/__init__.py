"""
Process entrypoints for the non-HTTP roles of the bridge.

- worker_service: consumes job queues (``bridge-worker``)
- autoscaler_service: sizes the worker pool from queue depth (``bridge-autoscaler``)
"""
