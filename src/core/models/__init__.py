from src.core.models.jobs import JobEnvelope, PendingMarker, ReplyEnvelope

__all__ = ["JobEnvelope", "PendingMarker", "ReplyEnvelope"]
