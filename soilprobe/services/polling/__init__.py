from .service import PollingService, PollingState

__all__ = ["PollingService", "PollingState"]
