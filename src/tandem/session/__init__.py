from tandem.session.history import HistoryStore
from tandem.session.hooks import SessionHooks
from tandem.session.idle import IdleScheduler
from tandem.session.orchestrator import (
    RecipeInProgressError,
    SessionNotFoundError,
    SessionOrchestrator,
)

__all__ = [
    "HistoryStore",
    "IdleScheduler",
    "RecipeInProgressError",
    "SessionHooks",
    "SessionNotFoundError",
    "SessionOrchestrator",
]
