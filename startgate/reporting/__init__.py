"""Status reporting — transition log, snapshots, subscriptions, SQLite log."""

from .reporter import StatusReporter
from .store import TransitionStore
