"""Sync engine for pygrive - reconciliation of local, remote and saved state."""

from .engine import SyncEngine, SyncResult
from .executor import ActionExecutor, ActionResult, ActionStatus, ExecutionReport
from .ignore import IGNORE_FILE_NAME, IgnoreMatcher, IgnoreRule, RuleSign, load_ignore_file
from .operations import SyncOperations, TransferResult
from .options import SyncOptions
from .ratelimit import RateLimiter
from .reconciler import ActionType, Reconciler, Side, StateChange, SyncAction, SyncPlan
from .scanner import EntryKind, LocalTreeScanner, RemoteTreeScanner, TreeEntry, TreeSnapshot
from .state import StateEntry, StateStore

__all__ = [
    "SyncEngine",
    "SyncResult",
    "SyncOptions",
    "ActionExecutor",
    "ActionResult",
    "ActionStatus",
    "ExecutionReport",
    "SyncOperations",
    "TransferResult",
    "RateLimiter",
    "Reconciler",
    "SyncAction",
    "SyncPlan",
    "ActionType",
    "Side",
    "StateChange",
    "LocalTreeScanner",
    "RemoteTreeScanner",
    "TreeEntry",
    "TreeSnapshot",
    "EntryKind",
    "StateEntry",
    "StateStore",
    "IgnoreMatcher",
    "IgnoreRule",
    "RuleSign",
    "IGNORE_FILE_NAME",
    "load_ignore_file",
]
