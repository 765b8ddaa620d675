"""Release orchestration: promotion sequencing, approval gates and locks.

Import ReleaseOrchestrator from ``shiplane.orchestrator.orchestrator`` (or
from ``shiplane``); this package module stays import-free so the strategy
engine can use the lock helpers without a cycle.
"""
