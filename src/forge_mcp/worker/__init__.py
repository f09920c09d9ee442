"""Worker loop and fleet process management."""

from .fleet import FleetMember, ProcessFleet
from .loop import WorkerLoop, WorkerState

__all__ = ["FleetMember", "ProcessFleet", "WorkerLoop", "WorkerState"]
