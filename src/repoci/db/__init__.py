from .models import Base, WorkflowJob, WorkflowRun, WorkflowStep
from .session import make_engine, make_sessionmaker

__all__ = [
    "Base",
    "WorkflowJob",
    "WorkflowRun",
    "WorkflowStep",
    "make_engine",
    "make_sessionmaker",
]
