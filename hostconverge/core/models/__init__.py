"""
Domain models — Pydantic types for the convergence engine.

All models are re-exported here for convenient access:

    from hostconverge.core.models import Action, ExecutionPolicy, RunReport
"""

from hostconverge.core.models.action import (
    Action,
    ActionKind,
    DatabaseSchemaParams,
    DirectoryParams,
    PackageSetParams,
    PackageSpec,
    RenderedFileParams,
    ServiceStateParams,
    Severity,
    ShellStepParams,
    UserAccountParams,
)
from hostconverge.core.models.document import DesiredState, HostRequirements
from hostconverge.core.models.facts import (
    CommandStatus,
    DatabaseObjectStatus,
    FactQuery,
    FactSnapshot,
    FileStatus,
    PackageStatus,
    ServiceStatus,
    UserStatus,
)
from hostconverge.core.models.policy import ExecutionPolicy, OnFailure
from hostconverge.core.models.report import (
    ExecutionRecord,
    Outcome,
    RunReport,
    RunStatus,
)

__all__ = [
    # action.py
    "Action",
    "ActionKind",
    "CommandStatus",
    "DatabaseObjectStatus",
    "DatabaseSchemaParams",
    # document.py
    "DesiredState",
    "DirectoryParams",
    "ExecutionPolicy",
    "ExecutionRecord",
    # facts.py
    "FactQuery",
    "FactSnapshot",
    "FileStatus",
    "HostRequirements",
    "OnFailure",
    "Outcome",
    "PackageSetParams",
    "PackageSpec",
    "PackageStatus",
    "RenderedFileParams",
    # report.py
    "RunReport",
    "RunStatus",
    "ServiceStateParams",
    "ServiceStatus",
    "Severity",
    "ShellStepParams",
    "UserAccountParams",
    "UserStatus",
]
