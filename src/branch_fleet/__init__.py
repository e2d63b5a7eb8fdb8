"""branch-fleet: Audit branch merge state across a fleet of Git repositories."""

# Guard against deleted CWD (e.g. directory removed by another process).
# rich crashes on import if os.getcwd() fails, so recover before any imports.
import os

try:
    os.getcwd()
except (OSError, PermissionError):
    os.chdir(os.path.expanduser("~"))

from ._version import __version__
from .core import (
    AncestryEvaluator,
    AuditConfig,
    AuditSummary,
    BatchScheduler,
    BranchFleetError,
    BranchSearchResult,
    ConfigError,
    GitCommandError,
    GitOperations,
    GitTimeoutError,
    InspectionDirection,
    InspectionFailure,
    InspectionRequest,
    InspectionResult,
    LocalRefStrategy,
    RefResolver,
    RemoteTrackingStrategy,
    RepositoryHandle,
    RepositoryInspector,
    ResolvedRef,
    RootDirectoryError,
    app,
    discover_all,
    discover_repositories,
    load_config,
    load_roots_file,
)
from .formatters import OutputFormat, OutputFormatter
from .schema import get_tool_schema

__all__ = [
    # Version
    "__version__",
    # CLI
    "app",
    # Models
    "AuditSummary",
    "BranchSearchResult",
    "InspectionDirection",
    "InspectionFailure",
    "InspectionRequest",
    "InspectionResult",
    "RepositoryHandle",
    "ResolvedRef",
    # Engine
    "AncestryEvaluator",
    "BatchScheduler",
    "GitOperations",
    "LocalRefStrategy",
    "RefResolver",
    "RemoteTrackingStrategy",
    "RepositoryInspector",
    # Configuration & discovery
    "AuditConfig",
    "discover_all",
    "discover_repositories",
    "load_config",
    "load_roots_file",
    # Errors
    "BranchFleetError",
    "ConfigError",
    "GitCommandError",
    "GitTimeoutError",
    "RootDirectoryError",
    # Formatters
    "OutputFormat",
    "OutputFormatter",
    "get_tool_schema",
]
