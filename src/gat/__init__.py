"""gat: review and refresh many Git repositories from one place."""

# Guard against deleted CWD (e.g. directory removed by another process).
# rich crashes on import if os.getcwd() fails, so recover before any imports.
import os

try:
    os.getcwd()
except (OSError, PermissionError):
    os.chdir(os.path.expanduser("~"))

from ._version import __version__
from .backend import GitBackend, GitRemote, GitRepository
from .config import Settings, load_config
from .core import (
    Command,
    FetchOrchestrator,
    FleetManager,
    OperationResult,
    SshKeyCredentialProvider,
    StatusClassifier,
    TitleReporter,
    app,
    classify_flags,
)
from .errors import (
    BackendError,
    BareRepositoryError,
    ConfigLoadError,
    CredentialError,
    GatError,
    RemoteNotFoundError,
    RepositoryNotFoundError,
)
from .formatters import OutputFormatter
from .models import (
    ChangeKind,
    RepositoryDescriptor,
    StatusFlag,
    TransferProgress,
    WorkingTreeChange,
)

__all__ = [
    # Version
    "__version__",
    # CLI
    "app",
    "Command",
    # Models
    "ChangeKind",
    "OperationResult",
    "RepositoryDescriptor",
    "Settings",
    "StatusFlag",
    "TransferProgress",
    "WorkingTreeChange",
    # Operations
    "FetchOrchestrator",
    "FleetManager",
    "SshKeyCredentialProvider",
    "StatusClassifier",
    "TitleReporter",
    "classify_flags",
    # Backend
    "GitBackend",
    "GitRemote",
    "GitRepository",
    # Functions
    "load_config",
    # Errors
    "BackendError",
    "BareRepositoryError",
    "ConfigLoadError",
    "CredentialError",
    "GatError",
    "RemoteNotFoundError",
    "RepositoryNotFoundError",
    # Formatters
    "OutputFormatter",
]
