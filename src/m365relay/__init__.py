"""M365 Relay - Microsoft 365 security events to webhooks."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("m365-relay")
except PackageNotFoundError:
    # Package is not installed (e.g., running from source without pip install)
    __version__ = "0.0.0.dev0"

# Re-export core public API
from m365relay.app import main
from m365relay.resolver import CredentialResolver
from m365relay.supervisor import Supervisor
from m365relay.worker import PollWorker

# NOTE: Update this list when adding new exports to this module.
__all__ = [
    "__version__",
    "CredentialResolver",
    "PollWorker",
    "Supervisor",
    "main",
]
