from execution.directory_client import DirectoryClient, DirectoryClientError
from execution.trigger_client import TriggerClient, TriggerClientError

__all__ = [
    "DirectoryClient",
    "DirectoryClientError",
    "TriggerClient",
    "TriggerClientError",
]
