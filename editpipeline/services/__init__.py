"""Remote AI clients and the pipeline orchestrator."""

from .http_ai_client import CredentialProvider, HttpRemoteAIClient, StaticCredentialProvider
from .remote_ai_client import RemoteAIClient

__all__ = [
    "CredentialProvider",
    "HttpRemoteAIClient",
    "RemoteAIClient",
    "StaticCredentialProvider",
]
