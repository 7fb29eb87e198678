"""copilotlink: OpenAI, Anthropic and Responses API endpoints over a GitHub Copilot account."""

from importlib.metadata import version

from copilotlink.admission import AdmissionController
from copilotlink.auth import TokenStore
from copilotlink.catalog import ModelCatalog
from copilotlink.config import Settings
from copilotlink.errors import (
    AuthError,
    ProxyError,
    RateLimitError,
    TranslationError,
    UpstreamError,
    ValidationError,
)

__version__ = version("copilotlink")
__all__ = [
    "AdmissionController",
    "AuthError",
    "ModelCatalog",
    "ProxyError",
    "RateLimitError",
    "Settings",
    "TokenStore",
    "TranslationError",
    "UpstreamError",
    "ValidationError",
    "__version__",
]
