from cerberus.github.api import API, classify_error
from cerberus.github.auth import InstallationTokenManager, create_jwt, load_private_key

__all__ = [
    "API",
    "InstallationTokenManager",
    "classify_error",
    "create_jwt",
    "load_private_key",
]
