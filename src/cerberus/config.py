import os
import logging

import dotenv

from cerberus.errors import ConfigError

dotenv.load_dotenv()

GITHUB_CLIENT_ID = os.environ.get("GITHUB_CLIENT_ID", "")
GITHUB_PRIVATE_KEY_PATH = os.environ.get("GITHUB_PRIVATE_KEY_PATH", "")
GITHUB_WEBHOOK_SECRET = os.environ.get("GITHUB_WEBHOOK_SECRET") or None
GITHUB_API_URL = os.environ.get("GITHUB_API_URL", "https://api.github.com").rstrip(
    "/"
)

OVERRIDE_LOGGING = logging.getLevelName(os.environ.get("OVERRIDE_LOGGING", "WARNING"))

TELEGRAM_TOKEN = os.environ.get("TELEGRAM_TOKEN")
TELEGRAM_CHAT_ID = os.environ.get("TELEGRAM_CHAT_ID")

HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", 8080))

SSL_CERT = os.environ.get("SSL_CERT")
SSL_KEY = os.environ.get("SSL_KEY")

# debounce window in seconds, 0 pushes synchronously
PERIODIC_REFRESH = float(os.environ.get("PERIODIC_REFRESH", 0))

ENTRY_RETENTION = float(os.environ.get("ENTRY_RETENTION", 600))

EVICTION_INTERVAL = float(os.environ.get("EVICTION_INTERVAL", 60))

RETRY_ATTEMPTS = int(os.environ.get("RETRY_ATTEMPTS", 3))

RETRY_BACKOFF = float(os.environ.get("RETRY_BACKOFF", 1.0))

TOKEN_EXPIRY_MARGIN = float(os.environ.get("TOKEN_EXPIRY_MARGIN", 60))

TOKEN_REFRESH_THRESHOLD = float(os.environ.get("TOKEN_REFRESH_THRESHOLD", 30))

SHUTDOWN_DRAIN_TIMEOUT = float(os.environ.get("SHUTDOWN_DRAIN_TIMEOUT", 10))


def validate() -> None:
    if not GITHUB_CLIENT_ID:
        raise ConfigError("GITHUB_CLIENT_ID must be set")
    if not GITHUB_PRIVATE_KEY_PATH:
        raise ConfigError("GITHUB_PRIVATE_KEY_PATH must be set")
    if PORT <= 0:
        raise ConfigError("PORT can't be 0")
    if bool(SSL_CERT) != bool(SSL_KEY):
        raise ConfigError(
            "Incomplete SSL configuration: SSL_CERT and SSL_KEY must be set together"
        )
    if PERIODIC_REFRESH < 0:
        raise ConfigError("PERIODIC_REFRESH can't be negative")
    if RETRY_ATTEMPTS < 1:
        raise ConfigError("RETRY_ATTEMPTS must be at least 1")
