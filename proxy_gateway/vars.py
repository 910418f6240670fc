import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "proxy-gateway")

# Upstream used when TARGET_SERVER_URL is not set. Local development only.
DEFAULT_TARGET_SERVER_URL = "https://jsonplaceholder.typicode.com"
TARGET_SERVER_URL = os.environ.get("TARGET_SERVER_URL", "")

PROXY_PREFIX = os.environ.get("PROXY_PREFIX", "/api/proxy")
PROXY_TIMEOUT = os.environ.get("PROXY_TIMEOUT", "300")
PROXY_DISCONNECT_POLL_INTERVAL = os.environ.get(
    "PROXY_DISCONNECT_POLL_INTERVAL", "0.5"
)

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")

HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "8000"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "info").lower()
