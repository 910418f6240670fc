import logging
from dataclasses import dataclass
from typing import Optional

from proxy_gateway import vars as env

logger = logging.getLogger("uvicorn.error")


def normalize_prefix(prefix: str) -> str:
    """Return the proxy prefix with a single leading slash and no trailing one."""
    normalized = "/" + (prefix or "").strip().strip("/")
    if normalized == "/":
        raise ValueError(
            f"PROXY_PREFIX must name a path below the root, got {prefix!r}"
        )
    return normalized


def parse_seconds(raw: str, name: str) -> Optional[float]:
    """Parse a seconds value from the environment. Zero or less means no limit."""
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be a number of seconds, got {raw!r}")
    return value if value > 0 else None


@dataclass(frozen=True)
class ForwarderConfig:
    """Process-wide forwarding settings, resolved once at startup."""

    target_server_url: str
    proxy_prefix: str = "/api/proxy"
    timeout: Optional[float] = 300.0
    disconnect_poll_interval: float = 0.5
    used_fallback_target: bool = False

    @classmethod
    def from_env(cls) -> "ForwarderConfig":
        target = env.TARGET_SERVER_URL
        used_fallback = not target
        if used_fallback:
            target = env.DEFAULT_TARGET_SERVER_URL
            logger.warning(
                f"TARGET_SERVER_URL is not set, falling back to {target}. "
                "Set it explicitly outside of local development."
            )

        poll_interval = parse_seconds(
            env.PROXY_DISCONNECT_POLL_INTERVAL, "PROXY_DISCONNECT_POLL_INTERVAL"
        )
        if poll_interval is None:
            raise ValueError("PROXY_DISCONNECT_POLL_INTERVAL must be positive")

        config = cls(
            target_server_url=target,
            proxy_prefix=normalize_prefix(env.PROXY_PREFIX),
            timeout=parse_seconds(env.PROXY_TIMEOUT, "PROXY_TIMEOUT"),
            disconnect_poll_interval=poll_interval,
            used_fallback_target=used_fallback,
        )
        logger.info(
            f"Proxying {config.proxy_prefix}/* to {config.target_server_url} "
            f"(timeout: {config.timeout or 'none'})"
        )
        return config
