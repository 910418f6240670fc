from .config import ForwarderConfig
from .forwarder import Forwarder, PROXY_METHODS

__all__ = ["Forwarder", "ForwarderConfig", "PROXY_METHODS"]
