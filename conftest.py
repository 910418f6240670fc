# Ensure tests import modules from this service directory first, so
# `import proxy_gateway.*` resolves to the working tree without an install.
import os
import sys

SERVICE_ROOT = os.path.dirname(__file__)
if SERVICE_ROOT not in sys.path:
    sys.path.insert(0, SERVICE_ROOT)

import httpx  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from proxy_gateway.forwarder import ForwarderConfig  # noqa: E402
from proxy_gateway.server import create_app  # noqa: E402

TEST_TARGET_SERVER_URL = "https://api.example.com"
TEST_PROXY_PREFIX = "/proxy"


class RecordingUpstream:
    """
    Stand-in upstream for ``httpx.MockTransport``.

    Records every request it receives and answers through ``handler``, which
    tests replace to shape the response or raise transport errors.
    """

    def __init__(self):
        self.requests = []
        self.handler = lambda request: httpx.Response(200, content=b"ok")

    def __call__(self, request: httpx.Request):
        self.requests.append(request)
        return self.handler(request)

    @property
    def last_request(self) -> httpx.Request:
        return self.requests[-1]


@pytest.fixture
def forwarder_config():
    return ForwarderConfig(
        target_server_url=TEST_TARGET_SERVER_URL,
        proxy_prefix=TEST_PROXY_PREFIX,
        timeout=5.0,
        disconnect_poll_interval=0.01,
    )


@pytest.fixture
def upstream():
    return RecordingUpstream()


@pytest.fixture
def proxy_app(forwarder_config, upstream):
    return create_app(forwarder_config, transport=httpx.MockTransport(upstream))


@pytest.fixture
def proxy_client(proxy_app):
    with TestClient(proxy_app) as client:
        yield client
