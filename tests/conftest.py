import pytest

from lanbeacon.registry import NetworkRegistry, start_registry_server


def _serve(use_forwarded_for: bool):
    registry = NetworkRegistry()
    server = start_registry_server(
        registry, host="127.0.0.1", port=0, use_forwarded_for=use_forwarded_for,
    )
    host, port = server.server_address[:2]
    return registry, server, f"http://{host}:{port}"


@pytest.fixture
def live_server():
    """Registry server keyed on the socket peer address."""
    registry, server, base_url = _serve(use_forwarded_for=False)
    yield registry, base_url
    server.shutdown()
    server.server_close()


@pytest.fixture
def proxied_server():
    """Registry server that trusts X-Forwarded-For."""
    registry, server, base_url = _serve(use_forwarded_for=True)
    yield registry, base_url
    server.shutdown()
    server.server_close()
