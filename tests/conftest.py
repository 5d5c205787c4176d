import threading

import pytest

from dem_playground.main import Flags, Store, make_server


@pytest.fixture
def flags():
    return Flags("test-v")


@pytest.fixture
def store():
    return Store()


@pytest.fixture
def base(flags, store):
    """A live threaded server on an ephemeral port; yields its base URL."""
    srv = make_server(0, flags, store)
    t = threading.Thread(target=srv.serve_forever, daemon=True)
    t.start()
    yield f"http://127.0.0.1:{srv.server_address[1]}"
    srv.shutdown()
    srv.server_close()
    t.join(timeout=5)
