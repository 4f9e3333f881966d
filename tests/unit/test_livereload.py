from __future__ import annotations

import time

from fastapi.testclient import TestClient

from devloop.core.livereload import (
    ENDPOINT,
    RELOAD_MESSAGE,
    SCRIPT_PATH,
    LiveReloadNotifier,
    client_script,
)
from devloop.models.project import LiveReloadConfig


def test_client_script_targets_configured_port() -> None:
    script = client_script(4000)
    assert ":4000/livereload" in script
    assert "window.location.reload()" in script


def test_disabled_notifier_is_a_no_op() -> None:
    for config in (LiveReloadConfig(disable=True), LiveReloadConfig(port=0)):
        notifier = LiveReloadNotifier(config)
        assert notifier.enabled is False
        notifier.listen_and_serve()
        notifier.send_reload_signal()
        notifier.shutdown()


def test_signal_without_clients_does_nothing() -> None:
    notifier = LiveReloadNotifier(LiveReloadConfig())
    notifier.send_reload_signal()
    assert notifier.client_count == 0


def test_script_endpoint() -> None:
    notifier = LiveReloadNotifier(LiveReloadConfig(port=35729))
    with TestClient(notifier.app) as client:
        response = client.get(SCRIPT_PATH)

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/javascript")
    assert ":35729/livereload" in response.text


def test_reload_signal_reaches_connected_clients() -> None:
    notifier = LiveReloadNotifier(LiveReloadConfig())
    with TestClient(notifier.app) as client, client.websocket_connect(ENDPOINT) as websocket:
        deadline = time.monotonic() + 5
        while notifier.client_count == 0 and time.monotonic() < deadline:
            time.sleep(0.01)
        assert notifier.client_count == 1

        notifier.send_reload_signal()

        assert websocket.receive_text() == RELOAD_MESSAGE
