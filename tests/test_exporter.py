from __future__ import annotations

import json

import requests

from hearscreen.screening import exporter


class _Response:
    def __init__(self, status_code, text):
        self.status_code = status_code
        self.text = text

    @property
    def ok(self):
        return self.status_code < 400


def test_export_posts_json_with_token(monkeypatch) -> None:
    seen = {}

    def fake_post(url, headers=None, data=None, timeout=None):
        seen.update(url=url, headers=headers, data=data, timeout=timeout)
        return _Response(201, "created")

    monkeypatch.setattr(exporter.requests, "post", fake_post)
    ok, message = exporter.export_results_to_webapp("https://clinic.example/api", "secret", {"a": 1})
    assert (ok, message) == (True, "created")
    assert seen["headers"]["X-Auth"] == "secret"
    assert json.loads(seen["data"]) == {"a": 1}
    assert seen["timeout"] == 10


def test_export_reports_http_errors(monkeypatch) -> None:
    monkeypatch.setattr(exporter.requests, "post", lambda *a, **k: _Response(500, "boom"))
    assert exporter.export_results_to_webapp("https://clinic.example/api", None, {}) == (False, "HTTP 500: boom")


def test_export_reports_network_errors(monkeypatch) -> None:
    def fail(*args, **kwargs):
        raise requests.ConnectionError("unreachable")

    monkeypatch.setattr(exporter.requests, "post", fail)
    ok, message = exporter.export_results_to_webapp("https://clinic.example/api", None, {})
    assert not ok
    assert "unreachable" in message


def test_export_without_url() -> None:
    assert exporter.export_results_to_webapp("", None, {})[0] is False
