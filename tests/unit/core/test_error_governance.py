import json
from types import SimpleNamespace
from unittest.mock import patch

from app.shared.core.error_governance import handle_exception
from app.shared.core.exceptions import (
    CacheIncompleteError,
    ConfigurationError,
    UpstreamFetchError,
)


def _request(path: str = "/metrics/progressive") -> SimpleNamespace:
    return SimpleNamespace(url=SimpleNamespace(path=path), method="POST")


def _settings(production: bool) -> SimpleNamespace:
    return SimpleNamespace(is_production=production)


def _body(response) -> dict:
    return json.loads(response.body)


def test_configuration_error_maps_to_its_status_code():
    exc = ConfigurationError("bad phase", code="invalid_phase", status_code=400)
    with patch(
        "app.shared.core.error_governance.get_settings", return_value=_settings(False)
    ):
        response = handle_exception(_request(), exc, error_id="err-1")

    assert response.status_code == 400
    body = _body(response)
    assert set(body) == {"error"}
    assert set(body["error"]) == {"message", "code", "id", "details"}
    assert body["error"]["code"] == "invalid_phase"
    assert body["error"]["message"] == "bad phase"
    assert body["error"]["id"] == "err-1"


def test_cache_incomplete_keeps_details_in_production():
    exc = CacheIncompleteError(["r2Storage", "botManagement"], key="hot:a")
    with patch(
        "app.shared.core.error_governance.get_settings", return_value=_settings(True)
    ):
        response = handle_exception(_request(), exc)

    assert response.status_code == 409
    assert _body(response)["error"]["details"]["missing_skus"] == [
        "botManagement",
        "r2Storage",
    ]


def test_upstream_error_is_sanitized_in_production():
    exc = UpstreamFetchError("token rejected for acc-1", account_id="acc-1")
    with patch(
        "app.shared.core.error_governance.get_settings", return_value=_settings(True)
    ):
        response = handle_exception(_request(), exc)

    body = _body(response)
    assert response.status_code == 502
    assert "acc-1" not in body["error"]["message"]
    assert body["error"]["details"] is None


def test_unexpected_exception_becomes_internal_error():
    with patch(
        "app.shared.core.error_governance.get_settings", return_value=_settings(False)
    ):
        response = handle_exception(_request(), KeyError("secret"))

    body = _body(response)
    assert response.status_code == 500
    assert body["error"]["code"] == "internal_error"
    assert "secret" not in body["error"]["message"]


def test_value_error_maps_to_bad_request():
    with patch(
        "app.shared.core.error_governance.get_settings", return_value=_settings(False)
    ):
        response = handle_exception(_request(), ValueError("Unknown SKU ids: foo"))

    assert response.status_code == 400
    assert _body(response)["error"]["code"] == "value_error"
