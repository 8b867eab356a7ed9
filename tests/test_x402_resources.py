# tests/test_x402_resources.py
"""
Tests for fetching protected resources from the content service.
"""
import json
import pytest
from unittest.mock import patch, MagicMock

from requests.exceptions import HTTPError, Timeout

from app.x402.resources import HttpResourceLookup, ResourceLookupError


def http_response(payload, status_code=200):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload
    if status_code >= 400:
        response.raise_for_status.side_effect = HTTPError(f"{status_code} error")
    return response


class TestHttpResourceLookup:
    """Test the content service client."""

    @patch("app.x402.resources.requests.get")
    def test_lookup(self, mock_get):
        mock_get.return_value = http_response({
            "title": "Paid post",
            "content": "secret",
            "walletAddress": "PAY1",
            "paymentAmount": 0.05,
            "tags": ["a"],
        })
        lookup = HttpResourceLookup(base_url="https://content.example.com/api/", timeout=2)

        resource = lookup.lookup("post-1")

        assert resource.id == "post-1"
        assert resource.paymentAmount == "0.05"
        assert resource.is_protected is True
        assert resource.full()["tags"] == ["a"]
        args, kwargs = mock_get.call_args
        assert args[0] == "https://content.example.com/api/posts"
        assert kwargs["params"] == {"uuid": "post-1"}
        assert kwargs["timeout"] == 2

    @patch("app.x402.resources.requests.get")
    def test_not_found(self, mock_get):
        mock_get.return_value = http_response({}, status_code=404)

        assert HttpResourceLookup(base_url="https://content.example.com").lookup("nope") is None

    @patch("app.x402.resources.requests.get")
    def test_server_error_propagates(self, mock_get):
        mock_get.return_value = http_response({}, status_code=500)

        with pytest.raises(HTTPError):
            HttpResourceLookup(base_url="https://content.example.com").lookup("post-1")

    @patch("app.x402.resources.requests.get")
    def test_timeout_propagates(self, mock_get):
        mock_get.side_effect = Timeout("timed out")

        with pytest.raises(Timeout):
            HttpResourceLookup(base_url="https://content.example.com").lookup("post-1")

    @patch("app.x402.resources.requests.get")
    def test_not_an_object(self, mock_get):
        mock_get.return_value = http_response([{"title": "list"}])

        with pytest.raises(ResourceLookupError):
            HttpResourceLookup(base_url="https://content.example.com").lookup("post-1")

    @patch("app.x402.resources.requests.get")
    def test_invalid_json(self, mock_get):
        response = http_response(None)
        response.json.side_effect = json.JSONDecodeError("Expecting value", "", 0)
        mock_get.return_value = response

        with pytest.raises(ResourceLookupError):
            HttpResourceLookup(base_url="https://content.example.com").lookup("post-1")

    @patch("app.x402.resources.settings")
    @patch("app.x402.resources.requests.get")
    def test_not_configured(self, mock_get, mock_settings):
        mock_settings.RESOURCE_API_URL = None

        assert HttpResourceLookup().lookup("post-1") is None
        mock_get.assert_not_called()
