from unittest.mock import MagicMock

import pytest

ENVIRONMENT_ID = "11111111-2222-3333-4444-555555555555"
CLIENT_ID = "aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee"
CLIENT_SECRET = "super-secret-value"


def make_response(status_code, payload=None, text=None, headers=None):
    response = MagicMock()
    response.status_code = status_code
    if payload is None:
        response.json.side_effect = ValueError("No JSON")
    else:
        response.json.return_value = payload
    response.text = text if text is not None else str(payload or "")
    response.headers = headers or {}
    return response


@pytest.fixture
def response_factory():
    return make_response


@pytest.fixture
def credentials():
    return {
        "environmentId": ENVIRONMENT_ID,
        "clientId": CLIENT_ID,
        "clientSecret": CLIENT_SECRET,
        "clientType": "basic",
    }


@pytest.fixture
def token_response():
    return make_response(200, {"access_token": "token-1", "expires_in": 3600, "token_type": "Bearer"})
