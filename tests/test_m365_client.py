from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
import requests

from offboard_scheduler.config import M365Config
from offboard_scheduler.m365_client import (
    M365Client,
    M365ClientError,
    M365ConfigurationError,
    M365GraphError,
)


def _response(status_code=200, payload=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.content = b"{}" if payload is not None else b""
    response.text = text
    response.json.return_value = payload if payload is not None else {}
    return response


@pytest.fixture
def session():
    return MagicMock(spec=requests.Session)


@pytest.fixture
def client(session):
    with patch("offboard_scheduler.m365_client.msal.ConfidentialClientApplication") as app_cls:
        app_cls.return_value.acquire_token_silent.return_value = None
        app_cls.return_value.acquire_token_for_client.return_value = {"access_token": "token-123"}
        yield M365Client(M365Config(tenant_id="t", client_id="c", client_secret="s"), session=session)


def test_requires_credentials():
    with pytest.raises(M365ConfigurationError):
        M365Client(M365Config())


def test_disable_account_patches_user(client, session):
    session.request.return_value = _response(204)

    client.disable_account("user-1")

    method, url = session.request.call_args.args
    assert (method, url) == ("PATCH", "https://graph.microsoft.com/v1.0/users/user-1")
    assert session.request.call_args.kwargs["json"] == {"accountEnabled": False}
    assert session.request.call_args.kwargs["headers"]["Authorization"] == "Bearer token-123"


def test_graph_error_carries_status_and_code(client, session):
    session.request.return_value = _response(
        404, {"error": {"code": "Request_ResourceNotFound", "message": "Resource 'user-1' does not exist."}}
    )

    with pytest.raises(M365GraphError) as excinfo:
        client.get_user("user-1")

    assert excinfo.value.status_code == 404
    assert excinfo.value.error == "Request_ResourceNotFound"
    assert excinfo.value.description == "Resource 'user-1' does not exist."


def test_transport_errors_are_wrapped(client, session):
    session.request.side_effect = requests.ConnectionError("connection reset")

    with pytest.raises(M365ClientError, match="connection reset"):
        client.revoke_sign_in_sessions("user-1")


def test_group_listing_follows_next_link(client, session):
    next_link = "https://graph.microsoft.com/v1.0/users/user-1/memberOf/microsoft.graph.group?$skiptoken=abc"
    session.request.side_effect = [
        _response(200, {"value": [{"id": "g1"}], "@odata.nextLink": next_link}),
        _response(200, {"value": [{"id": "g2"}, {"displayName": "no id"}]}),
    ]

    groups = client.get_user_groups("user-1")

    assert [group["id"] for group in groups] == ["g1", "g2"]
    assert session.request.call_args_list[1].args == ("GET", next_link)


def test_send_mail_payload(client, session):
    session.request.return_value = _response(202)

    client.send_mail("it@contoso.com", ["boss@contoso.com"], "[Offboarding] Jane Doe", "Body")

    method, url = session.request.call_args.args
    message = session.request.call_args.kwargs["json"]["message"]
    assert (method, url) == ("POST", "https://graph.microsoft.com/v1.0/users/it@contoso.com/sendMail")
    assert message["toRecipients"] == [{"emailAddress": {"address": "boss@contoso.com"}}]
    assert message["subject"] == "[Offboarding] Jane Doe"


def test_token_failure(client, session):
    client._app.acquire_token_for_client.return_value = {"error": "invalid_client", "error_description": "Bad secret"}

    with pytest.raises(M365GraphError, match="Bad secret"):
        client.disable_account("user-1")
    session.request.assert_not_called()
