"""Microsoft 365 Graph helper utilities."""
from __future__ import annotations

import threading
from typing import Any, Dict, Iterable, List, Optional

import msal
import requests

from .config import M365Config


GRAPH_SCOPE = ["https://graph.microsoft.com/.default"]
GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
REQUEST_TIMEOUT = 30


class M365ClientError(RuntimeError):
    """Base exception for Microsoft 365 client operations."""


class M365ConfigurationError(M365ClientError):
    """Raised when the Microsoft 365 integration is not configured."""


class M365GraphError(M365ClientError):
    """Raised when the Microsoft Graph API returns an error."""

    def __init__(self, status_code: int, error: str, description: str) -> None:
        super().__init__(f"{status_code}: {error} - {description}")
        self.status_code = status_code
        self.error = error
        self.description = description


class M365Client:
    """Lightweight Microsoft Graph client for offboarding operations."""

    def __init__(self, config: M365Config, session: Optional[requests.Session] = None) -> None:
        if not config.has_credentials:
            raise M365ConfigurationError(
                "Microsoft 365 credentials are not configured. "
                "Provide tenant_id, client_id, and client_secret."
            )

        self._config = config
        self._authority = f"https://login.microsoftonline.com/{config.tenant_id}"
        self._app = msal.ConfidentialClientApplication(
            client_id=config.client_id,
            client_credential=config.client_secret,
            authority=self._authority,
        )
        self._token_lock = threading.Lock()
        self._session = session or requests.Session()

    # ------------------------------------------------------------------ #
    # Token handling / HTTP helpers                                      #
    # ------------------------------------------------------------------ #
    def _acquire_token(self) -> str:
        with self._token_lock:
            result = self._app.acquire_token_silent(GRAPH_SCOPE, account=None)
            if not result:
                result = self._app.acquire_token_for_client(scopes=GRAPH_SCOPE)

        if "access_token" not in result:
            raise M365GraphError(
                status_code=0,
                error=result.get("error", "token_error"),
                description=result.get("error_description", "Unable to acquire Graph token."),
            )
        return str(result["access_token"])

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        url = path if path.startswith("https://") else GRAPH_BASE_URL + path
        headers = kwargs.pop("headers", {}) or {}
        headers.setdefault("Authorization", f"Bearer {self._acquire_token()}")
        headers.setdefault("Accept", "application/json")
        if "json" in kwargs:
            headers.setdefault("Content-Type", "application/json")

        try:
            response = self._session.request(
                method,
                url,
                timeout=REQUEST_TIMEOUT,
                headers=headers,
                **kwargs,
            )
        except requests.RequestException as exc:
            raise M365ClientError(f"Graph request {method} {path} failed: {exc}") from exc

        if response.status_code in (202, 204):
            return {}

        if response.status_code >= 400:
            try:
                payload = response.json()
                error = payload.get("error", {})
                code = error.get("code", "GraphError")
                message = error.get("message", response.text)
            except ValueError:
                code = "GraphError"
                message = response.text or "Unknown Graph error."
            raise M365GraphError(response.status_code, code, message)

        if not response.content:
            return {}
        return response.json()

    def _paged(self, path: str, params: Optional[Dict[str, str]] = None) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        result = self._request("GET", path, params=params)
        items.extend(result.get("value", []))
        next_link = result.get("@odata.nextLink")
        while next_link:
            result = self._request("GET", next_link)
            items.extend(result.get("value", []))
            next_link = result.get("@odata.nextLink")
        return items

    # ------------------------------------------------------------------ #
    # User helpers                                                       #
    # ------------------------------------------------------------------ #
    def get_user(self, user_id: str, select: Optional[str] = None) -> Dict[str, Any]:
        params = {"$select": select} if select else None
        return self._request("GET", f"/users/{user_id}", params=params)

    def disable_account(self, user_id: str) -> None:
        self._request("PATCH", f"/users/{user_id}", json={"accountEnabled": False})

    def revoke_sign_in_sessions(self, user_id: str) -> None:
        self._request("POST", f"/users/{user_id}/revokeSignInSessions")

    # ------------------------------------------------------------------ #
    # Group helpers                                                      #
    # ------------------------------------------------------------------ #
    def get_user_groups(self, user_id: str) -> List[Dict[str, Any]]:
        """Groups the user is a direct member of, with the fields removal decisions need."""
        entries = self._paged(
            f"/users/{user_id}/memberOf/microsoft.graph.group",
            params={"$select": "id,displayName,onPremisesSyncEnabled,groupTypes,membershipRule"},
        )
        return [entry for entry in entries if entry.get("id")]

    def remove_user_from_group(self, user_id: str, group_id: str) -> None:
        self._request("DELETE", f"/groups/{group_id}/members/{user_id}/$ref")

    # ------------------------------------------------------------------ #
    # Device helpers                                                     #
    # ------------------------------------------------------------------ #
    def list_managed_devices(self, user_id: str) -> List[Dict[str, Any]]:
        return self._paged(
            f"/users/{user_id}/managedDevices",
            params={"$select": "id,deviceName,operatingSystem"},
        )

    def retire_managed_device(self, device_id: str) -> None:
        self._request("POST", f"/deviceManagement/managedDevices/{device_id}/retire")

    # ------------------------------------------------------------------ #
    # Mail                                                               #
    # ------------------------------------------------------------------ #
    def send_mail(self, sender: str, recipients: Iterable[str], subject: str, body: str) -> None:
        payload = {
            "message": {
                "subject": subject,
                "body": {"contentType": "Text", "content": body},
                "toRecipients": [{"emailAddress": {"address": address}} for address in recipients],
            },
            "saveToSentItems": False,
        }
        self._request("POST", f"/users/{sender}/sendMail", json=payload)


__all__ = [
    "M365Client",
    "M365ClientError",
    "M365ConfigurationError",
    "M365GraphError",
]
