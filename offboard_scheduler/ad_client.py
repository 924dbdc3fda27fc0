"""Active Directory helper client based on ldap3."""
from __future__ import annotations

import contextlib
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

import yaml
from ldap3 import ALL, BASE, MODIFY_REPLACE, SUBTREE, Connection, Server
from ldap3.core.exceptions import LDAPException

from .config import LDAPConfig

ACCOUNTDISABLE = 0x0002
NORMAL_ACCOUNT = 0x0200


class ADClientError(RuntimeError):
    """Raised when Active Directory rejects or cannot serve a request."""


class MockDirectory:
    """Lightweight directory emulator used when ldap3 connectivity isn't available."""

    def __init__(self, data_file: Optional[Path]):
        self.data_file = data_file
        self._data: Dict[str, Any] = {"users": [], "groups": []}
        self._load()

    def _load(self) -> None:
        if self.data_file and self.data_file.exists():
            with self.data_file.open("r", encoding="utf-8") as handle:
                self._data = yaml.safe_load(handle) or self._data
        self._data.setdefault("users", [])
        self._data.setdefault("groups", [])

    def _save(self) -> None:
        if not self.data_file:
            return
        self.data_file.parent.mkdir(parents=True, exist_ok=True)
        with self.data_file.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(self._data, handle, sort_keys=False, indent=2)

    def _user(self, distinguished_name: str) -> Optional[Dict[str, Any]]:
        return next(
            (user for user in self._data["users"] if user.get("distinguished_name") == distinguished_name),
            None,
        )

    def find_user_dn(self, principal: str) -> Optional[str]:
        lowered = principal.lower()
        for user in self._data["users"]:
            attrs = user.get("attributes", {})
            candidates = (attrs.get("userPrincipalName"), attrs.get("mail"), attrs.get("sAMAccountName"))
            if any(str(value or "").lower() == lowered for value in candidates):
                return user.get("distinguished_name")
        return None

    def disable_account(self, distinguished_name: str) -> bool:
        user = self._user(distinguished_name)
        if not user:
            return False
        attrs = user.setdefault("attributes", {})
        attrs["userAccountControl"] = int(attrs.get("userAccountControl") or NORMAL_ACCOUNT) | ACCOUNTDISABLE
        self._save()
        return True

    def get_user_groups(self, distinguished_name: str) -> List[str]:
        user = self._user(distinguished_name)
        if not user:
            return []
        return [str(group) for group in user.get("attributes", {}).get("memberOf", []) or []]

    def remove_user_from_groups(self, distinguished_name: str, groups: Iterable[str]) -> None:
        user = self._user(distinguished_name)
        if not user:
            return
        attrs = user.setdefault("attributes", {})
        removing = set(groups)
        attrs["memberOf"] = [group for group in attrs.get("memberOf", []) or [] if group not in removing]
        self._save()


class ADClient:
    """Wrapper around ldap3 that exposes the AD operations offboarding needs."""

    def __init__(self, config: LDAPConfig):
        self.config = config
        self._mock_directory: Optional[MockDirectory] = None
        self.connection: Optional[Connection] = None

        if config.server_uri.startswith("mock://"):
            self._mock_directory = MockDirectory(config.mock_data_file)
            return
        try:
            self.server = Server(config.server_uri, use_ssl=config.use_ssl, get_info=ALL)
            self.connection = Connection(
                self.server,
                user=config.user_dn,
                password=config.password,
                auto_bind=True,
            )
        except LDAPException as exc:
            raise ADClientError(f"Unable to bind to {config.server_uri}: {exc}") from exc

    def close(self) -> None:
        if self.connection and self.connection.bound:
            self.connection.unbind()

    def __enter__(self) -> "ADClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        self.close()

    def find_user_dn(self, principal: str) -> Optional[str]:
        """Resolve a UPN, mail address or sAMAccountName to a distinguished name."""
        cleaned = (principal or "").strip()
        if not cleaned:
            return None
        if self._mock_directory:
            return self._mock_directory.find_user_dn(cleaned)

        assert self.connection is not None
        escaped = self._escape_filter_value(cleaned)
        sam = self._escape_filter_value(cleaned.split("@", 1)[0])
        self.connection.search(
            search_base=self.config.base_dn,
            search_filter=(
                "(&(objectClass=user)"
                f"(|(userPrincipalName={escaped})(mail={escaped})(sAMAccountName={sam})))"
            ),
            search_scope=SUBTREE,
            attributes=["distinguishedName"],
            size_limit=2,
        )
        entries = self.connection.entries or []
        return str(entries[0].entry_dn) if entries else None

    def disable_account(self, user_dn: str) -> None:
        if self._mock_directory:
            if not self._mock_directory.disable_account(user_dn):
                raise ADClientError(f"User {user_dn} not found in directory.")
            return

        assert self.connection is not None
        self.connection.search(
            search_base=user_dn,
            search_filter="(objectClass=user)",
            search_scope=BASE,
            attributes=["userAccountControl"],
        )
        if not self.connection.entries:
            raise ADClientError(f"User {user_dn} not found in directory.")
        current = int(self.connection.entries[0].userAccountControl.value or NORMAL_ACCOUNT)
        modified = self.connection.modify(
            user_dn, {"userAccountControl": [(MODIFY_REPLACE, [current | ACCOUNTDISABLE])]}
        )
        if not modified:
            raise ADClientError(self._describe_failure(f"Unable to disable {user_dn}"))

    def get_user_groups(self, user_dn: str) -> List[str]:
        if self._mock_directory:
            return self._mock_directory.get_user_groups(user_dn)

        assert self.connection is not None
        escaped_dn = self._escape_filter_value(user_dn)
        self.connection.search(
            search_base=self.config.base_dn,
            search_filter=f"(&(objectClass=group)(member={escaped_dn}))",
            search_scope=SUBTREE,
            attributes=["distinguishedName"],
            paged_size=500,
        )
        return [str(entry.entry_dn) for entry in self.connection.entries or []]

    def remove_user_from_groups(self, user_dn: str, groups: Iterable[str]) -> None:
        unique_groups = [group for group in dict.fromkeys(groups) if group]
        if not unique_groups:
            return
        if self._mock_directory:
            self._mock_directory.remove_user_from_groups(user_dn, unique_groups)
            return

        assert self.connection is not None
        removed = self.connection.extend.microsoft.remove_members_from_groups([user_dn], unique_groups)
        if not removed:
            raise ADClientError(self._describe_failure(f"Unable to remove {user_dn} from groups"))

    def _describe_failure(self, prefix: str) -> str:
        result = (self.connection.result if self.connection else None) or {}
        description = result.get("description", "Unknown error")
        message = result.get("message")
        return f"{prefix} ({description})." + (f" {message}" if message else "")

    @staticmethod
    def _escape_filter_value(value: str) -> str:
        replacements = {
            "\\": r"\5c",
            "*": r"\2a",
            "(": r"\28",
            ")": r"\29",
            "\0": r"\00",
        }
        return "".join(replacements.get(char, char) for char in value)


@contextlib.contextmanager
def ad_client(config: LDAPConfig) -> Iterator[ADClient]:
    client = ADClient(config)
    try:
        yield client
    finally:
        client.close()


__all__ = ["ADClient", "ADClientError", "MockDirectory", "ad_client"]
