"""Collaborator contracts used by the executor, with Graph/AD/Exchange implementations."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol

from .ad_client import ADClient
from .config import AppConfig, LDAPConfig, NotificationConfig
from .errors import StepExecutionError, UnrecoverableError
from .exchange import ExchangeShell
from .m365_client import M365Client, M365ConfigurationError, M365GraphError
from .models import Scope, Subject

logger = logging.getLogger(__name__)


class DirectoryAdapter(Protocol):
    def ensure_subject(self, subject: Subject) -> None: ...

    def disable_account(self, subject: Subject) -> str: ...

    def revoke_sessions(self, subject: Subject) -> str: ...

    def remove_from_all_groups(self, subject: Subject) -> str: ...

    def remove_devices(self, subject: Subject) -> str: ...


class MailboxAdapter(Protocol):
    def convert_to_shared_mailbox(self, subject: Subject, forward_to: Optional[str] = None) -> str: ...

    def backup_mailbox_data(self, subject: Subject) -> str: ...


class NotificationAdapter(Protocol):
    def notify(self, recipient: str, context: Dict[str, Any]) -> str: ...


@dataclass
class Adapters:
    directory: DirectoryAdapter
    mailbox: MailboxAdapter
    notifier: NotificationAdapter


AdapterFactory = Callable[[Scope], Adapters]


class UnconfiguredAdapter:
    """Stands in for a collaborator whose settings are missing; every call fails."""

    def __init__(self, reason: str) -> None:
        self.reason = reason

    def ensure_subject(self, subject: Subject) -> None:
        raise UnrecoverableError(self.reason)

    def _fail(self, *args: Any, **kwargs: Any) -> str:
        raise StepExecutionError(self.reason)

    disable_account = _fail
    revoke_sessions = _fail
    remove_from_all_groups = _fail
    remove_devices = _fail
    convert_to_shared_mailbox = _fail
    backup_mailbox_data = _fail
    notify = _fail


class GraphDirectoryAdapter:
    """Cloud identity operations through Microsoft Graph."""

    def __init__(self, client: M365Client) -> None:
        self.client = client

    def ensure_subject(self, subject: Subject) -> None:
        try:
            self.client.get_user(subject.user_id, select="id")
        except M365GraphError as exc:
            if exc.status_code == 404:
                raise UnrecoverableError(f"User {subject.lookup} no longer exists in Microsoft 365.") from exc
            raise

    def disable_account(self, subject: Subject) -> str:
        self.client.disable_account(subject.user_id)
        return "Account disabled"

    def revoke_sessions(self, subject: Subject) -> str:
        self.client.revoke_sign_in_sessions(subject.user_id)
        return "User sessions revoked"

    def remove_from_all_groups(self, subject: Subject) -> str:
        groups = self.client.get_user_groups(subject.user_id)
        removed = 0
        skipped: List[str] = []
        failures: List[str] = []
        for group in groups:
            name = group.get("displayName") or group["id"]
            if group.get("onPremisesSyncEnabled"):
                skipped.append(name)
                logger.info("Skipping on-premises synced group %s for %s.", name, subject.lookup)
                continue
            if group.get("membershipRule") or "DynamicMembership" in (group.get("groupTypes") or []):
                skipped.append(name)
                logger.info("Skipping dynamic group %s for %s.", name, subject.lookup)
                continue
            try:
                self.client.remove_user_from_group(subject.user_id, group["id"])
                removed += 1
            except M365GraphError as exc:
                logger.error("Failed to remove %s from group %s: %s", subject.lookup, name, exc)
                failures.append(f"{name}: {exc.description}")
        if failures:
            raise StepExecutionError(
                f"Removed from {removed} of {len(groups)} groups; failed: {'; '.join(failures)}"
            )
        message = f"Removed from {removed} groups"
        if skipped:
            message += f" (skipped {len(skipped)} synced or dynamic)"
        return message

    def remove_devices(self, subject: Subject) -> str:
        devices = self.client.list_managed_devices(subject.user_id)
        for device in devices:
            self.client.retire_managed_device(device["id"])
            logger.info("Retired device %s for %s.", device.get("deviceName") or device["id"], subject.lookup)
        return f"Retired {len(devices)} managed devices"


class HybridDirectoryAdapter:
    """Disables and strips groups in on-premises AD; cloud-only operations go to Graph."""

    def __init__(self, graph: GraphDirectoryAdapter, ldap: LDAPConfig) -> None:
        self.graph = graph
        self.ldap = ldap

    def ensure_subject(self, subject: Subject) -> None:
        self.graph.ensure_subject(subject)

    def _user_dn(self, client: ADClient, subject: Subject) -> str:
        user_dn = client.find_user_dn(subject.lookup)
        if not user_dn:
            raise StepExecutionError(f"User {subject.lookup} not found in Active Directory.")
        return user_dn

    def disable_account(self, subject: Subject) -> str:
        with ADClient(self.ldap) as client:
            user_dn = self._user_dn(client, subject)
            client.disable_account(user_dn)
        return f"Account disabled in Active Directory ({user_dn})"

    def revoke_sessions(self, subject: Subject) -> str:
        return self.graph.revoke_sessions(subject)

    def remove_from_all_groups(self, subject: Subject) -> str:
        with ADClient(self.ldap) as client:
            user_dn = self._user_dn(client, subject)
            groups = client.get_user_groups(user_dn)
            client.remove_user_from_groups(user_dn, groups)
        cloud = self.graph.remove_from_all_groups(subject)
        return f"Removed from {len(groups)} Active Directory groups; {cloud}"

    def remove_devices(self, subject: Subject) -> str:
        return self.graph.remove_devices(subject)


class ExchangeMailboxAdapter:
    def __init__(self, shell: ExchangeShell) -> None:
        self.shell = shell

    def convert_to_shared_mailbox(self, subject: Subject, forward_to: Optional[str] = None) -> str:
        self.shell.convert_to_shared(subject.lookup, forward_to=forward_to)
        if forward_to:
            return f"Mailbox converted to shared and forwarded to {forward_to}"
        return "Mailbox converted to shared"

    def backup_mailbox_data(self, subject: Subject) -> str:
        self.shell.enable_litigation_hold(subject.lookup)
        return "Litigation hold enabled; mailbox data preserved"


class GraphNotificationAdapter:
    """Sends offboarding notices from a service mailbox through Graph ``sendMail``."""

    def __init__(self, client: M365Client, config: NotificationConfig) -> None:
        self.client = client
        self.config = config

    def notify(self, recipient: str, context: Dict[str, Any]) -> str:
        if not self.config.sender:
            raise StepExecutionError("Notification sender mailbox is not configured.")
        subject = f"{self.config.subject_prefix} {context.get('display_name') or context.get('user')}".strip()
        self.client.send_mail(self.config.sender, [recipient], subject, render_notification(context))
        return f"Notification sent to {recipient}"


def render_notification(context: Dict[str, Any]) -> str:
    lines = [
        f"Offboarding for {context.get('display_name') or context.get('user')} "
        f"was executed on {context.get('executed_at')}.",
        "",
    ]
    for result in context.get("results") or []:
        lines.append(f"- {result['action']}: {result['status']} ({result['message']})")
    if context.get("custom_message"):
        lines.extend(["", str(context["custom_message"])])
    return "\n".join(lines)


def build_adapters(config: AppConfig) -> Adapters:
    """Assemble adapters for the configured platforms."""

    client: Optional[M365Client] = None
    missing_graph = ""
    try:
        client = M365Client(config.m365)
    except M365ConfigurationError as exc:
        missing_graph = str(exc)

    if client is None:
        directory: DirectoryAdapter = UnconfiguredAdapter(missing_graph)
        notifier: NotificationAdapter = UnconfiguredAdapter(missing_graph)
    else:
        graph = GraphDirectoryAdapter(client)
        directory = HybridDirectoryAdapter(graph, config.ldap) if config.ldap else graph
        if config.notification.enabled:
            notifier = GraphNotificationAdapter(client, config.notification)
        else:
            notifier = UnconfiguredAdapter("Notifications are disabled.")

    if config.exchange.is_configured:
        mailbox: MailboxAdapter = ExchangeMailboxAdapter(ExchangeShell(config.exchange))
    else:
        mailbox = UnconfiguredAdapter("Exchange management is not configured.")

    return Adapters(directory=directory, mailbox=mailbox, notifier=notifier)


__all__ = [
    "AdapterFactory",
    "Adapters",
    "DirectoryAdapter",
    "ExchangeMailboxAdapter",
    "GraphDirectoryAdapter",
    "GraphNotificationAdapter",
    "HybridDirectoryAdapter",
    "MailboxAdapter",
    "NotificationAdapter",
    "UnconfiguredAdapter",
    "build_adapters",
    "render_notification",
]
