"""Exchange mailbox management through Windows PowerShell."""
from __future__ import annotations

import logging
import os
import subprocess
from typing import List, Optional

from .config import ExchangeConfig

logger = logging.getLogger(__name__)

_SUCCESS_MARKER = "SUCCESS"


class ExchangeCommandError(RuntimeError):
    """Raised when an Exchange PowerShell command fails or times out."""


def _ps_quote(value: str) -> str:
    return "'" + str(value).replace("'", "''") + "'"


class ExchangeShell:
    """Runs Exchange cmdlets against Exchange Online or an on-premises server."""

    def __init__(self, config: ExchangeConfig) -> None:
        self.config = config

    def _connect_block(self) -> str:
        if self.config.mode == "onprem":
            return (
                "$session = New-PSSession -ConfigurationName Microsoft.Exchange "
                f"-ConnectionUri {_ps_quote(self.config.server_uri or '')} "
                "-Authentication Kerberos -ErrorAction Stop\n"
                "    Import-PSSession $session -DisableNameChecking -AllowClobber | Out-Null"
            )
        return (
            "Import-Module ExchangeOnlineManagement -ErrorAction Stop\n"
            f"    Connect-ExchangeOnline -AppId {_ps_quote(self.config.app_id or '')} "
            f"-CertificateThumbprint {_ps_quote(self.config.cert_thumbprint or '')} "
            f"-Organization {_ps_quote(self.config.organization or '')} "
            "-ShowBanner:$false -ErrorAction Stop"
        )

    def _disconnect_block(self) -> str:
        if self.config.mode == "onprem":
            return "if ($session) { Remove-PSSession $session -ErrorAction SilentlyContinue }"
        return "Disconnect-ExchangeOnline -Confirm:$false -ErrorAction SilentlyContinue"

    def build_script(self, commands: List[str]) -> str:
        body = "\n    ".join(commands)
        return f"""$env:PSModulePath = [System.Environment]::GetEnvironmentVariable('PSModulePath', 'Machine')
$ErrorActionPreference = 'Stop'
try {{
    {self._connect_block()}

    {body}

    Write-Output '{_SUCCESS_MARKER}'
}} catch {{
    Write-Error $_.Exception.Message
    exit 1
}} finally {{
    try {{ {self._disconnect_block()} }} catch {{}}
}}"""

    def run(self, commands: List[str], timeout: Optional[int] = None) -> str:
        if not self.config.is_configured:
            raise ExchangeCommandError("Exchange management is not configured.")

        env = os.environ.copy()
        env.pop("PSModulePath", None)
        effective_timeout = timeout or self.config.timeout
        try:
            result = subprocess.run(
                [self.config.powershell_path, "-NoProfile", "-NonInteractive", "-Command", self.build_script(commands)],
                capture_output=True,
                text=True,
                timeout=effective_timeout,
                env=env,
            )
        except FileNotFoundError as exc:
            raise ExchangeCommandError(f"PowerShell not found at {self.config.powershell_path}.") from exc
        except subprocess.TimeoutExpired as exc:
            raise ExchangeCommandError(f"Exchange command timed out after {effective_timeout}s.") from exc

        if result.returncode != 0 or _SUCCESS_MARKER not in result.stdout:
            error_msg = result.stderr.strip() or result.stdout.strip() or "Unknown error"
            raise ExchangeCommandError(f"Exchange command failed: {error_msg}")
        return result.stdout

    def convert_to_shared(self, identity: str, forward_to: Optional[str] = None) -> None:
        """Convert a mailbox to shared, hide it from the GAL and optionally forward it."""
        quoted = _ps_quote(identity)
        commands = [
            f"Set-Mailbox -Identity {quoted} -Type Shared -ErrorAction Stop",
            f"Set-Mailbox -Identity {quoted} -HiddenFromAddressListsEnabled $true -ErrorAction Stop",
        ]
        if forward_to:
            commands.append(
                f"Set-Mailbox -Identity {quoted} -ForwardingAddress {_ps_quote(forward_to)} "
                "-DeliverToMailboxAndForward $false -ErrorAction Stop"
            )
        self.run(commands)
        logger.info("Converted mailbox %s to shared (forwarding=%s).", identity, forward_to or "none")

    def enable_litigation_hold(self, identity: str) -> None:
        self.run([f"Set-Mailbox -Identity {_ps_quote(identity)} -LitigationHoldEnabled $true -ErrorAction Stop"])
        logger.info("Enabled litigation hold on mailbox %s.", identity)


__all__ = ["ExchangeCommandError", "ExchangeShell"]
