# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/sqlconverge/transport/ssh.py

from __future__ import annotations

import logging
import socket
import uuid
from typing import Callable, Optional

import paramiko

from ..config.models import Credential, TargetNode
from ..errors import UnreachableNode
from ..utils.retry import RetryError, retry
from .powershell import encode_command
from .session import CommandResult

log = logging.getLogger("sqlconverge")

# Windows caps a command line at 32767 characters; larger scripts go over SFTP.
MAX_ENCODED_SCRIPT = 8000
REMOTE_TEMP = "C:/Windows/Temp"

_CONNECTION_ERRORS = (paramiko.SSHException, socket.error, EOFError)


class SshPowerShellSession:
    """
    One SSH connection to a Windows node (OpenSSH server), running
    Windows PowerShell non-interactively.
    """

    def __init__(
        self,
        node: TargetNode,
        client: paramiko.SSHClient,
        *,
        shell: str = "powershell.exe",
        timeout: Optional[float] = None,
    ):
        self.node = node
        self.client = client
        self.shell = shell
        self.timeout = timeout

    def run(self, script: str, *, timeout: Optional[float] = None) -> CommandResult:
        try:
            if len(script) > MAX_ENCODED_SCRIPT:
                return self._run_file(script, timeout=timeout)
            cmd = f"{self.shell} -NoProfile -NonInteractive -EncodedCommand {encode_command(script)}"
            return self._exec(cmd, timeout=timeout)
        except _CONNECTION_ERRORS as exc:
            raise UnreachableNode(f"{self.node.name}: {exc}") from exc

    def _exec(self, cmd: str, *, timeout: Optional[float]) -> CommandResult:
        stdin, stdout, stderr = self.client.exec_command(cmd, timeout=timeout or self.timeout)
        out = stdout.read().decode("utf-8", "replace")
        err = stderr.read().decode("utf-8", "replace")
        rc = stdout.channel.recv_exit_status()
        log.debug("[%s] exit %s", self.node.name, rc)
        if err.strip():
            log.debug("[%s][stderr] %s", self.node.name, err.rstrip())
        return CommandResult(rc=rc, stdout=out, stderr=err)

    def _run_file(self, script: str, *, timeout: Optional[float]) -> CommandResult:
        remote = f"{REMOTE_TEMP}/sqlconverge-{uuid.uuid4().hex}.ps1"
        self.put_text(script, "/" + remote)
        try:
            cmd = f"{self.shell} -NoProfile -NonInteractive -ExecutionPolicy Bypass -File {remote}"
            return self._exec(cmd, timeout=timeout)
        finally:
            self._remove("/" + remote)

    def put_text(self, content: str, remote_path: str) -> None:
        sftp = self.client.open_sftp()
        try:
            with sftp.open(remote_path, "w") as f:
                # BOM so Windows PowerShell reads the file as UTF-8
                f.write("\ufeff" + content)
        finally:
            sftp.close()

    def _remove(self, remote_path: str) -> None:
        sftp = self.client.open_sftp()
        try:
            sftp.remove(remote_path)
        except IOError as exc:
            log.debug("[%s] could not remove %s: %s", self.node.name, remote_path, exc)
        finally:
            sftp.close()

    def close(self) -> None:
        self.client.close()


class SshPowerShellTransport:
    def __init__(
        self,
        *,
        connect_timeout: float = 20.0,
        command_timeout: Optional[float] = 3600.0,
        connect_retries: int = 3,
        connect_delay: float = 5.0,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
    ):
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self.connect_retries = connect_retries
        self.connect_delay = connect_delay
        self.client_factory = client_factory

    def open_session(self, node: TargetNode, credential: Optional[Credential]) -> SshPowerShellSession:
        if credential is None:
            raise UnreachableNode(f"{node.name}: no credential supplied")

        def _on_retry(attempt: int, exc: Exception) -> None:
            log.warning("connect to %s failed (attempt %d/%d): %s", node.host, attempt, self.connect_retries, exc)

        @retry(
            retries=self.connect_retries,
            delay=self.connect_delay,
            retry_on=_CONNECTION_ERRORS,
            on_retry=_on_retry,
        )
        def _connect() -> paramiko.SSHClient:
            return self._connect(node, credential)

        try:
            client = _connect()
        except RetryError as exc:
            raise UnreachableNode(f"{node.name} ({node.host}:{node.port}): {exc.__cause__}") from exc

        log.info("session opened to %s (%s)", node.name, node.host)
        return SshPowerShellSession(node, client, timeout=self.command_timeout)

    def _connect(self, node: TargetNode, credential: Credential) -> paramiko.SSHClient:
        client = self.client_factory()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        pkey = None
        if credential.key_path:
            pkey = _load_key(str(credential.key_path))

        client.connect(
            hostname=node.host,
            port=node.port,
            username=credential.username,
            password=credential.password if not pkey else None,
            pkey=pkey,
            timeout=self.connect_timeout,
            allow_agent=pkey is None and credential.password is None,
            look_for_keys=pkey is None and credential.password is None,
        )
        return client


def _load_key(path: str) -> paramiko.PKey:
    try:
        # Try RSA first
        return paramiko.RSAKey.from_private_key_file(path)
    except paramiko.ssh_exception.SSHException:
        try:
            return paramiko.Ed25519Key.from_private_key_file(path)
        except paramiko.ssh_exception.SSHException:
            # ECDSA as last fallback
            return paramiko.ECDSAKey.from_private_key_file(path)
