"""Remote script execution.

Executors run a :class:`~kbootstrap.modules.scripts.ScriptCollection` against
one host, honouring each script's retry policy, and return the output of the
last step. A step that still fails after its last attempt raises
:class:`~kbootstrap.modules.errors.ScriptExecFailure`.
"""
import io
import logging
import socket
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Tuple

import paramiko

from ..config import BootstrapConfig
from .errors import ScriptExecFailure
from .scripts import Script, ScriptCollection
from .state import SSHInfo

logger = logging.getLogger("kbootstrap.executor")


class RemoteCommandError(Exception):
    """One attempt of a script failed on the remote host."""
    pass


class ScriptExecutor(ABC):
    """Runs script collections step by step with per-step retries.

    Args:
        config: Retry delays and SSH timeouts
        sleep: Function used to wait between attempts
    """

    def __init__(self, config: Optional[BootstrapConfig] = None, sleep: Callable[[float], None] = time.sleep):
        self.config = config or BootstrapConfig()
        self._sleep = sleep

    @abstractmethod
    def run_script(self, script: Script, host: str) -> str:
        """Run a single attempt of ``script`` on ``host`` and return its stdout.

        Raises:
            RemoteCommandError: If the attempt failed
        """

    def execute(self, collection: ScriptCollection, host: str) -> str:
        """Run every script of ``collection`` on ``host`` in order.

        Args:
            collection: Steps to run. It is frozen and cannot be extended afterwards.
            host: Address of the node

        Returns:
            str: stdout of the final step, or an empty string for an empty collection

        Raises:
            ScriptExecFailure: If a step fails on its last attempt. Later steps are not run.
        """
        scripts = collection.freeze()
        output = ""
        for script in scripts:
            output = self._run_with_retries(script, host)
        return output

    def _run_with_retries(self, script: Script, host: str) -> str:
        attempts = script.attempts
        delay = self.config.retry.delay
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            logger.debug(f"[{host}] Running '{script.name}' [attempt {attempt}/{attempts}]")
            try:
                output = self.run_script(script, host)
                logger.info(f"[{host}] ✅ {script.name}")
                return output
            except RemoteCommandError as e:
                last_error = e
                logger.warning(f"[{host}] ⚠️  '{script.name}' failed (attempt {attempt}/{attempts}): {e}")

            if attempt < attempts:
                logger.info(f"[{host}] ⏳ Retrying '{script.name}' in {delay:.1f} seconds...")
                self._sleep(delay)
                delay = min(delay * self.config.retry.backoff, self.config.retry.max_delay)

        logger.error(f"[{host}] ❌ '{script.name}' failed after {attempts} attempt(s)")
        raise ScriptExecFailure(script.name, attempts, host, reason=str(last_error) if last_error else "")

    def close(self) -> None:
        """Release any connections held by the executor."""
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def load_private_key(private_key: str) -> paramiko.PKey:
    """Parse an in-memory private key, trying RSA, Ed25519 and ECDSA in turn.

    Raises:
        RemoteCommandError: If the key cannot be parsed
    """
    for key_class in (paramiko.RSAKey, paramiko.Ed25519Key, paramiko.ECDSAKey):
        try:
            return key_class.from_private_key(io.StringIO(private_key))
        except (paramiko.SSHException, ValueError):
            continue
    raise RemoteCommandError("unsupported or malformed SSH private key")


class SSHScriptExecutor(ScriptExecutor):
    """Runs scripts over SSH with paramiko, one cached connection per host."""

    def __init__(
        self,
        ssh_info: SSHInfo,
        config: Optional[BootstrapConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__(config, sleep)
        self.ssh_info = ssh_info
        self._clients: Dict[str, paramiko.SSHClient] = {}
        self._lock = threading.Lock()
        self._pkey: Optional[paramiko.PKey] = None

    def _connect(self, host: str) -> paramiko.SSHClient:
        with self._lock:
            client = self._clients.get(host)
            if client is not None:
                transport = client.get_transport()
                if transport is not None and transport.is_active():
                    return client
                client.close()
                del self._clients[host]

            if self._pkey is None:
                self._pkey = load_private_key(self.ssh_info.private_key)

            timeout = self.config.ssh.connect_timeout
            client = paramiko.SSHClient()
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            try:
                client.connect(
                    host,
                    port=self.config.ssh.port,
                    username=self.ssh_info.username,
                    pkey=self._pkey,
                    timeout=timeout,
                    banner_timeout=timeout,
                    auth_timeout=timeout,
                )
            except (socket.timeout, OSError, paramiko.SSHException) as e:
                client.close()
                raise RemoteCommandError(f"SSH connection to {host} failed: {e}") from e
            self._clients[host] = client
            return client

    def _drop(self, host: str) -> None:
        with self._lock:
            client = self._clients.pop(host, None)
        if client is not None:
            client.close()

    def run_script(self, script: Script, host: str) -> str:
        client = self._connect(host)
        timeout = self.config.ssh.command_timeout
        start_time = time.time()
        try:
            stdin, stdout, stderr = client.exec_command(f"{script.executor.value} -s", timeout=timeout)
            stdin.write(script.shell_script)
            stdin.flush()
            stdin.channel.shutdown_write()

            channel = stdout.channel
            while not channel.exit_status_ready():
                if time.time() - start_time > timeout:
                    raise socket.timeout(f"Command timed out after {timeout} seconds")
                time.sleep(0.5)

            exit_status = channel.recv_exit_status()
            output = stdout.read().decode(errors='replace').strip()
            error = stderr.read().decode(errors='replace').strip()
        except (socket.timeout, OSError, paramiko.SSHException) as e:
            # Reconnect on the next attempt
            self._drop(host)
            raise RemoteCommandError(f"SSH {type(e).__name__}: {e}") from e

        elapsed = time.time() - start_time
        logger.debug(f"[{host}] '{script.name}' completed in {elapsed:.1f}s with status {exit_status}")
        if exit_status != 0:
            msg = f"exit status {exit_status}"
            if error:
                msg += f": {error}"
            raise RemoteCommandError(msg)
        return output

    def close(self) -> None:
        with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()
        for client in clients:
            client.close()


SAMPLE_KUBECONFIG = """apiVersion: v1
clusters:
- cluster:
    certificate-authority-data: ZHJ5LXJ1bg==
    server: https://127.0.0.1:6443
  name: default
contexts:
- context:
    cluster: default
    user: default
  name: default
current-context: default
kind: Config
users:
- name: default
  user:
    token: dry-run
"""

DEFAULT_DRY_RUN_OUTPUTS: Dict[str, str] = {
    "Get k3s server token": "K10dryrun0000000000000000000000000000::server:dryrun",
    "fetch discovery token ca cert hash": "0" * 64,
    "k3s kubeconfig": SAMPLE_KUBECONFIG,
    "fetch kubeconfig": SAMPLE_KUBECONFIG,
}


class DryRunExecutor(ScriptExecutor):
    """Logs scripts instead of running them.

    Every :meth:`execute` call is recorded in :attr:`calls` as ``(host, names)``
    and every attempt in :attr:`attempts` as ``(host, name)``. Output for a step
    is looked up by script name in ``outputs``; :meth:`fail` makes a step fail
    a number of times before it succeeds.
    """

    def __init__(
        self,
        config: Optional[BootstrapConfig] = None,
        outputs: Optional[Dict[str, str]] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        super().__init__(config, sleep or (lambda _delay: None))
        self.outputs = dict(DEFAULT_DRY_RUN_OUTPUTS)
        if outputs:
            self.outputs.update(outputs)
        self.calls: List[Tuple[str, List[str]]] = []
        self.attempts: List[Tuple[str, str]] = []
        self._failures: Dict[str, Optional[int]] = {}

    def fail(self, script_name: str, times: Optional[int] = None) -> None:
        """Make ``script_name`` fail ``times`` attempts, or every attempt if None."""
        self._failures[script_name] = times

    def execute(self, collection: ScriptCollection, host: str) -> str:
        self.calls.append((host, collection.names()))
        return super().execute(collection, host)

    def run_script(self, script: Script, host: str) -> str:
        self.attempts.append((host, script.name))
        if script.name in self._failures:
            remaining = self._failures[script.name]
            if remaining is None:
                raise RemoteCommandError(f"simulated failure of '{script.name}'")
            if remaining > 0:
                self._failures[script.name] = remaining - 1
                raise RemoteCommandError(f"simulated failure of '{script.name}'")
        logger.info(f"[dry-run] [{host}] {script.name}")
        logger.debug(f"[dry-run] [{host}] {script.executor.value} script of {len(script.shell_script)} bytes")
        return self.outputs.get(script.name, "")
