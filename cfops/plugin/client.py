"""Orchestrator side of the plugin host protocol.

:class:`PluginCaller` spawns a plugin executable, checks its handshake,
dispenses the named capability and returns a proxy together with the
:class:`PluginSession` that owns the subprocess.
"""

from __future__ import annotations

import logging
import os
import queue
import signal
import subprocess
import sys
import threading
from collections import deque
from pathlib import Path
from typing import IO, Any, Deque, List, Optional, Tuple

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from ..config.schema import HostingConfig
from ..log import LOG_LEVEL_ENV
from ..observability import metrics
from .contract import BackupRestorer
from .errors import (
    PHASE_DISPENSE,
    PHASE_HANDSHAKE,
    PHASE_SPAWN,
    CapabilityNotFound,
    ConnectionLost,
    PluginError,
    PluginTimeout,
    SubprocessSpawnFailure,
)
from .handshake import HANDSHAKE, PLUGIN_SERVE_ARG, HandshakeConfig, parse_handshake_line, split_address
from .registry import PluginRegistry
from .server import ACCEPT_TIMEOUT_ENV
from .wire import RpcConnection

logger = logging.getLogger(__name__)

_STDERR_TAIL_LINES = 20
_EOF = object()


def plugin_command(executable_path: str | os.PathLike[str]) -> List[str]:
    """Command line that starts ``executable_path`` in serve mode.

    Python sources run under the current interpreter so plugin scripts work
    without an executable bit.
    """
    path = Path(executable_path)
    if path.suffix == ".py":
        return [sys.executable, str(path), PLUGIN_SERVE_ARG]
    return [str(path), PLUGIN_SERVE_ARG]


class PluginSession:
    """A live plugin subprocess and its connection.

    ``kill()`` is idempotent and safe at any point of the session's life,
    including before the handshake completed or after the plugin died.
    """

    def __init__(
        self,
        name: str,
        executable_path: str | os.PathLike[str],
        *,
        handshake: HandshakeConfig = HANDSHAKE,
        hosting: Optional[HostingConfig] = None,
        stdout: Optional[IO[str]] = None,
        stderr: Optional[IO[str]] = None,
    ) -> None:
        self.name = name
        self.executable_path = str(executable_path)
        self.handshake = handshake
        self.hosting = hosting or HostingConfig()
        self.connection: Optional[RpcConnection] = None
        self.proxy: Optional[BackupRestorer] = None
        self._stdout = stdout
        self._stderr = stderr
        self._process: Optional[subprocess.Popen] = None
        self._handshake_lines: "queue.Queue[Any]" = queue.Queue()
        self._handshake_read = False
        self._stderr_tail: Deque[str] = deque(maxlen=_STDERR_TAIL_LINES)
        self._pumps: List[threading.Thread] = []
        self._lock = threading.Lock()
        self._killed = False

    # ------------------------------------------------------------------
    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    @property
    def returncode(self) -> Optional[int]:
        return self._process.poll() if self._process is not None else None

    @property
    def exited(self) -> bool:
        return self._process is None or self._process.poll() is not None

    @property
    def killed(self) -> bool:
        return self._killed

    def stderr_tail(self) -> str:
        return "".join(self._stderr_tail)

    # ------------------------------------------------------------------
    def spawn(self) -> None:
        env = os.environ.copy()
        env.update(self.handshake.cookie_env())
        env["PYTHONUNBUFFERED"] = "1"
        env[ACCEPT_TIMEOUT_ENV] = str(self.hosting.accept_timeout_seconds)
        env.setdefault(LOG_LEVEL_ENV, logging.getLevelName(logging.getLogger().getEffectiveLevel()))
        cmd = plugin_command(self.executable_path)
        logger.debug("Spawning plugin %s: %s", self.name, cmd)
        try:
            self._process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=env,
                start_new_session=(os.name != "nt"),
            )
        except OSError as exc:
            raise SubprocessSpawnFailure(
                f"cannot start {self.executable_path}: {exc.strerror or exc}", plugin=self.name
            ) from exc
        metrics.session_opened(self.name)
        self._start_pump(self._process.stdout, self._pump_stdout, "stdout")
        self._start_pump(self._process.stderr, self._pump_stderr, "stderr")

    def _start_pump(self, stream, target, label: str) -> None:
        thread = threading.Thread(
            target=target, args=(stream,), daemon=True, name=f"cfops-plugin-{self.name}-{label}"
        )
        thread.start()
        self._pumps.append(thread)

    def _pump_stdout(self, stream) -> None:
        first = True
        try:
            for raw in iter(stream.readline, b""):
                text = raw.decode("utf-8", errors="replace")
                if first:
                    first = False
                    self._handshake_lines.put(text)
                    continue
                if self.hosting.forward_stdout:
                    self._write(self._stdout or sys.stdout, text)
        except (OSError, ValueError):
            pass
        finally:
            if first:
                self._handshake_lines.put(_EOF)

    def _pump_stderr(self, stream) -> None:
        try:
            for raw in iter(stream.readline, b""):
                text = raw.decode("utf-8", errors="replace")
                self._stderr_tail.append(text)
                self._write(self._stderr or sys.stderr, text)
        except (OSError, ValueError):
            pass

    @staticmethod
    def _write(target: IO[str], text: str) -> None:
        try:
            target.write(text)
            target.flush()
        except (OSError, ValueError):
            pass

    def _exit_detail(self) -> str:
        code = self.returncode
        detail = f"exit status {code}" if code is not None else "still running"
        tail = self.stderr_tail().strip()
        if tail:
            detail += f"; stderr: {tail.splitlines()[-1]}"
        return detail

    def read_handshake(self, timeout: float) -> str:
        """Wait for the plugin's handshake line and return the address to dial."""
        if self._handshake_read:
            raise PluginError("handshake already consumed", plugin=self.name, phase=PHASE_HANDSHAKE)
        try:
            line = self._handshake_lines.get(timeout=timeout)
        except queue.Empty:
            raise PluginTimeout(
                f"no handshake within {timeout:.2f}s", plugin=self.name, phase=PHASE_HANDSHAKE
            ) from None
        self._handshake_read = True
        if line is _EOF:
            if self._process is not None:
                try:
                    self._process.wait(timeout=self.hosting.kill_grace_seconds)
                except subprocess.TimeoutExpired:
                    pass
            raise ConnectionLost(
                f"plugin exited before completing the handshake ({self._exit_detail()})",
                plugin=self.name,
                phase=PHASE_HANDSHAKE,
            )
        return parse_handshake_line(line, self.handshake, plugin=self.name)

    def connect(self, address: str, timeout: float) -> RpcConnection:
        host, port = split_address(address)
        retrying = Retrying(
            retry=retry_if_exception_type(ConnectionRefusedError),
            stop=stop_after_attempt(3),
            wait=wait_fixed(0.05),
            reraise=True,
        )
        try:
            conn = retrying(
                RpcConnection.connect,
                host,
                port,
                plugin=self.name,
                timeout=timeout,
                max_message_bytes=self.hosting.max_message_bytes,
            )
        except OSError as exc:
            raise ConnectionLost(
                f"cannot connect to {address}: {exc}", plugin=self.name, phase=PHASE_HANDSHAKE
            ) from exc
        self.connection = conn
        return conn

    # ------------------------------------------------------------------
    def kill(self) -> None:
        """Terminate the plugin process and release every resource."""
        with self._lock:
            if self._killed:
                return
            self._killed = True
        if self.connection is not None:
            self.connection.close()
        proc = self._process
        if proc is not None:
            if proc.poll() is None:
                self._signal(proc, signal.SIGTERM)
                try:
                    proc.wait(timeout=self.hosting.kill_grace_seconds)
                except subprocess.TimeoutExpired:
                    logger.warning("Plugin %s ignored SIGTERM; killing it", self.name)
                    self._signal(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
                    try:
                        proc.wait(timeout=self.hosting.kill_grace_seconds)
                    except subprocess.TimeoutExpired:
                        logger.error("Plugin %s (pid %s) did not exit", self.name, proc.pid)
            for thread in self._pumps:
                thread.join(timeout=1)
            for stream in (proc.stdout, proc.stderr):
                if stream is not None:
                    try:
                        stream.close()
                    except OSError:
                        pass
            metrics.session_closed(self.name)
        logger.debug("Plugin %s released (%s)", self.name, self._exit_detail())

    @staticmethod
    def _signal(proc: subprocess.Popen, sig: int) -> None:
        if os.name == "nt":
            if sig == signal.SIGTERM:
                proc.terminate()
            else:
                proc.kill()
            return
        try:
            # The plugin leads its own process group; take its children too.
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            pass
        except OSError:
            proc.send_signal(sig)

    def __enter__(self) -> "PluginSession":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.kill()

    def __repr__(self) -> str:
        return f"PluginSession(name={self.name!r}, pid={self.pid}, killed={self._killed})"


class PluginCaller:
    """Acquires plugin capabilities by name from plugin executables."""

    def __init__(
        self,
        registry: Optional[PluginRegistry] = None,
        *,
        handshake: HandshakeConfig = HANDSHAKE,
        hosting: Optional[HostingConfig] = None,
        stdout: Optional[IO[str]] = None,
        stderr: Optional[IO[str]] = None,
    ) -> None:
        self.registry = registry if registry is not None else PluginRegistry()
        self.handshake = handshake
        self.hosting = hosting or HostingConfig()
        self._stdout = stdout
        self._stderr = stderr
        self._sessions: List[PluginSession] = []

    @property
    def sessions(self) -> List[PluginSession]:
        return [s for s in self._sessions if not s.killed]

    def acquire(
        self,
        name: str,
        executable_path: str | os.PathLike[str],
        *,
        timeout: Optional[float] = None,
    ) -> Tuple[BackupRestorer, PluginSession]:
        """Start ``executable_path`` and return a proxy for capability ``name``.

        ``timeout`` bounds spawn plus handshake and defaults to the hosting
        config. On failure the subprocess is killed before the error is raised.
        """
        entry = self.registry.register(name, None)
        startup_timeout = timeout if timeout is not None else self.hosting.startup_timeout_seconds
        session = PluginSession(
            name,
            executable_path,
            handshake=self.handshake,
            hosting=self.hosting,
            stdout=self._stdout,
            stderr=self._stderr,
        )
        phase = PHASE_SPAWN
        try:
            session.spawn()
            phase = PHASE_HANDSHAKE
            address = session.read_handshake(startup_timeout)
            conn = session.connect(address, startup_timeout)
            conn.request("handshake", self.handshake.to_dict(), phase=PHASE_HANDSHAKE)
            phase = PHASE_DISPENSE
            conn.request("dispense", {"name": name}, phase=PHASE_DISPENSE)
            conn.timeout = self.hosting.call_timeout_seconds
            proxy = entry.client(conn, name, timeout=self.hosting.call_timeout_seconds)
        except PluginError as exc:
            exc.bind(plugin=name, phase=phase)
            session.kill()
            metrics.record_failure(name, exc.phase, type(exc).__name__)
            metrics.record_session(name, "failed")
            logger.warning("Could not acquire plugin %s from %s: %s", name, executable_path, exc)
            raise
        except BaseException:
            session.kill()
            raise
        session.proxy = proxy
        self._sessions.append(session)
        metrics.record_session(name, "ok")
        logger.info("Plugin %s ready (pid %s)", name, session.pid)
        return proxy, session

    def close(self) -> None:
        """Kill every session this caller started."""
        for session in self._sessions:
            session.kill()
        self._sessions = []

    def __enter__(self) -> "PluginCaller":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


def call(
    name: str,
    executable_path: str | os.PathLike[str],
    **options: Any,
) -> Tuple[BackupRestorer, PluginSession]:
    """Acquire ``name`` from ``executable_path`` with a fresh registry."""
    timeout = options.pop("timeout", None)
    caller = PluginCaller(PluginRegistry(), **options)
    return caller.acquire(name, executable_path, timeout=timeout)


__all__ = ["PluginCaller", "PluginSession", "call", "plugin_command"]
