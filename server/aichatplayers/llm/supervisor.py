from __future__ import annotations

import ipaddress
import json
import logging
import subprocess
import threading
import time
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import IO, Any
from urllib.parse import urlsplit

import httpx
import psutil

from aichatplayers.config import LLMConfig
from aichatplayers.llm.errors import SupervisorError
from aichatplayers.llm.paths import file_exists, resolve_command_path, resolve_model_path
from aichatplayers.llm.process import interrupt_signal, popen_kwargs


LOGGER = logging.getLogger("aichatplayers.llm.supervisor")
SERVER_LOGGER = logging.getLogger("aichatplayers.llm.server")

DEFAULT_SERVER_COMMAND = "llama-server"
SHUTDOWN_ENDPOINTS = ("/shutdown", "/exit")
SHUTDOWN_METHODS = ("POST", "GET")


class LifecycleState(str, Enum):
    INERT = "inert"
    IDLE = "idle"
    ADOPTED = "adopted"
    STARTING = "starting"
    RUNNING = "running"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass
class ServerState:
    url: str
    command: str
    args: list[str] = field(default_factory=list)
    pid: int = 0

    def matches(self, other: "ServerState") -> bool:
        return self.url == other.url and self.command == other.command and list(self.args) == list(other.args)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Any) -> "ServerState":
        if not isinstance(data, dict):
            raise ValueError("server state must be a JSON object")
        args = data.get("args") or []
        if not isinstance(args, list) or not all(isinstance(item, str) for item in args):
            raise ValueError("server state args must be a list of strings")
        try:
            pid = int(data.get("pid") or 0)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"server state pid invalid: {data.get('pid')!r}") from exc
        return cls(
            url=str(data.get("url", "")),
            command=str(data.get("command", "")),
            args=list(args),
            pid=pid,
        )


class StateFile:
    """Desired-state record of the managed server, kept across restarts."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def read(self) -> ServerState | None:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        return ServerState.from_dict(json.loads(raw))

    def write(self, state: ServerState) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(state.to_dict()), encoding="utf-8")

    def remove(self) -> None:
        self.path.unlink(missing_ok=True)


def host_port_for_url(server_url: str) -> tuple[str, str]:
    parsed = urlsplit(server_url)
    host = parsed.hostname or ""
    if not host:
        raise SupervisorError(f"llm server url missing host: {server_url!r}")
    try:
        port = parsed.port
    except ValueError as exc:
        raise SupervisorError(f"llm server url parse: {exc}") from exc
    if port is None:
        port = 443 if parsed.scheme == "https" else 80

    try:
        ipaddress.ip_address(host)
    except ValueError:
        if host.lower() != "localhost":
            LOGGER.warning("llm_server_non_localhost url=%s host=%s", server_url, host)
    return host, str(port)


def _pump_output(stream: IO[str], pid: int) -> None:
    for raw_line in stream:
        line = raw_line.rstrip()
        if line:
            SERVER_LOGGER.info("llm_server_output pid=%s line=%s", pid, line)


class ServerSupervisor:
    """Keeps a local inference server running for the lifetime of the service.

    ``ensure_ready`` probes the configured URL, adopts a healthy server whose
    recorded state matches the desired launch configuration, restarts one
    that drifted (a missing record counts as drift), and otherwise spawns a
    fresh process and waits for it to answer health checks. Any failure
    raises ``SupervisorError`` and leaves the supervisor retryable.
    """

    def __init__(
        self,
        cfg: LLMConfig,
        *,
        state_file: StateFile | None = None,
        http_client: httpx.Client | None = None,
        probe_timeout_sec: float = 0.75,
        poll_interval_sec: float = 0.3,
        stop_timeout_sec: float = 5.0,
    ) -> None:
        self.cfg = cfg
        self.url = cfg.server_url.strip()
        self.state_file = state_file or StateFile(cfg.server_state_path)
        self.probe_timeout_sec = probe_timeout_sec
        self.poll_interval_sec = max(0.01, poll_interval_sec)
        self.stop_timeout_sec = max(0.1, stop_timeout_sec)
        self.state = LifecycleState.IDLE if self.url else LifecycleState.INERT
        self._http = http_client
        self._owns_http = http_client is None
        self._process: subprocess.Popen[str] | None = None
        self._log_thread: threading.Thread | None = None
        self._adopted_pid = 0
        self._lock = threading.Lock()

    @property
    def owns_process(self) -> bool:
        return self._process is not None

    @property
    def pid(self) -> int:
        if self._process is not None:
            return self._process.pid
        return self._adopted_pid

    def _client(self) -> httpx.Client:
        if self._http is None:
            self._http = httpx.Client()
        return self._http

    def desired_state(self, model_path: str) -> ServerState:
        command = self.cfg.server_command.strip() or DEFAULT_SERVER_COMMAND
        resolved, found = resolve_command_path(command, DEFAULT_SERVER_COMMAND, self.cfg.models_dir)
        if found:
            LOGGER.debug("llm_server_command_resolved command=%s path=%s", command, resolved)
            command = resolved
        else:
            LOGGER.warning("llm_server_command_missing command=%s", command)

        host, port = host_port_for_url(self.url)
        args = ["--model", model_path, "--host", host, "--port", port]
        if self.cfg.ctx_size > 0:
            args += ["--ctx-size", str(self.cfg.ctx_size)]
        if self.cfg.num_threads > 0:
            args += ["--threads", str(self.cfg.num_threads)]
        return ServerState(url=self.url, command=command, args=args)

    def probe(self, timeout_sec: float | None = None) -> None:
        timeout = self.probe_timeout_sec if timeout_sec is None else timeout_sec
        base = self.url.rstrip("/")
        client = self._client()
        try:
            response = client.get(f"{base}/health", timeout=timeout)
            if response.is_success:
                return
        except httpx.HTTPError:
            pass

        try:
            response = client.post(
                f"{base}/completion",
                json={"prompt": "ping", "n_predict": 1, "stream": False},
                timeout=timeout,
            )
        except httpx.HTTPError as exc:
            raise SupervisorError(f"llm server ready check: {exc}") from exc
        if not response.is_success:
            raise SupervisorError(f"llm server ready check status={response.status_code}")

    def is_healthy(self, timeout_sec: float | None = None) -> bool:
        try:
            self.probe(timeout_sec)
        except SupervisorError:
            return False
        return True

    def ensure_ready(self) -> bool:
        """Return True when a server is reachable and managed, False when inert."""
        with self._lock:
            return self._ensure_ready()

    def _ensure_ready(self) -> bool:
        model_path = resolve_model_path(self.cfg.model_path, self.cfg.models_dir).strip() if self.url else ""
        if not self.url or not model_path:
            LOGGER.debug("llm_server_start_skipped server_url=%r model_path=%r", self.url, model_path)
            self.state = LifecycleState.INERT
            return False

        if self._process is not None:
            if self._process.poll() is None and self.is_healthy():
                return True
            LOGGER.warning(
                "llm_server_owned_unhealthy url=%s pid=%s exit_code=%s",
                self.url,
                self._process.pid,
                self._process.poll(),
            )
            self._stop_owned_process()

        try:
            desired = self.desired_state(model_path)
        except SupervisorError:
            self.state = LifecycleState.FAILED
            raise

        if self.is_healthy():
            try:
                existing = self.state_file.read()
            except (OSError, ValueError) as exc:
                LOGGER.warning("llm_server_state_read_failed url=%s error=%s", self.url, exc)
                existing = None
            if existing is None:
                LOGGER.warning("llm_server_state_missing url=%s path=%s", self.url, self.state_file.path)
            elif existing.matches(desired):
                LOGGER.info("llm_server_detected url=%s status=ready pid=%s", self.url, existing.pid)
                self._adopted_pid = existing.pid
                self.state = LifecycleState.ADOPTED
                return True

            LOGGER.info("llm_server_restart_required url=%s", self.url)
            try:
                self._restart_running_server(existing)
            except SupervisorError:
                self.state = LifecycleState.FAILED
                raise
        else:
            LOGGER.debug("llm_server_not_ready url=%s", self.url)

        return self._start(desired, model_path)

    def _start(self, desired: ServerState, model_path: str) -> bool:
        if file_exists(model_path):
            LOGGER.debug("llm_server_model_found path=%s size_bytes=%s", model_path, Path(model_path).stat().st_size)
        else:
            LOGGER.warning("llm_server_model_unavailable path=%s", model_path)

        self.state = LifecycleState.STARTING
        LOGGER.info(
            "llm_server_starting command=%s args=%s url=%s",
            desired.command,
            " ".join(desired.args),
            self.url,
        )
        try:
            proc = subprocess.Popen(
                [desired.command, *desired.args],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                **popen_kwargs(),
            )
        except OSError as exc:
            self.state = LifecycleState.FAILED
            raise SupervisorError(f"llm server start: {exc}") from exc

        self._process = proc
        self._adopted_pid = 0
        if proc.stdout is not None:
            self._log_thread = threading.Thread(
                target=_pump_output,
                args=(proc.stdout, proc.pid),
                name=f"llm-server-log-{proc.pid}",
                daemon=True,
            )
            self._log_thread.start()

        try:
            self.state_file.write(replace(desired, pid=proc.pid))
        except OSError as exc:
            LOGGER.warning("llm_server_state_write_failed url=%s error=%s", self.url, exc)

        timeout = self.cfg.server_startup_timeout_ms / 1000.0 if self.cfg.server_startup_timeout_ms > 0 else 60.0
        LOGGER.debug("llm_server_waiting url=%s timeout_sec=%s", self.url, timeout)
        try:
            self._wait_for_ready(proc, timeout)
        except SupervisorError:
            self._stop_owned_process()
            self.state = LifecycleState.FAILED
            raise

        self.state = LifecycleState.RUNNING
        LOGGER.info("llm_server_ready url=%s pid=%s", self.url, proc.pid)
        return True

    def _wait_for_ready(self, proc: subprocess.Popen[str], timeout_sec: float) -> None:
        deadline = time.monotonic() + timeout_sec
        last_error: SupervisorError | None = None
        while True:
            try:
                self.probe(timeout_sec=1.0)
                return
            except SupervisorError as exc:
                last_error = exc

            try:
                code = proc.wait(timeout=self.poll_interval_sec)
            except subprocess.TimeoutExpired:
                code = None
            if code is not None:
                raise SupervisorError(f"llm server exited before ready code={code}")

            if time.monotonic() >= deadline:
                raise SupervisorError(f"llm server start timeout after {timeout_sec}s: last_error={last_error}")

    def _wait_for_stop(self, timeout_sec: float) -> bool:
        deadline = time.monotonic() + timeout_sec
        while time.monotonic() < deadline:
            if not self.is_healthy(timeout_sec=0.5):
                return True
            time.sleep(0.2)
        return False

    def _restart_running_server(self, existing: ServerState | None) -> None:
        if existing is None or existing.pid <= 0:
            LOGGER.warning("llm_server_restart_missing_pid url=%s", self.url)
            self._stop_by_url()
            return
        self._stop_by_pid(existing.pid)

    def _stop_by_pid(self, pid: int) -> None:
        try:
            proc = psutil.Process(pid)
        except psutil.NoSuchProcess:
            LOGGER.warning("llm_server_pid_missing pid=%s url=%s", pid, self.url)
            self._stop_by_url()
            return
        except psutil.Error as exc:
            raise SupervisorError(f"llm server find process: {exc}") from exc

        LOGGER.info("llm_server_stopping pid=%s url=%s", pid, self.url)
        try:
            proc.send_signal(interrupt_signal())
        except psutil.Error as exc:
            LOGGER.warning("llm_server_signal_failed pid=%s error=%s", pid, exc)
        if self._wait_for_stop(self.stop_timeout_sec):
            self._remove_state()
            return

        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass
        except psutil.Error as exc:
            raise SupervisorError(f"llm server kill: {exc}") from exc
        if not self._wait_for_stop(self.stop_timeout_sec):
            raise SupervisorError(f"llm server stop timeout after {self.stop_timeout_sec}s")
        self._remove_state()

    def _stop_by_url(self) -> None:
        base = self.url.rstrip("/")
        client = self._client()
        for endpoint in SHUTDOWN_ENDPOINTS:
            for method in SHUTDOWN_METHODS:
                try:
                    response = client.request(method, base + endpoint, timeout=1.0)
                except httpx.HTTPError:
                    continue
                if not response.is_success:
                    LOGGER.debug(
                        "llm_server_shutdown_rejected url=%s method=%s endpoint=%s status=%s",
                        self.url,
                        method,
                        endpoint,
                        response.status_code,
                    )
                    continue
                LOGGER.info("llm_server_shutdown_requested url=%s method=%s endpoint=%s", self.url, method, endpoint)
                if self._wait_for_stop(self.stop_timeout_sec):
                    self._remove_state()
                    return
        raise SupervisorError(f"llm server stop request failed url={self.url}")

    def _remove_state(self) -> None:
        try:
            self.state_file.remove()
        except OSError as exc:
            LOGGER.warning("llm_server_state_remove_failed path=%s error=%s", self.state_file.path, exc)

    def _stop_owned_process(self) -> None:
        proc = self._process
        if proc is None:
            return
        self._process = None
        if proc.poll() is None:
            LOGGER.info("llm_server_stopping url=%s pid=%s", self.url, proc.pid)
            try:
                proc.send_signal(interrupt_signal())
            except OSError as exc:
                LOGGER.warning("llm_server_signal_failed pid=%s error=%s", proc.pid, exc)
            try:
                proc.wait(timeout=self.stop_timeout_sec)
            except subprocess.TimeoutExpired:
                LOGGER.warning("llm_server_kill pid=%s reason=grace_period_elapsed", proc.pid)
                proc.kill()
                proc.wait(timeout=self.stop_timeout_sec)
        self._remove_state()
        if self._log_thread is not None:
            self._log_thread.join(timeout=1.0)
            self._log_thread = None

    def close(self) -> None:
        with self._lock:
            owned = self._process is not None
            self._stop_owned_process()
            if owned:
                self.state = LifecycleState.STOPPED
            if self._owns_http and self._http is not None:
                self._http.close()
                self._http = None
