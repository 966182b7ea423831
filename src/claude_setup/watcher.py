"""
Background watcher that runs the configurator once credentials appear.

Started detached at container startup. It waits for a login, checks the
registry is answering, runs one configure pass and exits. The completion
marker written by the configurator keeps it from ever running again.
"""

import os
import shutil
import subprocess
import threading
import time
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from rich.console import Console
from watchfiles import watch

from .config import DEFAULT_POLL_INTERVAL, Settings
from .configurator import Configurator
from .credentials import CredentialProbe
from .registry import RegistryError


WATCHER_PID_FILE = Path("/tmp/claude-auth-watcher.pid")
WATCHER_LOG_FILE = Path("/tmp/claude-auth-watcher.log")

# Upper bound on one wait, so a missed notification costs at most this long
MAX_ITERATION_WAIT = 30.0
REACHABILITY_RETRY_DELAY = 10.0

# Files a login writes
CREDENTIAL_FILENAMES = {".credentials.json", ".claude.json", "anthropic-auth-token"}


class WatcherState(str, Enum):
    IDLE = "idle"
    WAITING_FOR_AUTH = "waiting_for_auth"
    CONFIGURING = "configuring"
    DONE = "done"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


# =============================================================================
# Change waiters
# =============================================================================

class ChangeWaiter:
    """Blocks until something may have changed, or max_wait passes."""

    name = "base"

    def wait_for_change(self, max_wait: float) -> bool:
        """Return True if a change was seen, False on timeout.

        Callers re-check state either way; True is only a hint.
        """
        raise NotImplementedError

    def close(self) -> None:
        pass


class PollingWaiter(ChangeWaiter):
    name = "polling"

    def __init__(self, interval: float = DEFAULT_POLL_INTERVAL, sleep: Callable[[float], None] = time.sleep):
        self.interval = interval
        self.sleep = sleep

    def wait_for_change(self, max_wait: float) -> bool:
        self.sleep(max(0.0, min(self.interval, max_wait)))
        return False


class _WaitDeadline:
    """Stop event for ``watch``: set by close() or once the deadline passes."""

    def __init__(self, stop: threading.Event, deadline: float):
        self.stop = stop
        self.deadline = deadline

    def is_set(self) -> bool:
        return self.stop.is_set() or time.monotonic() >= self.deadline


class NotifyWaiter(ChangeWaiter):
    """Waits on filesystem notifications for the credential files.

    The watched directories include $HOME, which sees unrelated writes all
    the time (shell history, editor swap files). Those events are discarded
    here, and the wait still ends at ``max_wait`` however many arrive.
    """

    name = "notify"

    def __init__(self, settings: Settings):
        self.paths = [settings.claude_dir, settings.home]
        if settings.token_file.parent.is_dir():
            self.paths.append(settings.token_file.parent)
        self._stop = threading.Event()
        settings.claude_dir.mkdir(parents=True, exist_ok=True)

    def wait_for_change(self, max_wait: float) -> bool:
        stop_event = _WaitDeadline(self._stop, time.monotonic() + max_wait)
        for changes in watch(
            *self.paths,
            watch_filter=None,
            rust_timeout=max(1, int(max_wait * 1000)),
            yield_on_timeout=True,
            raise_interrupt=False,
            stop_event=stop_event,
            recursive=False,
        ):
            if any(Path(path).name in CREDENTIAL_FILENAMES for _change, path in changes):
                return True
            if stop_event.is_set():
                return False
        return False

    def close(self) -> None:
        self._stop.set()


def select_waiter(
    settings: Settings,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    console: Optional[Console] = None,
    force_polling: bool = False,
) -> ChangeWaiter:
    """Pick the notification backend if this host supports it, else polling."""
    console = console or Console()
    if not force_polling:
        try:
            waiter = NotifyWaiter(settings)
            # Fails here if inotify is unavailable or out of watches
            waiter.wait_for_change(0.01)
            return waiter
        except (OSError, RuntimeError) as e:
            console.log(f"[yellow]⚠[/yellow] File notifications unavailable ({e}), polling instead")
    return PollingWaiter(poll_interval)


# =============================================================================
# Watcher
# =============================================================================

class AuthWatcher:
    """IDLE -> WAITING_FOR_AUTH -> CONFIGURING -> DONE (or TIMED_OUT / FAILED)."""

    def __init__(
        self,
        settings: Settings,
        configurator: Optional[Configurator] = None,
        probe: Optional[CredentialProbe] = None,
        waiter: Optional[ChangeWaiter] = None,
        console: Optional[Console] = None,
        timeout: Optional[float] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.console = console or Console()
        self.probe = probe or CredentialProbe(settings)
        self.configurator = configurator or Configurator(
            settings, probe=self.probe, console=self.console, sleep=sleep
        )
        self.waiter = waiter
        self.timeout = settings.watcher_timeout if timeout is None else timeout
        self.poll_interval = poll_interval
        self.clock = clock
        self.sleep = sleep
        self.state = WatcherState.IDLE

    def _transition(self, state: WatcherState) -> None:
        self.state = state

    def run(self) -> WatcherState:
        if self.settings.marker_file.exists():
            self.console.log("Setup already complete, nothing to do")
            self._transition(WatcherState.DONE)
            return self.state

        self._transition(WatcherState.WAITING_FOR_AUTH)
        if not self.wait_for_auth():
            return self.state

        self._transition(WatcherState.CONFIGURING)
        self.wait_for_registry()
        self.console.log("Running claude-setup...")
        report = self.configurator.configure(force=False)

        if report.marker_written:
            self.console.log("[green]✓[/green] Setup complete")
            self._transition(WatcherState.DONE)
        else:
            failed = ", ".join(item.name for item in report.failed()) or "incomplete"
            self.console.log(f"[red]✗[/red] Setup did not complete ({failed}); run 'claude-setup' to retry")
            self._transition(WatcherState.FAILED)
        return self.state

    def wait_for_auth(self) -> bool:
        """Block until credentials appear. False on timeout or if setup finished elsewhere."""
        waiter = self.waiter or select_waiter(self.settings, self.poll_interval, self.console)
        deadline = self.clock() + self.timeout
        self.console.log(
            f"Waiting for Claude authentication ({waiter.name}, timeout {int(self.timeout)}s)"
        )
        try:
            while True:
                # Another trigger may have finished setup meanwhile
                if self.settings.marker_file.exists():
                    self.console.log("Setup completed by another process")
                    self._transition(WatcherState.DONE)
                    return False

                state = self.probe.probe()
                if state.authenticated:
                    self.console.log(f"[green]✓[/green] Authentication detected ({state.value})")
                    return True

                remaining = deadline - self.clock()
                if remaining <= 0:
                    self.console.log(
                        f"[yellow]⚠[/yellow] Timed out after {int(self.timeout)}s; "
                        "run 'claude-setup' after logging in"
                    )
                    self._transition(WatcherState.TIMED_OUT)
                    return False

                waiter.wait_for_change(min(MAX_ITERATION_WAIT, remaining))
        finally:
            waiter.close()

    def wait_for_registry(self) -> bool:
        """Check the registry answers, retrying once. Proceeds either way."""
        registry = self.configurator.registry
        try:
            registry.list_plugins()
            return True
        except RegistryError as e:
            self.console.log(f"[yellow]⚠[/yellow] Registry not ready ({e}), retrying in {int(REACHABILITY_RETRY_DELAY)}s")
        self.sleep(REACHABILITY_RETRY_DELAY)
        try:
            registry.list_plugins()
            return True
        except RegistryError as e:
            self.console.log(f"[yellow]⚠[/yellow] Registry still not ready ({e}), continuing anyway")
            return False


# =============================================================================
# Spawning
# =============================================================================

def read_pid(pid_file: Path) -> Optional[int]:
    try:
        return int(pid_file.read_text().strip())
    except (OSError, ValueError):
        return None


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def spawn_watcher(
    settings: Settings,
    pid_file: Path = WATCHER_PID_FILE,
    log_file: Path = WATCHER_LOG_FILE,
    console: Optional[Console] = None,
) -> Optional[int]:
    """Start claude-auth-watcher in the background unless it is not needed.

    Returns:
        PID of the new watcher, or None if none was started.
    """
    console = console or Console()

    if settings.marker_file.exists():
        return None

    pid = read_pid(pid_file)
    if pid and pid_alive(pid):
        console.print(f"[dim]Auth watcher already running (PID: {pid})[/dim]")
        return None

    executable = shutil.which("claude-auth-watcher")
    if not executable:
        console.print("[yellow]⚠[/yellow] claude-auth-watcher not found on PATH")
        return None

    log_file.parent.mkdir(parents=True, exist_ok=True)
    with open(log_file, "a") as log:
        process = subprocess.Popen(
            [executable],
            stdin=subprocess.DEVNULL,
            stdout=log,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )
    pid_file.write_text(f"{process.pid}\n")
    console.print(f"Started Claude authentication watcher (PID: {process.pid})")
    return process.pid


def clear_pid_file(pid_file: Path = WATCHER_PID_FILE, pid: Optional[int] = None) -> None:
    """Remove the PID file if it belongs to ``pid`` (default: this process)."""
    pid = os.getpid() if pid is None else pid
    if read_pid(pid_file) == pid:
        try:
            pid_file.unlink()
        except FileNotFoundError:
            pass
