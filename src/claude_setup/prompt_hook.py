"""
Prompt-time fallback for the auth watcher.

``claude-setup prompt-check`` is wired into PROMPT_COMMAND. On every
fifth prompt it looks for credentials and, if setup has not completed,
starts ``claude-setup`` in the background. It never waits for it.

The shell hook tests for the completion marker first, so a finished
container never starts Python at all::

    [ -f ~/.claude/.container-setup-complete ] || claude-setup prompt-check
"""

import shutil
import subprocess
from pathlib import Path
from typing import Optional

from rich.console import Console

from .config import Settings
from .credentials import CredentialProbe, CredentialState


SAMPLE_EVERY = 5
COUNTER_FILENAME = ".prompt-check-counter"


def counter_path(settings: Settings) -> Path:
    return settings.claude_dir / COUNTER_FILENAME


def next_sample(path: Path, every: int = SAMPLE_EVERY) -> bool:
    """Advance the prompt counter. True on every ``every``-th call."""
    try:
        count = int(path.read_text().strip() or 0)
    except (OSError, ValueError):
        count = 0
    count = (count + 1) % every
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(str(count))
    except OSError:
        # Read-only home: check every time rather than never
        return True
    return count == 0


def launch_setup() -> Optional[int]:
    """Start claude-setup detached with output discarded."""
    executable = shutil.which("claude-setup")
    if not executable:
        return None
    process = subprocess.Popen(
        [executable],
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )
    return process.pid


def prompt_check(
    settings: Settings,
    probe: Optional[CredentialProbe] = None,
    console: Optional[Console] = None,
    launcher=launch_setup,
) -> bool:
    """Run one prompt-time check. Returns True if setup was launched."""
    if settings.marker_file.exists():
        return False
    if not next_sample(counter_path(settings)):
        return False

    probe = probe or CredentialProbe(settings)
    state = probe.probe()
    if state is CredentialState.UNAUTHENTICATED:
        return False

    console = console or Console(stderr=True)
    kind = "Token" if state is CredentialState.TOKEN_AUTH else "OAuth"
    console.print(f"\n[cyan]\\[claude][/cyan] {kind} authentication detected! Running setup in background...")
    try:
        launcher()
    except OSError as e:
        console.print(f"[red]✗[/red] Could not start claude-setup: {e}")
        return False
    return True
