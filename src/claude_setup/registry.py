"""
Typed client for the ``claude`` CLI's plugin and MCP registry commands.

The CLI reports every failure as free text on stderr. This module is the
one place that text is inspected: callers only ever see the exception
classes below.
"""

import re
import subprocess
from dataclasses import dataclass
from typing import List, Optional, Set, Tuple

from .endpoints import ServiceEndpointSpec, Transport


DEFAULT_TIMEOUT = 120


# =============================================================================
# Errors
# =============================================================================

class RegistryError(Exception):
    """Base class for failures reported by the registry CLI."""

    def __init__(self, message: str, command: Optional[List[str]] = None):
        super().__init__(message)
        self.command = command or []


class TransientRegistryError(RegistryError):
    """The registry has not caught up yet; retrying may succeed."""


class RegistryUnavailableError(RegistryError):
    """The registry cannot be reached or refuses us (network, auth).

    Not retried by plugin installation; the watcher uses it to delay its
    first configure attempt.
    """


class AlreadyExistsError(RegistryError):
    """The item is already present. Callers treat this as success."""


class PermanentRegistryError(RegistryError):
    """Bad input or a broken CLI; retrying will not help."""


# Ordered: the first matching row wins. Matching is a case-insensitive
# substring test on the CLI's output, which breaks silently if the CLI
# rewords its messages.
ERROR_SIGNATURES: List[Tuple[type, List[str]]] = [
    (AlreadyExistsError, ["already exists", "already installed", "already added"]),
    (TransientRegistryError, ["not found in marketplace"]),
    (RegistryUnavailableError, [
        "unauthorized",
        "not logged in",
        "not authenticated",
        "please run /login",
        "network",
        "timed out",
        "timeout",
        "econnrefused",
        "enotfound",
        "connection refused",
    ]),
]


def classify_error(message: str, command: Optional[List[str]] = None) -> RegistryError:
    """Map CLI output to a typed RegistryError."""
    lower_message = message.lower()
    for error_class, signatures in ERROR_SIGNATURES:
        if any(x in lower_message for x in signatures):
            return error_class(message.strip(), command)
    return PermanentRegistryError(message.strip() or "unknown registry error", command)


# =============================================================================
# Records and output parsing
# =============================================================================

@dataclass(frozen=True)
class PluginRecord:
    name: str
    marketplace: str

    def __str__(self) -> str:
        return f"{self.name}@{self.marketplace}"

    @classmethod
    def parse(cls, value: str, default_marketplace: str) -> "PluginRecord":
        """Parse ``name`` or ``name@marketplace``."""
        name, sep, marketplace = value.strip().partition("@")
        return cls(name.strip(), marketplace.strip() if sep and marketplace.strip() else default_marketplace)


# "  ❯ commit-commands@claude-plugins-official - Commit helpers"
_PLUGIN_LINE = re.compile(r"^\s*(?:[❯>*•-]\s+)?([A-Za-z0-9][\w.-]*@[\w.-]+)(?:\s|$)")

# "filesystem: npx -y @modelcontextprotocol/server-filesystem /workspace - ✓ Connected"
_ENDPOINT_LINE = re.compile(r"^([A-Za-z0-9][A-Za-z0-9_-]*):\s")

# "  ❯ claude-plugins-official" / "claude-plugins-official (github: anthropics/...)"
_MARKETPLACE_LINE = re.compile(r"^\s*(?:[❯>*•-]\s+)?([A-Za-z0-9][\w.-]*)(?:\s|$)")


def parse_plugin_list(output: str) -> Set[str]:
    """Extract ``name@marketplace`` identifiers from ``claude plugin list``."""
    plugins = set()
    for line in output.splitlines():
        match = _PLUGIN_LINE.match(line)
        if match:
            plugins.add(match.group(1))
    return plugins


def parse_endpoint_list(output: str) -> Set[str]:
    """Extract endpoint names from ``claude mcp list``."""
    names = set()
    for line in output.splitlines():
        match = _ENDPOINT_LINE.match(line)
        if match:
            names.add(match.group(1))
    return names


def parse_marketplace_list(output: str) -> Set[str]:
    names = set()
    for line in output.splitlines():
        if not line.strip() or line.rstrip().endswith(":"):
            continue
        match = _MARKETPLACE_LINE.match(line)
        if match:
            names.add(match.group(1))
    return names


# =============================================================================
# Client
# =============================================================================

class RegistryClient:
    """Runs ``claude plugin ...`` and ``claude mcp ...`` subcommands."""

    def __init__(self, claude_bin: str = "claude", timeout: float = DEFAULT_TIMEOUT):
        self.claude_bin = claude_bin
        self.timeout = timeout

    def _run(self, *args: str) -> str:
        command = [self.claude_bin, *args]
        try:
            result = subprocess.run(
                command,
                check=True,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise PermanentRegistryError(f"{self.claude_bin} not found: {e}", command) from e
        except subprocess.TimeoutExpired as e:
            raise RegistryUnavailableError(
                f"'{' '.join(command[:4])}' timed out after {self.timeout}s", command
            ) from e
        except subprocess.CalledProcessError as e:
            raise classify_error(f"{e.stderr or ''}\n{e.stdout or ''}", command) from e
        return result.stdout

    # -------------------------------------------------------------------------
    # Marketplaces
    # -------------------------------------------------------------------------

    def list_marketplaces(self) -> Set[str]:
        return parse_marketplace_list(self._run("plugin", "marketplace", "list"))

    def add_marketplace(self, marketplace_id: str) -> None:
        self._run("plugin", "marketplace", "add", marketplace_id)

    # -------------------------------------------------------------------------
    # Plugins
    # -------------------------------------------------------------------------

    def list_plugins(self) -> Set[str]:
        return parse_plugin_list(self._run("plugin", "list"))

    def install_plugin(self, record: PluginRecord) -> None:
        self._run("plugin", "install", str(record))

    # -------------------------------------------------------------------------
    # MCP endpoints
    # -------------------------------------------------------------------------

    def list_endpoints(self) -> Set[str]:
        return parse_endpoint_list(self._run("mcp", "list"))

    def add_endpoint(self, spec: ServiceEndpointSpec) -> None:
        self._run(*build_add_endpoint_args(spec))


def build_add_endpoint_args(spec: ServiceEndpointSpec) -> List[str]:
    """Arguments for ``claude mcp add`` at user scope.

    Headers are not passed here; they are merged into ``~/.claude.json``
    separately so they never appear on a command line.
    """
    args = ["mcp", "add", "-s", "user"]
    for key, value in spec.env.items():
        args += ["-e", f"{key}={value}"]
    if spec.transport is Transport.HTTP:
        args += ["-t", "http", spec.name, spec.url]
    else:
        args += ["-t", "stdio", spec.name, "--", *spec.command]
    return args
