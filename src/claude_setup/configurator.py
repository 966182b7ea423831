"""
The claude-setup configurator.

Runs the setup steps in a fixed order:

1. register the plugin marketplace
2. install the desired plugins
3. register MCP service endpoints
4. register endpoints for git hosting platforms found in the workspace
5. install skill and agent templates

Every step checks current state before changing anything, so the
configurator can be run any number of times, from the startup script,
the auth watcher and the prompt hook, even concurrently. A failure in
one item is reported and the rest carry on.
"""

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from rich.console import Console

from .config import PLATFORM_TOKEN_VARS, Settings
from .credentials import CredentialProbe, CredentialState
from .endpoints import (
    AUTH_HEADER_VALUE,
    EndpointError,
    Provenance,
    ServiceEndpointSpec,
    Transport,
    default_endpoints,
    detect_platforms,
    merge_endpoint_headers,
    platform_endpoint,
    resolve_entry,
)
from .registry import (
    AlreadyExistsError,
    PluginRecord,
    RegistryClient,
    RegistryError,
    TransientRegistryError,
)
from .templates import install_templates


CORE_PLUGINS = [
    "commit-commands",
    "pr-review-toolkit",
    "security-guidance",
]

# Language server plugins, installed when the toolchain is in the image
LSP_PLUGINS = {
    "INCLUDE_RUST_DEV": "rust-analyzer-lsp",
    "INCLUDE_PYTHON_DEV": "pyright-lsp",
    "INCLUDE_NODE_DEV": "typescript-lsp",
    "INCLUDE_KOTLIN_DEV": "kotlin-lsp",
    "INCLUDE_JAVA_DEV": "jdtls-lsp",
    "INCLUDE_GOLANG_DEV": "gopls-lsp",
}

MAX_INSTALL_ATTEMPTS = 4
INITIAL_RETRY_DELAY = 2


# =============================================================================
# Report
# =============================================================================

class Status(str, Enum):
    OK = "ok"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ReportItem:
    category: str
    name: str
    status: Status
    detail: str = ""


@dataclass
class Report:
    """What a configure run did. Used for terminal output only."""

    state: CredentialState = CredentialState.UNAUTHENTICATED
    items: List[ReportItem] = field(default_factory=list)
    plugins_attempted: bool = False
    marker_written: bool = False

    def add(self, category: str, name: str, status: Status, detail: str = "") -> ReportItem:
        item = ReportItem(category, name, status, detail)
        self.items.append(item)
        return item

    def of(self, category: str) -> List[ReportItem]:
        return [item for item in self.items if item.category == category]

    def failed(self, category: Optional[str] = None) -> List[ReportItem]:
        return [
            item for item in self.items
            if item.status is Status.FAILED and (category is None or item.category == category)
        ]

    @property
    def success(self) -> bool:
        return not self.failed()

    def counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in Status}
        for item in self.items:
            counts[item.status.value] += 1
        return counts


# =============================================================================
# Helpers
# =============================================================================

def load_known_marketplaces(path: Path) -> Dict[str, Any]:
    """Load the CLI's known_marketplaces.json, or {} if unreadable."""
    if path.exists():
        try:
            with open(path, "r") as f:
                data = json.load(f)
            return data if isinstance(data, dict) else {}
        except (json.JSONDecodeError, IOError):
            return {}
    return {}


def marketplace_registered(settings: Settings) -> bool:
    known = load_known_marketplaces(settings.known_marketplaces_file)
    if settings.marketplace_name in known:
        return True
    for entry in known.values():
        source = entry.get("source", {}) if isinstance(entry, dict) else {}
        if isinstance(source, dict) and source.get("repo") == settings.marketplace:
            return True
    return False


def desired_plugins(settings: Settings) -> List[PluginRecord]:
    """Core plugins, LSP plugins for enabled toolchains, then extras."""
    marketplace = settings.marketplace_name
    names = list(CORE_PLUGINS)
    names += [plugin for flag, plugin in LSP_PLUGINS.items() if settings.feature(flag)]
    names += list(settings.extra_plugins)

    records = []
    seen = set()
    for name in names:
        record = PluginRecord.parse(name, marketplace)
        if not record.name or str(record) in seen:
            continue
        seen.add(str(record))
        records.append(record)
    return records


# =============================================================================
# Configurator
# =============================================================================

class Configurator:
    """Brings the Claude Code configuration up to the desired state."""

    def __init__(
        self,
        settings: Settings,
        registry: Optional[RegistryClient] = None,
        probe: Optional[CredentialProbe] = None,
        console: Optional[Console] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.registry = registry or RegistryClient(settings.claude_bin)
        self.probe = probe or CredentialProbe(settings)
        self.console = console or Console()
        self.sleep = sleep
        self._existing_endpoints: Set[str] = set()
        self._registered_names: Set[str] = set()

    def configure(self, force: bool = False) -> Report:
        """Run all steps.

        Args:
            force: Attempt marketplace and plugin steps even when no
                credentials are detected.

        Returns:
            Report of every item touched. The completion marker is written
            only after an authenticated run where the marketplace and
            every plugin succeeded.
        """
        state = self.probe.probe()
        report = Report(state=state)
        run_plugins = force or state.authenticated

        if run_plugins:
            report.plugins_attempted = True
            self.console.print("\n[bold]Plugins[/bold]")
            self._step(report, "marketplace", self.ensure_marketplace)
            self._step(report, "plugin", self.install_plugins)
        else:
            self.console.print("[yellow]⚠[/yellow] Not authenticated, skipping marketplace and plugins")
            report.add("marketplace", self.settings.marketplace, Status.SKIPPED, "not authenticated")
            report.add("plugin", "*", Status.SKIPPED, "not authenticated")

        self.console.print("\n[bold]MCP servers[/bold]")
        self._existing_endpoints = set()
        self._registered_names = set()
        self._step(report, "endpoint", self.register_endpoints)
        self._step(report, "endpoint", self.detect_platform_endpoints)

        self.console.print("\n[bold]Skills and agents[/bold]")
        self._step(report, "template", self.install_templates)

        if run_plugins and state.authenticated and not report.failed("marketplace") and not report.failed("plugin"):
            try:
                self.write_marker()
                report.marker_written = True
            except OSError as e:
                self.console.print(f"[red]✗[/red] Could not write completion marker: {e}")

        return report

    def _step(self, report: Report, category: str, step: Callable[[Report], None]) -> None:
        """Run one step; an unexpected failure is reported, not raised."""
        try:
            step(report)
        except (RegistryError, OSError, ValueError) as e:
            self.console.print(f"[red]✗[/red] {category} step failed: {e}")
            report.add(category, "*", Status.FAILED, str(e))

    def write_marker(self) -> None:
        marker = self.settings.marker_file
        marker.parent.mkdir(parents=True, exist_ok=True)
        marker.touch()

    # -------------------------------------------------------------------------
    # 1. Marketplace
    # -------------------------------------------------------------------------

    def ensure_marketplace(self, report: Report) -> None:
        marketplace = self.settings.marketplace
        if marketplace_registered(self.settings):
            self.console.print(f"  [dim]Marketplace {marketplace} already registered[/dim]")
            report.add("marketplace", marketplace, Status.SKIPPED, "already registered")
            return

        try:
            self.registry.add_marketplace(marketplace)
        except AlreadyExistsError:
            self.console.print(f"  [dim]Marketplace {marketplace} already registered[/dim]")
            report.add("marketplace", marketplace, Status.OK, "already registered")
            return
        except RegistryError as e:
            self.console.print(f"  [red]✗[/red] Could not add marketplace {marketplace}: {e}")
            report.add("marketplace", marketplace, Status.FAILED, str(e))
            return

        self.console.print(f"  [green]✓[/green] Added marketplace {marketplace}")
        report.add("marketplace", marketplace, Status.OK, "added")

    # -------------------------------------------------------------------------
    # 2. Plugins
    # -------------------------------------------------------------------------

    def install_plugins(self, report: Report) -> None:
        for record in desired_plugins(self.settings):
            try:
                installed = self.registry.list_plugins()
            except RegistryError as e:
                self.console.print(f"  [red]✗[/red] {record}: could not list plugins: {e}")
                report.add("plugin", str(record), Status.FAILED, f"list failed: {e}")
                continue

            if str(record) in installed:
                self.console.print(f"  [dim]{record} already installed[/dim]")
                report.add("plugin", str(record), Status.SKIPPED, "already installed")
                continue

            status, detail = self.install_plugin(record)
            report.add("plugin", str(record), status, detail)

    def install_plugin(self, record: PluginRecord) -> Tuple[Status, str]:
        """Install one plugin, retrying while the marketplace catches up.

        A freshly added marketplace can take a while to propagate, which
        shows up as "not found in marketplace". That error is retried with
        delays of 2, 4, 8 and 16 seconds; anything else fails at once.

        Returns:
            (Status, detail) for the report.
        """
        delay = INITIAL_RETRY_DELAY
        last_error: Optional[RegistryError] = None

        for attempt in range(1, MAX_INSTALL_ATTEMPTS + 1):
            try:
                self.registry.install_plugin(record)
            except AlreadyExistsError:
                self.console.print(f"  [dim]{record} already installed[/dim]")
                return Status.OK, "already installed"
            except TransientRegistryError as e:
                last_error = e
                self.console.print(
                    f"  [yellow]⚠[/yellow] {record} not in marketplace yet "
                    f"(attempt {attempt}/{MAX_INSTALL_ATTEMPTS}), waiting {delay}s"
                )
                self.sleep(delay)
                delay *= 2
                continue
            except RegistryError as e:
                self.console.print(f"  [red]✗[/red] {record}: {e}")
                return Status.FAILED, str(e)

            self.console.print(f"  [green]✓[/green] Installed {record}")
            return Status.OK, "installed" if attempt == 1 else f"installed after {attempt} attempts"

        self.console.print(f"  [red]✗[/red] {record}: gave up after {MAX_INSTALL_ATTEMPTS} attempts")
        return Status.FAILED, f"gave up after {MAX_INSTALL_ATTEMPTS} attempts: {last_error}"

    # -------------------------------------------------------------------------
    # 3. Service endpoints
    # -------------------------------------------------------------------------

    def endpoint_specs(self, report: Report) -> List[ServiceEndpointSpec]:
        """Defaults, then admin entries, then user entries; first name wins."""
        specs = list(default_endpoints(self.settings))
        for entry in list(self.settings.extra_endpoints) + list(self.settings.user_endpoints):
            try:
                specs.append(resolve_entry(entry))
            except EndpointError as e:
                self.console.print(f"  [red]✗[/red] Rejected MCP entry '{entry}': {e}")
                report.add("endpoint", entry, Status.FAILED, str(e))

        unique = []
        seen = set()
        for spec in specs:
            if spec.name in seen:
                self.console.print(f"  [dim]Duplicate MCP server {spec.name} ignored[/dim]")
                continue
            seen.add(spec.name)
            unique.append(spec)
        return unique

    def register_endpoints(self, report: Report) -> None:
        specs = self.endpoint_specs(report)
        try:
            self._existing_endpoints = self.registry.list_endpoints()
        except RegistryError as e:
            self.console.print(f"  [yellow]⚠[/yellow] Could not list MCP servers: {e}")
            self._existing_endpoints = set()

        for spec in specs:
            self.register_endpoint(spec, report)

    def register_endpoint(self, spec: ServiceEndpointSpec, report: Report) -> None:
        """Add one endpoint unless already present, then merge its headers."""
        self._registered_names.add(spec.name)
        if spec.name in self._existing_endpoints:
            self.console.print(f"  [dim]{spec.name} already configured[/dim]")
            status, detail = Status.SKIPPED, "already configured"
        else:
            try:
                self.registry.add_endpoint(spec)
                status, detail = Status.OK, "added"
                self.console.print(f"  [green]✓[/green] Added {spec.name} [dim]({spec.target})[/dim]")
            except AlreadyExistsError:
                status, detail = Status.OK, "already configured"
                self.console.print(f"  [dim]{spec.name} already configured[/dim]")
            except RegistryError as e:
                self.console.print(f"  [red]✗[/red] {spec.name}: {e}")
                report.add("endpoint", spec.name, Status.FAILED, str(e))
                return
            self._existing_endpoints.add(spec.name)

        if spec.transport is Transport.HTTP and spec.provenance is Provenance.URL:
            try:
                headers = self.apply_headers(spec)
            except (OSError, ValueError) as e:
                self.console.print(f"  [red]✗[/red] {spec.name}: could not write headers: {e}")
                report.add("endpoint", spec.name, Status.FAILED, f"headers: {e}")
                return
            if headers:
                self.console.print(f"    [dim]headers: {', '.join(sorted(headers))}[/dim]")

        for var in spec.required_env:
            self.console.print(f"    [dim]Requires {var}[/dim]")

        report.add("endpoint", spec.name, status, detail)

    def apply_headers(self, spec: ServiceEndpointSpec) -> Dict[str, str]:
        """Merge explicit headers and, if allowed, the bearer token reference."""
        injected = {}
        if (
            not spec.has_explicit_auth()
            and self.settings.mcp_auto_auth
            and self.probe.bearer_token_available()
        ):
            injected["Authorization"] = AUTH_HEADER_VALUE

        if not spec.headers and not injected:
            return {}
        return merge_endpoint_headers(self.settings.user_config_file, spec.name, spec.headers, injected)

    # -------------------------------------------------------------------------
    # 4. Platform auto-detection
    # -------------------------------------------------------------------------

    def detect_platform_endpoints(self, report: Report) -> None:
        if not self.settings.auto_detect_endpoints:
            return

        platforms = detect_platforms(self.settings.workspace)
        for platform in sorted(platforms):
            host = sorted(platforms[platform])[0]
            if platform in self._registered_names:
                continue
            if platform not in self.settings.platform_token_vars:
                var = " or ".join(PLATFORM_TOKEN_VARS.get(platform, ()))
                self.console.print(
                    f"  [dim]Found {host} remotes; set {var} to enable the {platform} MCP server[/dim]"
                )
                continue
            spec = platform_endpoint(platform, host, self.settings)
            if spec is not None:
                self.register_endpoint(spec, report)

    # -------------------------------------------------------------------------
    # 5. Templates
    # -------------------------------------------------------------------------

    def install_templates(self, report: Report) -> None:
        results = install_templates(self.settings)
        for unit_id in results["installed"]:
            self.console.print(f"  [green]✓[/green] Installed {unit_id}")
            report.add("template", unit_id, Status.OK, "installed")
        for unit_id in results["skipped"]:
            report.add("template", unit_id, Status.SKIPPED, "exists")
        for unit_id, reason in results["failed"]:
            self.console.print(f"  [red]✗[/red] {unit_id}: {reason}")
            report.add("template", unit_id, Status.FAILED, reason)
        if results["skipped"]:
            self.console.print(f"  [dim]{len(results['skipped'])} already present[/dim]")
