"""
Shared fixtures: settings rooted in tmp_path and an in-memory registry.
"""

import io
import json
from pathlib import Path

import pytest
from rich.console import Console

from claude_setup.config import Settings
from claude_setup.credentials import CredentialState
from claude_setup.registry import AlreadyExistsError


MUTATING_CALLS = {"add_marketplace", "install_plugin", "add_endpoint"}


class FakeRegistry:
    """In-memory stand-in for RegistryClient that records every call.

    ``install_errors`` / ``add_endpoint_errors`` map an item to an exception,
    or to a list of exceptions raised one per call until exhausted.
    """

    def __init__(self, plugins=(), endpoints=(), marketplaces=()):
        self.plugins = set(plugins)
        self.endpoints = set(endpoints)
        self.marketplaces = set(marketplaces)
        self.calls = []
        self.install_errors = {}
        self.add_endpoint_errors = {}
        self.marketplace_error = None
        self.list_plugins_errors = []
        self.added_specs = []

    def _raise_for(self, errors, key):
        error = errors.get(key)
        if isinstance(error, list):
            if error:
                raise error.pop(0)
        elif error is not None:
            raise error

    def list_marketplaces(self):
        self.calls.append(("list_marketplaces",))
        return set(self.marketplaces)

    def add_marketplace(self, marketplace_id):
        self.calls.append(("add_marketplace", marketplace_id))
        if self.marketplace_error is not None:
            raise self.marketplace_error
        self.marketplaces.add(marketplace_id.split("/")[-1])

    def list_plugins(self):
        self.calls.append(("list_plugins",))
        if self.list_plugins_errors:
            raise self.list_plugins_errors.pop(0)
        return set(self.plugins)

    def install_plugin(self, record):
        self.calls.append(("install_plugin", str(record)))
        self._raise_for(self.install_errors, str(record))
        self.plugins.add(str(record))

    def list_endpoints(self):
        self.calls.append(("list_endpoints",))
        return set(self.endpoints)

    def add_endpoint(self, spec):
        self.calls.append(("add_endpoint", spec.name))
        self._raise_for(self.add_endpoint_errors, spec.name)
        if spec.name in self.endpoints:
            raise AlreadyExistsError(f"MCP server {spec.name} already exists in user config")
        self.endpoints.add(spec.name)
        self.added_specs.append(spec)

    def mutating_calls(self):
        return [call for call in self.calls if call[0] in MUTATING_CALLS]

    def calls_named(self, name):
        return [call for call in self.calls if call[0] == name]


class FakeProbe:
    """Returns a fixed state, or walks through a list of states."""

    def __init__(self, state=CredentialState.UNAUTHENTICATED, bearer=False):
        self.states = list(state) if isinstance(state, (list, tuple)) else [state]
        self.bearer = bearer
        self.probes = 0

    def probe(self):
        self.probes += 1
        if len(self.states) > 1:
            return self.states.pop(0)
        return self.states[0]

    def bearer_token_available(self):
        return self.bearer


@pytest.fixture
def home(tmp_path):
    path = tmp_path / "home"
    path.mkdir()
    return path


@pytest.fixture
def workspace(tmp_path):
    path = tmp_path / "workspace"
    path.mkdir()
    return path


@pytest.fixture
def make_settings(tmp_path, home, workspace):
    """Build Settings pointed at tmp_path, with keyword overrides."""

    def _make(**overrides):
        values = dict(
            home=home,
            workspace=workspace,
            token_file=tmp_path / "shm" / "anthropic-auth-token",
            templates_dir=tmp_path / "staged-templates",
            auto_detect_endpoints=False,
        )
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def settings(make_settings):
    return make_settings()


@pytest.fixture
def registry():
    return FakeRegistry()


@pytest.fixture
def console():
    return Console(file=io.StringIO(), width=200, force_terminal=False)


def console_text(console: Console) -> str:
    return console.file.getvalue()


def write_json(path: Path, data) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data))
    return path


def make_repo(path: Path, *urls) -> Path:
    """Create a directory with a .git/config listing the given remote URLs."""
    git_dir = path / ".git"
    git_dir.mkdir(parents=True)
    lines = ["[core]", "\tbare = false"]
    for i, url in enumerate(urls):
        lines += [f'[remote "r{i}"]', f"\turl = {url}", f"\tfetch = +refs/heads/*:refs/remotes/r{i}/*"]
    (git_dir / "config").write_text("\n".join(lines) + "\n")
    return path
