"""
Tests for the registry CLI wrapper: output parsing and error classification.
"""

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from claude_setup.endpoints import ServiceEndpointSpec, Transport
from claude_setup.registry import (
    AlreadyExistsError,
    PermanentRegistryError,
    PluginRecord,
    RegistryClient,
    RegistryUnavailableError,
    TransientRegistryError,
    build_add_endpoint_args,
    classify_error,
    parse_endpoint_list,
    parse_plugin_list,
)


PLUGIN_LIST_OUTPUT = """\
Installed plugins:

  ❯ commit-commands@claude-plugins-official - Git commit helpers
  ❯ pr-review-toolkit@claude-plugins-official - Review pull requests
  ❯ security-guidance-extra@claude-plugins-official - Not the one you want
"""

MCP_LIST_OUTPUT = """\
Checking MCP server health...

filesystem: npx -y @modelcontextprotocol/server-filesystem /workspace - ✓ Connected
figma-desktop: http://host.docker.internal:3845/mcp (HTTP) - ✗ Failed to connect
memory-bank: npx -y memory-bank - ✓ Connected
"""


class TestClassifyError:
    @pytest.mark.parametrize("message,expected", [
        ("Plugin 'x' not found in marketplace 'y'", TransientRegistryError),
        ("Error: Unauthorized", RegistryUnavailableError),
        ("You are not logged in. Please run /login", RegistryUnavailableError),
        ("request timed out", RegistryUnavailableError),
        ("getaddrinfo ENOTFOUND api.anthropic.com", RegistryUnavailableError),
        ("MCP server filesystem already exists in user config", AlreadyExistsError),
        ("Plugin is already installed", AlreadyExistsError),
        ("Marketplace already added", AlreadyExistsError),
        ("Invalid plugin name", PermanentRegistryError),
        ("", PermanentRegistryError),
    ])
    def test_signatures(self, message, expected):
        assert type(classify_error(message)) is expected

    def test_unavailable_is_not_retryable(self):
        assert not isinstance(classify_error("unauthorized"), TransientRegistryError)


class TestParsing:
    def test_plugin_list(self):
        plugins = parse_plugin_list(PLUGIN_LIST_OUTPUT)
        assert plugins == {
            "commit-commands@claude-plugins-official",
            "pr-review-toolkit@claude-plugins-official",
            "security-guidance-extra@claude-plugins-official",
        }

    def test_plugin_match_is_exact(self):
        plugins = parse_plugin_list(PLUGIN_LIST_OUTPUT)
        assert "security-guidance@claude-plugins-official" not in plugins

    def test_endpoint_list(self):
        names = parse_endpoint_list(MCP_LIST_OUTPUT)
        assert names == {"filesystem", "figma-desktop", "memory-bank"}
        assert "memory" not in names

    def test_empty_output(self):
        assert parse_plugin_list("No plugins installed\n") == set()
        assert parse_endpoint_list("No MCP servers configured.\n") == set()


class TestPluginRecord:
    def test_parse_with_default_marketplace(self):
        record = PluginRecord.parse("commit-commands", "claude-plugins-official")
        assert str(record) == "commit-commands@claude-plugins-official"

    def test_parse_explicit_marketplace(self):
        record = PluginRecord.parse(" my-plugin@my-market ", "claude-plugins-official")
        assert record == PluginRecord("my-plugin", "my-market")


class TestAddEndpointArgs:
    def test_stdio_with_env(self):
        spec = ServiceEndpointSpec(
            name="brave-search",
            transport=Transport.STDIO,
            command=("npx", "-y", "@modelcontextprotocol/server-brave-search"),
            env={"BRAVE_API_KEY": "${BRAVE_API_KEY}"},
        )
        assert build_add_endpoint_args(spec) == [
            "mcp", "add", "-s", "user",
            "-e", "BRAVE_API_KEY=${BRAVE_API_KEY}",
            "-t", "stdio", "brave-search", "--",
            "npx", "-y", "@modelcontextprotocol/server-brave-search",
        ]

    def test_http_headers_stay_off_command_line(self):
        spec = ServiceEndpointSpec(
            name="docs",
            transport=Transport.HTTP,
            url="https://docs.example.com/mcp/",
            headers={"Authorization": "Bearer secret"},
        )
        args = build_add_endpoint_args(spec)
        assert args == ["mcp", "add", "-s", "user", "-t", "http", "docs", "https://docs.example.com/mcp/"]
        assert not any("secret" in arg for arg in args)


class TestRegistryClient:
    @patch("claude_setup.registry.subprocess.run")
    def test_list_plugins(self, mock_run):
        mock_run.return_value = MagicMock(stdout=PLUGIN_LIST_OUTPUT, returncode=0)
        client = RegistryClient("claude", timeout=5)

        plugins = client.list_plugins()

        assert "commit-commands@claude-plugins-official" in plugins
        assert mock_run.call_args[0][0] == ["claude", "plugin", "list"]
        assert mock_run.call_args[1]["timeout"] == 5

    @patch("claude_setup.registry.subprocess.run")
    def test_install_failure_is_classified(self, mock_run):
        mock_run.side_effect = subprocess.CalledProcessError(
            1, ["claude"], output="", stderr="Plugin x not found in marketplace claude-plugins-official"
        )
        with pytest.raises(TransientRegistryError):
            RegistryClient().install_plugin(PluginRecord("x", "claude-plugins-official"))

    @patch("claude_setup.registry.subprocess.run")
    def test_already_exists_on_add(self, mock_run):
        mock_run.side_effect = subprocess.CalledProcessError(
            1, ["claude"], output="", stderr="MCP server filesystem already exists in user config"
        )
        spec = ServiceEndpointSpec(name="filesystem", transport=Transport.STDIO, command=("npx",))
        with pytest.raises(AlreadyExistsError):
            RegistryClient().add_endpoint(spec)

    @patch("claude_setup.registry.subprocess.run", side_effect=FileNotFoundError("claude"))
    def test_missing_cli_is_permanent(self, mock_run):
        with pytest.raises(PermanentRegistryError):
            RegistryClient().list_endpoints()

    @patch("claude_setup.registry.subprocess.run")
    def test_timeout_is_unavailable(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="claude", timeout=1)
        with pytest.raises(RegistryUnavailableError):
            RegistryClient(timeout=1).list_plugins()
