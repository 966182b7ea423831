"""
Runtime settings for claude-setup.

Settings are built once from the process environment and the build-time
feature file, then passed to every component. Nothing re-reads the
environment mid-run.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple


# =============================================================================
# Constants
# =============================================================================

# Written at image build time by the dev-tools feature
FEATURES_FILE = Path("/etc/container/config/enabled-features.conf")

# Skill/agent templates staged at image build time (optional)
STAGED_TEMPLATES_DIR = Path("/etc/container/config/claude-templates")

# Where the shell profile stashes ANTHROPIC_AUTH_TOKEN so it leaves the env
TOKEN_FILE = Path("/dev/shm/anthropic-auth-token")

DEFAULT_MARKETPLACE = "anthropics/claude-plugins-official"

DEFAULT_WATCHER_TIMEOUT = 4 * 60 * 60

# Seconds between credential checks when file notifications are unavailable
DEFAULT_POLL_INTERVAL = 5.0

# Token variables per git hosting platform, in order of preference
PLATFORM_TOKEN_VARS = {
    "github": ("GITHUB_TOKEN", "GH_TOKEN"),
    "gitlab": ("GITLAB_TOKEN",),
}

# Toolchain flags, in the order they are listed to the user
TOOLCHAIN_FLAGS = {
    "INCLUDE_PYTHON_DEV": "Python",
    "INCLUDE_NODE_DEV": "Node.js",
    "INCLUDE_RUST_DEV": "Rust",
    "INCLUDE_RUBY_DEV": "Ruby",
    "INCLUDE_GOLANG_DEV": "Go",
    "INCLUDE_JAVA_DEV": "Java",
    "INCLUDE_KOTLIN_DEV": "Kotlin",
    "INCLUDE_ANDROID_DEV": "Android",
}

SUPPORT_TOOL_FLAGS = {
    "INCLUDE_DOCKER": "Docker",
    "INCLUDE_KUBERNETES": "Kubernetes",
    "INCLUDE_TERRAFORM": "Terraform",
    "INCLUDE_AWS": "AWS CLI",
    "INCLUDE_GCLOUD": "Google Cloud SDK",
    "INCLUDE_CLOUDFLARE": "Cloudflare tools",
}

CLOUD_FLAGS = (
    "INCLUDE_KUBERNETES",
    "INCLUDE_TERRAFORM",
    "INCLUDE_AWS",
    "INCLUDE_GCLOUD",
    "INCLUDE_CLOUDFLARE",
)

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


# =============================================================================
# Helpers
# =============================================================================

def parse_bool(value: Optional[str], default: bool = False) -> bool:
    """Interpret a flag value such as 'true', '1' or 'off'."""
    if value is None:
        return default
    value = value.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    return default


def split_list(value: Optional[str]) -> List[str]:
    """Split a comma-separated list, dropping blanks and surrounding whitespace."""
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def load_features_file(path: Path = FEATURES_FILE) -> Dict[str, str]:
    """Parse the build-time feature file.

    The file holds shell-style ``KEY=value`` lines. Comments and blank
    lines are skipped and one level of surrounding quotes is removed.
    A missing or unreadable file yields an empty dict.
    """
    try:
        text = path.read_text()
    except (OSError, UnicodeDecodeError):
        return {}

    values = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        key = key.strip()
        if key.startswith("export "):
            key = key[len("export "):].strip()
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
            value = value[1:-1]
        values[key] = value
    return values


# =============================================================================
# Settings
# =============================================================================

@dataclass(frozen=True)
class Settings:
    """Immutable configuration for one claude-setup process."""

    home: Path
    workspace: Path = Path("/workspace")
    token_file: Path = TOKEN_FILE
    templates_dir: Path = STAGED_TEMPLATES_DIR
    features: Mapping[str, bool] = field(default_factory=dict)

    auth_token: Optional[str] = None
    secret_ref: Optional[str] = None
    secret_resolver_token: Optional[str] = None

    marketplace: str = DEFAULT_MARKETPLACE
    extra_plugins: Tuple[str, ...] = ()
    extra_endpoints: Tuple[str, ...] = ()
    user_endpoints: Tuple[str, ...] = ()
    mcp_auto_auth: bool = True
    auto_detect_endpoints: bool = True
    # Platform -> name of the environment variable holding its token
    platform_token_vars: Mapping[str, str] = field(default_factory=dict)
    gitlab_api_url: Optional[str] = None

    watcher_timeout: float = DEFAULT_WATCHER_TIMEOUT
    claude_bin: str = "claude"

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        features_file: Path = FEATURES_FILE,
        home: Optional[Path] = None,
    ) -> "Settings":
        """Build settings from the environment and the feature file.

        Environment values win over the feature file. Feature flags are
        read from both, so a runtime ``INCLUDE_DOCKER=true`` overrides the
        build-time value.
        """
        env = dict(os.environ if environ is None else environ)
        file_values = load_features_file(features_file)

        def lookup(key: str) -> Optional[str]:
            value = env.get(key)
            if value is None or value == "":
                value = file_values.get(key)
            return value

        features = {
            flag: parse_bool(lookup(flag))
            for flag in list(TOOLCHAIN_FLAGS) + list(SUPPORT_TOOL_FLAGS)
        }

        extra_plugins = env.get("CLAUDE_EXTRA_PLUGINS") or file_values.get("CLAUDE_EXTRA_PLUGINS_DEFAULT")
        extra_endpoints = env.get("CLAUDE_EXTRA_MCPS") or file_values.get("CLAUDE_EXTRA_MCPS_DEFAULT")

        platform_token_vars = {}
        for platform, names in PLATFORM_TOKEN_VARS.items():
            for name in names:
                if (env.get(name) or "").strip():
                    platform_token_vars[platform] = name
                    break

        timeout = DEFAULT_WATCHER_TIMEOUT
        raw_timeout = env.get("CLAUDE_AUTH_WATCHER_TIMEOUT")
        if raw_timeout:
            try:
                timeout = float(raw_timeout)
            except ValueError:
                pass

        return cls(
            home=home or Path(env.get("HOME") or Path.home()),
            workspace=Path(env.get("WORKSPACE_DIR") or "/workspace"),
            token_file=Path(env.get("CLAUDE_TOKEN_FILE") or TOKEN_FILE),
            templates_dir=Path(env.get("CLAUDE_TEMPLATES_DIR") or STAGED_TEMPLATES_DIR),
            features=features,
            auth_token=(env.get("ANTHROPIC_AUTH_TOKEN") or "").strip() or None,
            secret_ref=(env.get("OP_ANTHROPIC_AUTH_TOKEN_REF") or "").strip() or None,
            secret_resolver_token=(env.get("OP_SERVICE_ACCOUNT_TOKEN") or "").strip() or None,
            marketplace=env.get("CLAUDE_MARKETPLACE") or DEFAULT_MARKETPLACE,
            extra_plugins=tuple(split_list(extra_plugins)),
            extra_endpoints=tuple(split_list(extra_endpoints)),
            user_endpoints=tuple(split_list(env.get("CLAUDE_USER_MCPS"))),
            mcp_auto_auth=parse_bool(env.get("CLAUDE_MCP_AUTO_AUTH"), default=True),
            auto_detect_endpoints=parse_bool(env.get("CLAUDE_AUTO_DETECT_MCPS"), default=True),
            platform_token_vars=platform_token_vars,
            gitlab_api_url=(env.get("GITLAB_API_URL") or "").strip() or None,
            watcher_timeout=timeout,
            claude_bin=env.get("CLAUDE_BIN") or "claude",
        )

    # -------------------------------------------------------------------------
    # Derived paths
    # -------------------------------------------------------------------------

    @property
    def claude_dir(self) -> Path:
        return self.home / ".claude"

    @property
    def marker_file(self) -> Path:
        return self.claude_dir / ".container-setup-complete"

    @property
    def credentials_file(self) -> Path:
        return self.claude_dir / ".credentials.json"

    @property
    def user_config_file(self) -> Path:
        """The CLI's user-level config document (holds mcpServers)."""
        return self.home / ".claude.json"

    @property
    def known_marketplaces_file(self) -> Path:
        return self.claude_dir / "plugins" / "known_marketplaces.json"

    @property
    def marketplace_name(self) -> str:
        """Short marketplace name, e.g. 'claude-plugins-official'."""
        return self.marketplace.rstrip("/").split("/")[-1].replace(".git", "")

    def feature(self, flag: str) -> bool:
        return bool(self.features.get(flag, False))

    def enabled_toolchains(self) -> List[str]:
        return [label for flag, label in TOOLCHAIN_FLAGS.items() if self.feature(flag)]

    def enabled_support_tools(self) -> List[str]:
        return [label for flag, label in SUPPORT_TOOL_FLAGS.items() if self.feature(flag)]
