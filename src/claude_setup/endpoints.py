"""
MCP service endpoint definitions.

An endpoint entry from the environment is resolved to a
ServiceEndpointSpec through one of three routes:

- a known name from MCP_REGISTRY (``brave-search``, ``sentry``, ...)
- the inline URL form ``name=url[|Header:Value|...]``
- anything else is treated as an npm package run with ``npx -y``

Every spec is validated before it is handed to the registry.
"""

import ipaddress
import json
import os
import re
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Set, Tuple
from urllib.parse import urlsplit

from .config import Settings


NAME_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_-]*$")
HEADER_NAME_PATTERN = re.compile(r"^[A-Za-z0-9-]+$")
PACKAGE_PATTERN = re.compile(r"^@?[A-Za-z0-9][A-Za-z0-9._-]*(/[A-Za-z0-9._-]+)?(@[A-Za-z0-9._^~-]+)?$")

LOOPBACK_HOSTS = {"localhost", "host.docker.internal"}

# Written into ~/.claude.json as-is; the CLI expands it at connect time
AUTH_HEADER_VALUE = "Bearer ${ANTHROPIC_AUTH_TOKEN}"

FIGMA_DESKTOP_URL = "http://host.docker.internal:3845/mcp"

# Directories not worth descending into when looking for repositories
SKIP_DIRS = {"node_modules", ".venv", "venv", "__pycache__", "target", "dist", "build", "vendor"}


class EndpointError(ValueError):
    """An endpoint entry failed validation and was not registered."""


class Transport(str, Enum):
    STDIO = "stdio"
    HTTP = "http"


class Provenance(str, Enum):
    BUILTIN = "builtin"
    REGISTRY = "registry"
    URL = "url"
    PASSTHROUGH = "passthrough"


@dataclass
class ServiceEndpointSpec:
    name: str
    transport: Transport
    command: Tuple[str, ...] = ()
    url: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=dict)
    provenance: Provenance = Provenance.BUILTIN
    # Environment variables the server needs at runtime, for user hints
    required_env: Tuple[str, ...] = ()

    @property
    def target(self) -> str:
        if self.transport is Transport.HTTP:
            return self.url or ""
        return " ".join(self.command)

    def has_explicit_auth(self) -> bool:
        return any(key.lower() == "authorization" for key in self.headers)


# =============================================================================
# Known endpoints
# =============================================================================

def _npx(name: str, package: str, env: Optional[Dict[str, str]] = None,
         required: Tuple[str, ...] = ()) -> ServiceEndpointSpec:
    return ServiceEndpointSpec(
        name=name,
        transport=Transport.STDIO,
        command=("npx", "-y", package),
        env=dict(env or {}),
        provenance=Provenance.REGISTRY,
        required_env=required,
    )


MCP_REGISTRY: Dict[str, ServiceEndpointSpec] = {
    "brave-search": _npx(
        "brave-search", "@modelcontextprotocol/server-brave-search",
        {"BRAVE_API_KEY": "${BRAVE_API_KEY}"}, ("BRAVE_API_KEY",),
    ),
    "fetch": _npx("fetch", "@modelcontextprotocol/server-fetch"),
    "memory": _npx("memory", "@modelcontextprotocol/server-memory", required=("MEMORY_FILE_PATH (optional)",)),
    "sequential-thinking": _npx("sequential-thinking", "@modelcontextprotocol/server-sequential-thinking"),
    "git": _npx("git", "@modelcontextprotocol/server-git"),
    "sentry": _npx(
        "sentry", "@sentry/mcp-server",
        {"SENTRY_ACCESS_TOKEN": "${SENTRY_ACCESS_TOKEN}"}, ("SENTRY_ACCESS_TOKEN",),
    ),
    "perplexity": _npx(
        "perplexity", "@perplexity-ai/mcp-server",
        {"PERPLEXITY_API_KEY": "${PERPLEXITY_API_KEY}"}, ("PERPLEXITY_API_KEY",),
    ),
    "kagi": ServiceEndpointSpec(
        name="kagi",
        transport=Transport.STDIO,
        command=("uvx", "kagimcp"),
        env={"KAGI_API_KEY": "${KAGI_API_KEY}"},
        provenance=Provenance.REGISTRY,
        required_env=("KAGI_API_KEY",),
    ),
    "github": _npx(
        "github", "@modelcontextprotocol/server-github",
        {"GITHUB_PERSONAL_ACCESS_TOKEN": "${GITHUB_TOKEN}"}, ("GITHUB_TOKEN",),
    ),
    "gitlab": _npx(
        "gitlab", "@modelcontextprotocol/server-gitlab",
        {"GITLAB_PERSONAL_ACCESS_TOKEN": "${GITLAB_TOKEN}"}, ("GITLAB_TOKEN",),
    ),
}


def registry_spec(name: str) -> Optional[ServiceEndpointSpec]:
    """Return a fresh copy of a known endpoint, or None."""
    known = MCP_REGISTRY.get(name)
    if known is None:
        return None
    return ServiceEndpointSpec(
        name=known.name,
        transport=known.transport,
        command=known.command,
        url=known.url,
        env=dict(known.env),
        headers=dict(known.headers),
        provenance=known.provenance,
        required_env=known.required_env,
    )


def default_endpoints(settings: Settings) -> List[ServiceEndpointSpec]:
    """Endpoints every container gets."""
    return [
        ServiceEndpointSpec(
            name="filesystem",
            transport=Transport.STDIO,
            command=("npx", "-y", "@modelcontextprotocol/server-filesystem", str(settings.workspace)),
        ),
        ServiceEndpointSpec(
            name="figma-desktop",
            transport=Transport.HTTP,
            url=FIGMA_DESKTOP_URL,
        ),
    ]


# =============================================================================
# Validation
# =============================================================================

def validate_name(name: str) -> str:
    if not NAME_PATTERN.match(name or ""):
        raise EndpointError(f"invalid endpoint name '{name}'")
    return name


def is_loopback_host(host: str) -> bool:
    host = host.lower().strip("[]")
    if host in LOOPBACK_HOSTS:
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


def validate_url(url: str) -> str:
    """Accept https:// anywhere and http:// only to a loopback host."""
    if not url or any(ch.isspace() or ord(ch) < 32 or ord(ch) == 127 for ch in url):
        raise EndpointError(f"invalid URL '{url}'")
    try:
        parts = urlsplit(url)
        host = parts.hostname
        parts.port  # raises ValueError on a malformed port
    except ValueError as e:
        raise EndpointError(f"invalid URL '{url}': {e}") from e
    if not host:
        raise EndpointError(f"URL has no host: '{url}'")
    scheme = parts.scheme.lower()
    if scheme == "https":
        return url
    if scheme == "http" and is_loopback_host(host):
        return url
    raise EndpointError(f"URL must be https:// or http:// to localhost: '{url}'")


def validate_header(name: str, value: str) -> Tuple[str, str]:
    if not HEADER_NAME_PATTERN.match(name):
        raise EndpointError(f"invalid header name '{name}'")
    if any(ord(ch) < 32 or ord(ch) == 127 for ch in value):
        raise EndpointError(f"header '{name}' contains control characters")
    return name, value


def validate_spec(spec: ServiceEndpointSpec) -> ServiceEndpointSpec:
    validate_name(spec.name)
    if spec.transport is Transport.HTTP:
        validate_url(spec.url or "")
        for key, value in spec.headers.items():
            validate_header(key, value)
    elif not spec.command:
        raise EndpointError(f"endpoint '{spec.name}' has no command")
    return spec


# =============================================================================
# Resolution
# =============================================================================

def parse_url_entry(entry: str) -> ServiceEndpointSpec:
    """Parse ``name=url[|Header:Value|...]``."""
    name, _, rest = entry.partition("=")
    name = name.strip()
    validate_name(name)

    url, *raw_headers = rest.split("|")
    url = url.strip()
    validate_url(url)
    # Redirects on the slash-less form drop the Authorization header
    if not url.endswith("/"):
        url += "/"

    headers = {}
    for raw in raw_headers:
        if not raw.strip():
            continue
        key, sep, value = raw.partition(":")
        if not sep:
            raise EndpointError(f"header '{raw}' is not in Name:Value form")
        key, value = validate_header(key.strip(), value.strip())
        headers[key] = value

    return ServiceEndpointSpec(
        name=name,
        transport=Transport.HTTP,
        url=url,
        headers=headers,
        provenance=Provenance.URL,
    )


def passthrough_name(package: str) -> str:
    """``@scope/foo-server@1.2`` -> ``foo-server``."""
    body = package[1:] if package.startswith("@") else package
    body = body.split("@", 1)[0]
    return body.rsplit("/", 1)[-1]


def resolve_entry(entry: str) -> ServiceEndpointSpec:
    """Resolve one entry from CLAUDE_EXTRA_MCPS or CLAUDE_USER_MCPS."""
    entry = entry.strip()
    if not entry:
        raise EndpointError("empty endpoint entry")

    if "=" in entry:
        return validate_spec(parse_url_entry(entry))

    known = registry_spec(entry)
    if known is not None:
        return validate_spec(known)

    if not PACKAGE_PATTERN.match(entry):
        raise EndpointError(f"'{entry}' is not a known endpoint or an npm package name")
    return validate_spec(ServiceEndpointSpec(
        name=passthrough_name(entry),
        transport=Transport.STDIO,
        command=("npx", "-y", entry),
        provenance=Provenance.PASSTHROUGH,
    ))


# =============================================================================
# Header injection (~/.claude.json)
# =============================================================================

def load_json_document(path: Path) -> Dict:
    """Load a JSON object; a missing or empty file is an empty document."""
    if not path.exists():
        return {}
    text = path.read_text()
    if not text.strip():
        return {}
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError(f"{path} does not contain a JSON object")
    return data


def write_text_atomic(path: Path, text: str) -> None:
    """Write through a temp file in the same directory, then rename.

    Readers see the old file or the complete new one, never a partial write.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w") as f:
            f.write(text)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def write_json_atomic(path: Path, data: Dict) -> None:
    write_text_atomic(path, json.dumps(data, indent=2) + "\n")


def merge_endpoint_headers(
    config_path: Path,
    name: str,
    headers: Dict[str, str],
    defaults: Optional[Dict[str, str]] = None,
) -> Dict[str, str]:
    """Merge headers into ``mcpServers.<name>.headers`` of the config document.

    ``headers`` replace existing values of the same name. ``defaults`` are
    only set when no header of that name exists yet (case-insensitive).
    Everything else in the document is left untouched. Returns the merged
    header map.

    Raises:
        ValueError: the document is not valid JSON. It is not rewritten.
    """
    data = load_json_document(config_path)
    servers = data.setdefault("mcpServers", {})
    server = servers.setdefault(name, {})
    current = server.setdefault("headers", {})

    for key, value in headers.items():
        for existing in [k for k in current if k.lower() == key.lower() and k != key]:
            del current[existing]
        current[key] = value

    for key, value in (defaults or {}).items():
        if not any(k.lower() == key.lower() for k in current):
            current[key] = value

    write_json_atomic(config_path, data)
    return dict(current)


# =============================================================================
# Platform detection from git remotes
# =============================================================================

_REMOTE_HOST_PATTERNS = [
    re.compile(r"^https?://(?:[^@/]+@)?([^/]+)/"),
    re.compile(r"^git@([^:]+):"),
    re.compile(r"^ssh://[^@]+@([^/]+)/"),
]


def parse_remote_host(url: str) -> Optional[str]:
    """Return the lowercase host of a git remote URL, without port."""
    url = url.strip()
    for pattern in _REMOTE_HOST_PATTERNS:
        match = pattern.match(url)
        if match:
            host = match.group(1).split(":", 1)[0].lower()
            return host or None
    return None


def classify_host(host: str) -> Optional[str]:
    if host == "github.com":
        return "github"
    if host == "gitlab.com" or "gitlab" in host:
        return "gitlab"
    return None


def find_git_repos(root: Path, max_depth: int = 3) -> Iterator[Path]:
    """Yield directories under root (inclusive) that have a .git entry.

    ``.git`` may be a file (worktrees and submodules) as well as a directory.
    """
    root = Path(root)
    if not root.is_dir():
        return
    base_depth = len(root.parts)
    for dirpath, dirnames, filenames in os.walk(root):
        current = Path(dirpath)
        if ".git" in dirnames or ".git" in filenames:
            yield current
        depth = len(current.parts) - base_depth
        if depth >= max_depth:
            dirnames[:] = []
        else:
            dirnames[:] = sorted(
                d for d in dirnames if not d.startswith(".") and d not in SKIP_DIRS
            )


def git_config_path(repo: Path) -> Optional[Path]:
    """Locate the config file holding a repository's remotes.

    A ``.git`` file points at the real git dir (``gitdir: <path>``). For a
    worktree that dir names the shared repository in its ``commondir`` file.
    """
    dot_git = repo / ".git"
    if dot_git.is_dir():
        return dot_git / "config"
    try:
        text = dot_git.read_text()
    except (OSError, UnicodeDecodeError):
        return None
    if not text.startswith("gitdir:"):
        return None
    git_dir = Path(text[len("gitdir:"):].strip())
    if not git_dir.is_absolute():
        git_dir = repo / git_dir

    try:
        common = (git_dir / "commondir").read_text().strip()
    except (OSError, UnicodeDecodeError):
        return git_dir / "config"
    common_dir = Path(common)
    if not common_dir.is_absolute():
        common_dir = git_dir / common_dir
    return common_dir / "config"


def read_remote_urls(repo: Path) -> List[str]:
    config = git_config_path(repo)
    if config is None:
        return []
    try:
        lines = config.read_text().splitlines()
    except (OSError, UnicodeDecodeError):
        return []
    urls = []
    for line in lines:
        line = line.strip()
        if line.startswith("url"):
            key, sep, value = line.partition("=")
            if sep and key.strip() == "url":
                urls.append(value.strip())
    return urls


def detect_platforms(root: Path, max_depth: int = 3) -> Dict[str, Set[str]]:
    """Map platform ('github'/'gitlab') to the remote hosts seen for it."""
    found: Dict[str, Set[str]] = {}
    for repo in find_git_repos(root, max_depth):
        for url in read_remote_urls(repo):
            host = parse_remote_host(url)
            platform = classify_host(host) if host else None
            if platform:
                found.setdefault(platform, set()).add(host)
    return found


# Server variable that receives the platform token
PLATFORM_TOKEN_ENV = {
    "github": "GITHUB_PERSONAL_ACCESS_TOKEN",
    "gitlab": "GITLAB_PERSONAL_ACCESS_TOKEN",
}


def platform_endpoint(platform: str, host: str, settings: Settings) -> Optional[ServiceEndpointSpec]:
    """The known endpoint for a detected platform.

    The token reference names whichever variable actually holds the token
    (GH_TOKEN when GITHUB_TOKEN is unset).
    """
    spec = registry_spec(platform)
    if spec is None:
        return None
    token_var = settings.platform_token_vars.get(platform)
    if token_var and platform in PLATFORM_TOKEN_ENV:
        spec.env[PLATFORM_TOKEN_ENV[platform]] = "${" + token_var + "}"
        spec.required_env = (token_var,)
    if platform == "gitlab":
        spec.env["GITLAB_API_URL"] = settings.gitlab_api_url or f"https://{host}/api/v4"
    return spec
