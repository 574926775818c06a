"""Preflight checks for the deskrun host.

Verifies that the external tools are installed, that Docker is reachable
for kind, that configured installations are valid and that their
credentials can see the target repository.
"""

import logging
import os
import shutil
from typing import Optional
from urllib.parse import urlparse

import requests
import urllib3

from config import ConfigError, DriverConfig
from errors import ValidationError
from installation import AuthMethod, InstallationSpec

logger = logging.getLogger(__name__)

# GitHub Enterprise hosts are commonly fronted by internal CAs
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

GITHUB_API = 'https://api.github.com'
DOCKER_SOCKET = '/var/run/docker.sock'


# ---------------------------------------------------------------------------
# Host tooling
# ---------------------------------------------------------------------------

def validate_tools(config: Optional[DriverConfig] = None) -> list[str]:
    """Check that kind, kapp and kubectl are on PATH.

    Returns:
        List of error messages (empty if all tools are found)
    """
    config = config or DriverConfig()
    errors = []
    for tool, binary in (('kind', config.kind_bin), ('kapp', config.kapp_bin), ('kubectl', config.kubectl_bin)):
        if shutil.which(binary) is None:
            errors.append(
                f"{tool} not found (looked for '{binary}')\n"
                f"  Install {tool} or set {tool}_bin in settings.yaml"
            )
    return errors


def validate_docker(socket_path: str = DOCKER_SOCKET) -> list[str]:
    """Check the Docker daemon socket kind needs to run its node."""
    if shutil.which('docker') is None:
        return ["docker not found\n  kind runs the cluster node as a Docker container"]
    if not os.path.exists(socket_path):
        return [f"Docker socket {socket_path} not found\n  Start the Docker daemon"]
    if not os.access(socket_path, os.R_OK | os.W_OK):
        return [
            f"No permission on {socket_path}\n"
            f"  Add your user to the docker group, then log in again"
        ]
    return []


# ---------------------------------------------------------------------------
# Installations
# ---------------------------------------------------------------------------

def parse_repository(repository: str) -> tuple[str, str, str]:
    """Split a repository URL into (api_base, owner, repo).

    github.com uses the public API; other hosts are treated as GitHub
    Enterprise with the API under /api/v3.
    """
    parsed = urlparse(repository)
    parts = [p for p in parsed.path.split('/') if p]
    if parsed.scheme != 'https' or not parsed.netloc or len(parts) < 2:
        raise ValidationError(f"repository '{repository}' is not an https://host/owner/repo URL", reason='repository')
    owner, repo = parts[0], parts[1]
    if repo.endswith('.git'):
        repo = repo[:-len('.git')]
    if parsed.netloc == 'github.com':
        return GITHUB_API, owner, repo
    return f"https://{parsed.netloc}/api/v3", owner, repo


def validate_repository_access(repository: str, token: str, timeout: int = 10) -> list[str]:
    """Validate that a token can read the repository through the GitHub API.

    Args:
        repository: Repository URL, e.g. https://github.com/owner/repo
        token: Personal access token

    Returns:
        List of error messages (empty if the repository is reachable)
    """
    if not token:
        return [f"No token configured for {repository}\n  Re-add the installation with --auth-value"]

    try:
        api_base, owner, repo = parse_repository(repository)
    except ValidationError as e:
        return [str(e)]

    errors = []
    try:
        resp = requests.get(
            f"{api_base}/repos/{owner}/{repo}",
            headers={
                'Authorization': f'Bearer {token}',
                'Accept': 'application/vnd.github+json',
            },
            timeout=timeout,
        )

        if resp.status_code == 401:
            errors.append(
                f"Token rejected for {repository}\n"
                f"  Generate a new token with the 'repo' scope and re-add the installation"
            )
        elif resp.status_code == 404:
            errors.append(
                f"Repository {owner}/{repo} not found or not visible to the token\n"
                f"  Check the URL and that the token has access to private repositories"
            )
        elif resp.status_code != 200:
            errors.append(
                f"Unexpected API response for {owner}/{repo}: {resp.status_code}\n"
                f"  Response: {resp.text[:100]}"
            )
        else:
            logger.info(f"Token can access {owner}/{repo}")

    except requests.exceptions.ConnectionError:
        errors.append(
            f"Cannot connect to {api_base}\n"
            f"  Check network access and proxy settings"
        )
    except requests.exceptions.Timeout:
        errors.append(f"Timeout connecting to {api_base}")
    except requests.exceptions.RequestException as e:
        errors.append(f"Error validating token for {repository}: {e}")

    return errors


def validate_installation(spec: InstallationSpec) -> list[str]:
    """Check one installation's invariants, including reserved cache targets."""
    try:
        spec.validate()
    except ValidationError as e:
        return [f"{spec.name}: {e.message}"]
    return []


# ---------------------------------------------------------------------------
# Preflight
# ---------------------------------------------------------------------------

def run_preflight_checks(store, config: Optional[DriverConfig] = None,
                         check_access: bool = True) -> tuple[bool, dict]:
    """Run standalone preflight checks.

    Args:
        store: InstallationStore holding the configured installations
        config: Driver settings (tool binaries)
        check_access: Query the GitHub API for token-authenticated installations

    Returns:
        (success, results) tuple where results contains check details
    """
    config = config or DriverConfig()
    results: dict[str, dict[str, list[str]]] = {
        'tools': {'passed': [], 'failed': []},
        'docker': {'passed': [], 'failed': []},
        'installations': {'passed': [], 'failed': []},
        'github': {'passed': [], 'failed': []},
    }

    tool_errors = validate_tools(config)
    if tool_errors:
        results['tools']['failed'].extend(tool_errors)
    else:
        results['tools']['passed'].append("kind, kapp and kubectl found")

    docker_errors = validate_docker()
    if docker_errors:
        results['docker']['failed'].extend(docker_errors)
    else:
        results['docker']['passed'].append(f"{DOCKER_SOCKET} accessible")

    try:
        specs, unreadable = store.entries()
    except ConfigError as e:
        results['installations']['failed'].append(str(e))
        specs, unreadable = [], {}
    results['installations']['failed'].extend(str(e) for e in unreadable.values())

    if not specs and not results['installations']['failed']:
        results['installations']['passed'].append("No installations configured")

    for spec in specs:
        errors = validate_installation(spec)
        if errors:
            results['installations']['failed'].extend(errors)
            continue
        results['installations']['passed'].append(f"{spec.name} ({spec.container_mode.value})")

        if not check_access:
            continue
        if spec.auth_method != AuthMethod.TOKEN:
            results['github']['passed'].append(f"{spec.name}: GitHub App credentials not checked")
            continue
        access_errors = validate_repository_access(spec.repository, spec.auth_secret)
        if access_errors:
            results['github']['failed'].extend(f"{spec.name}: {e}" for e in access_errors)
        else:
            results['github']['passed'].append(f"{spec.name}: token can read {spec.repository}")

    all_failed = []
    for category in results.values():
        all_failed.extend(category['failed'])

    return len(all_failed) == 0, results


def format_preflight_results(results: dict) -> str:
    """Format preflight check results for display.

    Args:
        results: Results dict from run_preflight_checks

    Returns:
        Formatted string for display
    """
    lines = ["\nPreflight checks:\n"]

    category_names = {
        'tools': 'Tools',
        'docker': 'Docker',
        'installations': 'Installations',
        'github': 'GitHub access',
    }

    for key, name in category_names.items():
        category = results.get(key, {'passed': [], 'failed': []})
        if category['passed'] or category['failed']:
            lines.append(f"{name}:")
            for item in category['passed']:
                lines.append(f"✓ {item}")
            for item in category['failed']:
                item_lines = item.split('\n')
                lines.append(f"✗ {item_lines[0]}")
                for line in item_lines[1:]:
                    lines.append(f"  {line}")
            lines.append("")

    all_passed = all(len(cat['failed']) == 0 for cat in results.values())
    if all_passed:
        lines.append("All checks passed")
    else:
        failed = sum(len(cat['failed']) for cat in results.values())
        lines.append(f"{failed} check(s) failed")

    return '\n'.join(lines)
