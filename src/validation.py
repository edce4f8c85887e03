"""Pre-flight validation checks for reconciliation runs.

This module provides checks that run before any action executes, catching
invocation problems early with actionable error messages. Nothing here
changes host state.
"""

import logging
import os
import socket
from pathlib import Path
from typing import Callable, Iterable, Optional

import requests
import urllib3

from common import Target, command_exists

# Suppress SSL warnings for self-signed API server certs
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

logger = logging.getLogger(__name__)

ROLE_CONTROL_PLANE = 'control-plane'
ROLE_WORKER = 'worker'
ROLE_NONE = 'none'


# -----------------------------------------------------------------------------
# Privileges and tools
# -----------------------------------------------------------------------------

def validate_root(euid: Optional[int] = None) -> list[str]:
    """Return errors unless running as root."""
    if euid is None:
        euid = os.geteuid()
    if euid != 0:
        return [
            "Must be run as root\n"
            "  Use: sudo node-reconciler <join|reset>"
        ]
    return []


def required_tools(plan: Iterable) -> list[str]:
    """Binaries the actions in a plan call, in first-use order."""
    tools: dict[str, None] = {}
    for action in plan:
        for tool in getattr(action, 'tools', ()):
            tools.setdefault(tool, None)
    return list(tools)


def validate_tools(plan: Iterable, which: Callable[[str], bool] = command_exists) -> tuple[list[str], list[str]]:
    """Check the binaries a plan needs.

    Missing tools are not errors: the actions using them are skipped at run
    time. They are reported so the operator knows before the run.

    Returns:
        (present, missing) tool names
    """
    present, missing = [], []
    for tool in required_tools(plan):
        (present if which(tool) else missing).append(tool)
    return present, missing


# -----------------------------------------------------------------------------
# Control plane
# -----------------------------------------------------------------------------

def validate_control_plane(endpoint: str, timeout: float = 10.0) -> list[str]:
    """Check the API server behind endpoint answers HTTPS.

    Any HTTP response counts as reachable, including 401/403 from an API
    server that rejects anonymous requests.

    Args:
        endpoint: host:port or https:// URL of the API server
        timeout: Request timeout in seconds

    Returns:
        List of validation error messages (empty if reachable)
    """
    if not endpoint:
        return [
            "No control-plane endpoint configured for join\n"
            "  Set reconciler.join.command or reconciler.join.endpoint in the config file"
        ]

    url = endpoint if endpoint.startswith(('https://', 'http://')) else f"https://{endpoint}"
    try:
        resp = requests.get(
            f"{url.rstrip('/')}/version",
            verify=False,  # Cluster CA not trusted yet
            timeout=timeout
        )
        logger.debug(f"Control plane {url} answered HTTP {resp.status_code}")
    except requests.exceptions.ConnectTimeout:
        return [
            f"Connection timeout to control plane {endpoint}\n"
            f"  Check the API server is up and port 6443 is open"
        ]
    except requests.exceptions.ConnectionError as e:
        return [
            f"Cannot connect to control plane {endpoint}\n"
            f"  Error: {e}"
        ]
    except requests.exceptions.RequestException as e:
        return [f"Control plane check failed for {endpoint}: {e}"]
    return []


# -----------------------------------------------------------------------------
# Node role
# -----------------------------------------------------------------------------

def detect_node_role(root: Path = Path('/')) -> str:
    """Informational node role from kubeadm artifacts.

    admin.conf means a control-plane node, kubelet.conf alone a worker.
    The role never changes what a run does.
    """
    kubernetes = Path(root) / 'etc' / 'kubernetes'
    if (kubernetes / 'admin.conf').exists():
        return ROLE_CONTROL_PLANE
    if (kubernetes / 'kubelet.conf').exists():
        return ROLE_WORKER
    return ROLE_NONE


# -----------------------------------------------------------------------------
# Preflight
# -----------------------------------------------------------------------------

def run_preflight_checks(target: Target,
                         plan: Iterable,
                         control_plane: str = '',
                         root: Path = Path('/'),
                         which: Callable[[str], bool] = command_exists,
                         euid: Optional[int] = None,
                         timeout: float = 10.0) -> tuple[bool, dict]:
    """Run preflight checks for a target.

    Args:
        target: Target state of the run
        plan: Actions that will run
        control_plane: API server endpoint (join only)
        root: Filesystem prefix of the host
        which: Tool lookup
        euid: Effective uid (defaults to the current process)
        timeout: Control-plane request timeout

    Returns:
        (success, results) tuple where results contains check details
    """
    results: dict[str, dict[str, list[str]]] = {
        'privileges': {'passed': [], 'failed': [], 'warnings': []},
        'tools': {'passed': [], 'failed': [], 'warnings': []},
        'control_plane': {'passed': [], 'failed': [], 'warnings': []},
        'node': {'passed': [], 'failed': [], 'warnings': []},
    }
    plan = list(plan)

    root_errors = validate_root(euid)
    if root_errors:
        results['privileges']['failed'].extend(root_errors)
    else:
        results['privileges']['passed'].append("Running as root")

    present, missing = validate_tools(plan, which)
    if present:
        results['tools']['passed'].append(f"Found: {', '.join(present)}")
    for tool in missing:
        results['tools']['warnings'].append(f"{tool} not found (actions using it will be skipped)")

    if target == Target.JOIN:
        cp_errors = validate_control_plane(control_plane, timeout=timeout)
        if cp_errors:
            results['control_plane']['failed'].extend(cp_errors)
        else:
            results['control_plane']['passed'].append(f"API server reachable at {control_plane}")

    role = detect_node_role(root)
    results['node']['passed'].append(f"Detected node role: {role}")
    if target == Target.JOIN and role != ROLE_NONE:
        results['node']['warnings'].append(
            f"Node already has kubeadm state ({role}); join will only fill in what is missing"
        )

    success = all(len(cat['failed']) == 0 for cat in results.values())
    return success, results


def format_preflight_results(results: dict, hostname: Optional[str] = None) -> str:
    """Format preflight check results for display.

    Args:
        results: Results dict from run_preflight_checks
        hostname: Hostname that was checked (defaults to this host)

    Returns:
        Formatted string for display
    """
    if hostname is None:
        hostname = socket.gethostname()
    lines = [f"\nPreflight checks for '{hostname}':\n"]

    category_names = {
        'privileges': 'Privileges',
        'tools': 'Tools',
        'control_plane': 'Control plane',
        'node': 'Node',
    }

    for key, name in category_names.items():
        category = results.get(key, {'passed': [], 'failed': [], 'warnings': []})
        if category['passed'] or category['failed'] or category.get('warnings'):
            lines.append(f"{name}:")
            for item in category['passed']:
                lines.append(f"✓ {item}")
            for item in category.get('warnings', []):
                lines.append(f"! {item}")
            for item in category['failed']:
                # Handle multi-line errors
                first_line = item.split('\n')[0]
                lines.append(f"✗ {first_line}")
                for line in item.split('\n')[1:]:
                    lines.append(f"  {line}")
            lines.append("")

    all_passed = all(
        len(cat['failed']) == 0
        for cat in results.values()
    )

    if all_passed:
        lines.append("All checks passed.")
    else:
        lines.append("Some checks failed. Fix issues or re-run with --skip-preflight.")

    return '\n'.join(lines)
