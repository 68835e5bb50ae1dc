"""Helpers for GitHub, GitHub Enterprise and Azure DevOps hostnames."""

import re
from typing import Optional

DEFAULT_HOST = "github.com"


def is_azure_devops_hostname(hostname: Optional[str]) -> bool:
    """Return True if hostname is Azure DevOps (cloud or legacy)."""
    if not hostname:
        return False
    h = hostname.lower()
    return h == "dev.azure.com" or h.endswith(".visualstudio.com")


def is_github_hostname(hostname: Optional[str]) -> bool:
    """Return True if hostname is GitHub cloud or GitHub Enterprise Cloud."""
    if not hostname:
        return False
    h = hostname.lower()
    return h == "github.com" or h.endswith(".ghe.com")


def is_supported_git_host(hostname: Optional[str], default_host: str = DEFAULT_HOST) -> bool:
    """Return True if hostname is a Git host APM can install from.

    Args:
        hostname: Hostname to check
        default_host: The configured default host, always accepted

    Returns:
        bool: True if the host is supported
    """
    if not hostname:
        return False
    if is_github_hostname(hostname) or is_azure_devops_hostname(hostname):
        return True
    return hostname.lower() == (default_host or "").lower()


def unsupported_host_error(hostname: str, context: Optional[str] = None) -> str:
    """Build an actionable error message for an unsupported Git host."""
    lines = []
    if context:
        lines.extend([context, ""])
    lines.extend([
        f"Unsupported Git host: '{hostname}'.",
        "",
        "APM only allows these Git hosts by default:",
        "  - github.com",
        "  - *.ghe.com (GitHub Enterprise Cloud)",
        "  - dev.azure.com, *.visualstudio.com (Azure DevOps)",
        "",
        f"To use '{hostname}', set the GITHUB_HOST environment variable:",
        f"  export GITHUB_HOST={hostname}",
    ])
    return "\n".join(lines)


def build_https_clone_url(host: str, repo_ref: str, token: Optional[str] = None) -> str:
    """Build an HTTPS clone URL, using the x-access-token form when a token is given."""
    if token:
        return f"https://x-access-token:{token}@{host}/{repo_ref}.git"
    return f"https://{host}/{repo_ref}"


def build_ssh_url(host: str, repo_ref: str) -> str:
    """Build an SSH clone URL for the given host and owner/repo."""
    return f"git@{host}:{repo_ref}.git"


def build_ado_https_clone_url(org: str, project: str, repo: str,
                              token: Optional[str] = None, host: str = "dev.azure.com") -> str:
    """Build an Azure DevOps HTTPS clone URL."""
    if token:
        return f"https://{token}@{host}/{org}/{project}/_git/{repo}"
    return f"https://{host}/{org}/{project}/_git/{repo}"


def sanitize_token_url_in_message(message: str, host: str = DEFAULT_HOST) -> str:
    """Mask credentials embedded in HTTPS URLs inside a message."""
    return re.sub(rf'https://[^@\s]+@{re.escape(host)}', f'https://***@{host}', message)
