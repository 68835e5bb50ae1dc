"""Version management for APM CLI."""

import re
import sys
from importlib import metadata
from pathlib import Path

DISTRIBUTION_NAME = "apm-cli"

# Build-time version constant (injected by frozen builds)
__BUILD_VERSION__ = None

_VERSION_RE = re.compile(r'^version\s*=\s*["\']([^"\']+)["\']', re.MULTILINE)
_PEP440_RE = re.compile(r'^\d+\.\d+\.\d+(a\d+|b\d+|rc\d+)?$')


def _version_from_pyproject() -> str:
    if getattr(sys, 'frozen', False):
        pyproject_path = Path(sys._MEIPASS) / 'pyproject.toml'
    else:
        pyproject_path = Path(__file__).resolve().parents[2] / "pyproject.toml"

    if not pyproject_path.exists():
        return "unknown"
    try:
        content = pyproject_path.read_text(encoding='utf-8')
    except OSError:
        return "unknown"

    match = _VERSION_RE.search(content)
    if match and _PEP440_RE.match(match.group(1)):
        return match.group(1)
    return "unknown"


def get_version() -> str:
    """
    Get the current version.

    Order: build-time constant, installed distribution metadata, then the
    pyproject.toml of a source checkout.

    Returns:
        str: Version string, "unknown" if none can be determined
    """
    if __BUILD_VERSION__:
        return __BUILD_VERSION__

    try:
        return metadata.version(DISTRIBUTION_NAME)
    except metadata.PackageNotFoundError:
        return _version_from_pyproject()


__version__ = get_version()
