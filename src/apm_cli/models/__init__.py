"""Models for APM CLI data structures."""

from .apm_package import (
    APMPackage,
    DependencyKey,
    DependencyReference,
    GitReferenceType,
    HostType,
    PACKAGE_MARKER_FILES,
    VIRTUAL_FILE_EXTENSIONS,
    has_package_marker,
    load_installed_package,
    parse_git_reference,
)

__all__ = [
    "APMPackage",
    "DependencyKey",
    "DependencyReference",
    "GitReferenceType",
    "HostType",
    "PACKAGE_MARKER_FILES",
    "VIRTUAL_FILE_EXTENSIONS",
    "has_package_marker",
    "load_installed_package",
    "parse_git_reference",
]
