"""Parser for APM collection manifests (.collection.yml)."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from ..errors import ManifestError

COLLECTION_EXTENSIONS = (".collection.yml", ".collection.yaml")

# .apm sub-directory for each item kind
_KIND_TO_SUBDIR = {
    "prompt": "prompts",
    "instruction": "instructions",
    "chat-mode": "chatmodes",
    "chatmode": "chatmodes",
    "agent": "agents",
    "context": "contexts",
}


@dataclass
class CollectionItem:
    """One file listed in a collection."""
    path: str
    kind: str

    @property
    def subdirectory(self) -> str:
        """The .apm sub-directory this item installs into."""
        return _KIND_TO_SUBDIR.get(self.kind.lower(), "prompts")


@dataclass
class CollectionManifest:
    """A parsed and validated collection manifest."""
    id: str
    name: str
    description: str
    items: List[CollectionItem]
    tags: List[str] = field(default_factory=list)
    display: Optional[Dict[str, Any]] = None

    @property
    def item_count(self) -> int:
        return len(self.items)

    def get_items_by_kind(self, kind: str) -> List[CollectionItem]:
        return [item for item in self.items if item.kind.lower() == kind.lower()]


def normalize_collection_path(virtual_path: str) -> str:
    """Strip a trailing .collection.yml/.yaml extension from a virtual path."""
    for ext in COLLECTION_EXTENSIONS:
        if virtual_path.endswith(ext):
            return virtual_path[:-len(ext)]
    return virtual_path


def find_collection_manifest(repo_dir: Path, virtual_path: str) -> Optional[Path]:
    """Locate the manifest file for a collection virtual path inside a checkout."""
    base = normalize_collection_path(virtual_path)
    for ext in COLLECTION_EXTENSIONS:
        candidate = repo_dir.joinpath(*f"{base}{ext}".split("/"))
        if candidate.is_file():
            return candidate
    return None


def parse_collection_yml(content: str) -> CollectionManifest:
    """Parse and validate collection YAML.

    Args:
        content: Raw YAML text

    Returns:
        CollectionManifest: The validated manifest

    Raises:
        ManifestError: If the YAML is invalid or required fields are missing
    """
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ManifestError(f"Invalid YAML format: {e}")

    if not isinstance(data, dict):
        raise ManifestError("Collection YAML must be a dictionary")

    missing = [name for name in ("id", "name", "description") if not data.get(name)]
    if data.get("items") is None:
        missing.append("items")
    if missing:
        raise ManifestError(f"Collection manifest missing required fields: {', '.join(missing)}")

    raw_items = data["items"]
    if not isinstance(raw_items, list):
        raise ManifestError("Collection 'items' must be a list")
    if not raw_items:
        raise ManifestError("Collection must contain at least one item")

    items = []
    for idx, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise ManifestError(f"Collection item {idx} must be a mapping")
        for required in ("path", "kind"):
            if not raw.get(required):
                raise ManifestError(f"Collection item {idx} missing required field '{required}'")
        items.append(CollectionItem(path=str(raw["path"]), kind=str(raw["kind"])))

    tags = data.get("tags") or []
    display = data.get("display")
    return CollectionManifest(
        id=str(data["id"]),
        name=str(data["name"]),
        description=str(data["description"]),
        items=items,
        tags=[str(tag) for tag in tags] if isinstance(tags, list) else [],
        display=display if isinstance(display, dict) else None,
    )
