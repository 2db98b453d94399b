"""Per-realm links to the applications' landing pages."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Optional

import yaml

from .config import load_yaml_file


logger = logging.getLogger("assistant.realm_links")


class RealmLinkProvider:
    """Resolve a realm to the URL configured for it in a YAML mapping."""

    def __init__(self, path: Optional[Path]) -> None:
        self._links = self._load(path)

    @staticmethod
    def _load(path: Optional[Path]) -> Dict[str, str]:
        if path is None or not path.exists():
            logger.warning("Realm links file %s not found", path)
            return {}
        try:
            raw = load_yaml_file(path)
        except (OSError, ValueError, yaml.YAMLError):
            logger.exception("Failed to read realm links from %s", path)
            return {}

        links: Dict[str, str] = {}
        for key, value in raw.items():
            realm = str(key or "").strip()
            url = str(value or "").strip()
            if realm and url:
                links[realm.lower()] = url
        return links

    def __len__(self) -> int:
        return len(self._links)

    def get_link(self, realm: Optional[str]) -> Optional[str]:
        if not realm or not realm.strip():
            return None
        return self._links.get(realm.strip().lower())


__all__ = ["RealmLinkProvider"]
