"""
Identity provider registry.

Provider configurations are read from a JSON file holding a list of
provider objects. Entries that fail validation are logged and skipped so
that one broken provider does not take the others down.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from samlflow.types.provider import ProviderConfig

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Configured identity providers, keyed by id."""

    def __init__(self, providers: Optional[Iterable[ProviderConfig]] = None):
        self._providers: Dict[int, ProviderConfig] = {}
        for provider in providers or []:
            self.add(provider)

    @classmethod
    def from_file(cls, path: str) -> "ProviderRegistry":
        """
        Load providers from a JSON file.

        A missing file yields an empty registry; the login page then simply
        shows no provider buttons.
        """
        registry = cls()
        file_path = Path(path)
        if not file_path.exists():
            logger.info(f"No provider file at {file_path}, SSO providers disabled")
            return registry

        try:
            with open(file_path, "r") as f:
                entries = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            logger.error(f"Error loading provider file {file_path}: {e}")
            return registry

        if not isinstance(entries, list):
            logger.error(f"Provider file {file_path} must contain a list")
            return registry

        for entry in entries:
            registry._add_raw(entry)
        logger.info(f"Loaded {len(registry)} identity provider(s) from {file_path}")
        return registry

    def _add_raw(self, entry: Dict[str, Any]) -> None:
        try:
            provider = ProviderConfig.model_validate(entry)
        except ValidationError as e:
            name = entry.get("name", "?") if isinstance(entry, dict) else "?"
            logger.error(f"Skipping invalid provider '{name}': {e.error_count()} error(s)")
            return
        self.add(provider)

    def add(self, provider: ProviderConfig) -> None:
        if provider.id in self._providers:
            logger.warning(f"Provider id {provider.id} defined twice, keeping the last one")
        self._providers[provider.id] = provider

    def get(self, idp_id: int) -> Optional[ProviderConfig]:
        """Provider by id, deleted ones excluded."""
        provider = self._providers.get(idp_id)
        if provider is None or provider.is_deleted:
            return None
        return provider

    def find_by_email_domain(self, email: str) -> Optional[int]:
        """
        Id of the active provider registered for the domain of an e-mail address.

        Used to route users who typed their e-mail into the regular login
        form to their SSO provider.
        """
        if not email or "@" not in email:
            return None
        for provider in self._providers.values():
            if provider.is_usable and provider.matches_domain(email):
                return provider.id
        return None

    def login_buttons(self, length: int = 12) -> List[Dict[str, Any]]:
        """Active and valid providers for the login page, names truncated to length."""
        return [
            {
                "id": provider.id,
                "name": provider.name[:length],
                "icon": provider.conf_icon,
            }
            for provider in sorted(self._providers.values(), key=lambda p: p.id)
            if provider.is_usable
        ]

    def __len__(self) -> int:
        return len(self._providers)

    def __iter__(self):
        return iter(self._providers.values())
