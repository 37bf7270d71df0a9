"""
Configuration Service
Loads the read-only routing configuration snapshot supplied by the administrative side
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from call_router.core.config import settings
from call_router.core.exceptions import ConfigurationError, TenantInactiveError, TenantNotFoundError
from call_router.core.logging import get_logger
from call_router.models.routing import ConfigSnapshot, GroupSnapshot
from call_router.models.tenant import Tenant

logger = get_logger(__name__)


class ConfigurationService:
    """
    Holds the current configuration snapshot.

    The snapshot is a JSON document with tenants, voice agents, groups,
    memberships, inbound and outbound rules and trunks. When the file changes
    it is re-read and the groups whose strategy inputs changed are reported
    so their coordination state can be reset.
    """

    def __init__(self, config_path: Optional[str] = None, snapshot: Optional[ConfigSnapshot] = None):
        self.config_path = Path(config_path or settings.routing_config_path)
        self._mtime: Optional[float] = None
        if snapshot is not None:
            self.snapshot = snapshot
        else:
            self.snapshot = self._load()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConfigurationService":
        return cls(snapshot=cls.parse(data))

    @staticmethod
    def parse(data: Dict[str, Any]) -> ConfigSnapshot:
        try:
            return ConfigSnapshot.model_validate(data)
        except PydanticValidationError as e:
            raise ConfigurationError(f"Invalid routing configuration: {e.error_count()} error(s)") from e

    def _load(self) -> ConfigSnapshot:
        if not self.config_path.exists():
            logger.warning(f"Routing configuration {self.config_path} not found, starting empty")
            return ConfigSnapshot()

        try:
            with open(self.config_path, "r") as f:
                data = json.load(f)
            self._mtime = self.config_path.stat().st_mtime
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read routing configuration: {e}", path=str(self.config_path)) from e

        snapshot = self.parse(data)
        logger.info(
            f"Loaded routing configuration: {len(snapshot.tenants)} tenant(s), "
            f"{len(snapshot.voice_agents)} agent(s), {len(snapshot.agent_groups)} group(s), "
            f"{len(snapshot.routing_rules)} rule(s)"
        )
        return snapshot

    def replace(self, snapshot: ConfigSnapshot) -> List[GroupSnapshot]:
        """Swap in a new snapshot and return the groups whose strategy inputs changed"""
        previous = {
            (g.tenant_id, g.group_id): g.fingerprint()
            for g in self.snapshot.group_snapshots()
        }
        self.snapshot = snapshot

        changed = []
        for group in snapshot.group_snapshots():
            if previous.get((group.tenant_id, group.group_id)) != group.fingerprint():
                changed.append(group)
        return changed

    def refresh(self) -> List[GroupSnapshot]:
        """Reload the file if it changed on disk; keeps the old snapshot when the new one is invalid"""
        if not self.config_path.exists():
            return []

        mtime = self.config_path.stat().st_mtime
        if self._mtime is not None and mtime == self._mtime:
            return []

        try:
            snapshot = self._load()
        except ConfigurationError as e:
            logger.error(f"Keeping previous routing configuration: {e.message}")
            self._mtime = mtime
            return []

        changed = self.replace(snapshot)
        if changed:
            logger.info(f"Routing configuration changed for group(s) {[g.group_id for g in changed]}")
        return changed

    def resolve_tenant(self, domain: str) -> Tenant:
        tenant = self.snapshot.tenant_by_domain(domain)
        if tenant is None:
            raise TenantNotFoundError(domain)
        if not tenant.is_active:
            raise TenantInactiveError(domain)
        return tenant

    def validation_report(self) -> Dict[Tuple[int, int], List[str]]:
        """Configuration problems per group, as reported by each group's strategy"""
        from call_router.services.strategies import STRATEGY_CLASSES

        report = {}
        for group in self.snapshot.group_snapshots():
            strategy_class = STRATEGY_CLASSES[group.group.strategy]
            problems = strategy_class.validate_group(group)
            if problems:
                report[(group.tenant_id, group.group_id)] = problems
        return report


# Singleton instance
_configuration_service: Optional[ConfigurationService] = None


def get_configuration_service() -> ConfigurationService:
    """Get the ConfigurationService singleton instance"""
    global _configuration_service
    if _configuration_service is None:
        _configuration_service = ConfigurationService()
    return _configuration_service
