"""
Plugin priority merging of hostname and vendor values.

Several sources can name the same host: the Freebox router, the UniFi
controller and the monitor's own probing. The merger walks the
configured priority list for a field and the first enabled source with
a non-empty value wins.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from ._types import PLUGIN_SOURCES, PluginPriorityConfig
from .errors import ValidationError
from .sources import HostSource

logger = logging.getLogger(__name__)

MERGEABLE_FIELDS = ("hostname", "vendor")


def _non_empty(value: Optional[str]) -> bool:
    return bool(value and value.strip() and value.strip() != "--")


class PriorityMerger:
    """
    Reconcile competing hostname/vendor values.

    Deterministic for a given priority list: arrival order of the
    candidates never changes the outcome.
    """

    def __init__(self, config: Optional[PluginPriorityConfig] = None):
        self.config = config or PluginPriorityConfig()

    def _priority(self, field: str) -> list[str]:
        if field == "hostname":
            return self.config.hostname_priority
        if field == "vendor":
            return self.config.vendor_priority
        raise ValidationError(f"Unknown merge field: {field}", token=field)

    def _overwrite(self, field: str) -> bool:
        return getattr(self.config.overwrite_existing, field)

    def collect(
        self,
        field: str,
        ip: str,
        sources: Sequence[HostSource],
    ) -> dict[str, Optional[str]]:
        """
        Ask every enabled source for a value.

        A source that raises is logged and counts as having no value.
        """
        self._priority(field)
        candidates: dict[str, Optional[str]] = {}
        for source in sources:
            if not source.enabled:
                continue
            try:
                if field == "hostname":
                    value = source.lookup_hostname(ip)
                else:
                    value = source.lookup_vendor(ip)
            except Exception as e:
                logger.warning(f"{source.name} {field} lookup failed for {ip}: {e}")
                value = None
            candidates[source.name] = value
        return candidates

    def merge(
        self,
        field: str,
        existing_value: Optional[str],
        existing_source: Optional[str],
        candidates: dict[str, Optional[str]],
    ) -> tuple[Optional[str], Optional[str]]:
        """
        Decide the value of a field.

        Args:
            field: "hostname" or "vendor"
            existing_value: Value currently stored
            existing_source: Source of the stored value
            candidates: {source_id: value} from enabled sources; sources
                absent from the map are treated as disabled

        Returns:
            (value, source)
        """
        winner: Optional[tuple[str, str]] = None
        for source_id in self._priority(field):
            value = candidates.get(source_id)
            if _non_empty(value):
                winner = (value.strip(), source_id)
                break

        if winner is None:
            return existing_value, existing_source

        value, source_id = winner
        if _non_empty(existing_value) and not self._overwrite(field):
            # Operator-set values are never replaced by plugin data
            if existing_source not in PLUGIN_SOURCES:
                return existing_value, existing_source
            if source_id == existing_source:
                return existing_value, existing_source

        return value, source_id

    def resolve(
        self,
        field: str,
        ip: str,
        existing_value: Optional[str],
        existing_source: Optional[str],
        sources: Sequence[HostSource],
    ) -> tuple[Optional[str], Optional[str]]:
        """collect() then merge()."""
        candidates = self.collect(field, ip, sources)
        return self.merge(field, existing_value, existing_source, candidates)
