"""Tests for plugin priority merging."""

import pytest
from unittest.mock import MagicMock

from network_monitor._types import OverwritePolicy, PluginPriorityConfig, ProbeResult
from network_monitor.errors import ValidationError
from network_monitor.merger import PriorityMerger
from network_monitor.sources import InventorySource, ScannerSource


def make_merger(
    hostname_priority=("freebox", "unifi", "scanner"),
    vendor_priority=("freebox", "unifi", "scanner"),
    overwrite_hostname=True,
    overwrite_vendor=True,
) -> PriorityMerger:
    return PriorityMerger(PluginPriorityConfig(
        hostname_priority=list(hostname_priority),
        vendor_priority=list(vendor_priority),
        overwrite_existing=OverwritePolicy(hostname=overwrite_hostname, vendor=overwrite_vendor),
    ))


class TestMerge:
    """Tests for value selection."""

    def test_first_non_empty_in_priority_wins(self):
        """Should pick the highest-priority source with a value."""
        merger = make_merger()

        value, source = merger.merge(
            "hostname", None, None,
            {"freebox": None, "unifi": "nas-unifi", "scanner": "nas.lan"},
        )

        assert (value, source) == ("nas-unifi", "unifi")

    def test_priority_order_is_configurable(self):
        """Reordering the priority list changes the winner."""
        merger = make_merger(hostname_priority=("scanner", "freebox", "unifi"))

        value, source = merger.merge(
            "hostname", None, None,
            {"freebox": "fbx-name", "unifi": None, "scanner": "nas.lan"},
        )

        assert source == "scanner"

    def test_candidate_order_is_irrelevant(self):
        """The result should not depend on candidate arrival order."""
        merger = make_merger()
        a = {"scanner": "s", "unifi": "u", "freebox": "f"}
        b = {"freebox": "f", "unifi": "u", "scanner": "s"}

        assert merger.merge("vendor", None, None, a) == merger.merge("vendor", None, None, b)

    @pytest.mark.parametrize("empty", ["", "   ", "--", None])
    def test_empty_values_skipped(self, empty):
        """Empty strings and placeholders count as no value."""
        merger = make_merger()

        value, source = merger.merge(
            "vendor", None, None, {"freebox": empty, "unifi": None, "scanner": "Acme"},
        )

        assert (value, source) == ("Acme", "scanner")

    def test_disabled_sources_absent(self):
        """Sources missing from the candidates are treated as disabled."""
        merger = make_merger()

        value, source = merger.merge("hostname", None, None, {"scanner": "nas.lan"})

        assert source == "scanner"

    def test_no_value_keeps_existing(self):
        """Should keep the stored value when no source has one."""
        merger = make_merger()

        result = merger.merge("hostname", "old", "freebox", {"freebox": None, "scanner": None})

        assert result == ("old", "freebox")

    def test_overwrite_replaces_stored(self):
        """With overwrite on, the winner replaces the stored value."""
        merger = make_merger()

        result = merger.merge("hostname", "old", "scanner", {"freebox": "new"})

        assert result == ("new", "freebox")

    def test_no_overwrite_keeps_same_source(self):
        """With overwrite off, a value from the same source is kept."""
        merger = make_merger(overwrite_hostname=False)

        result = merger.merge("hostname", "old", "scanner", {"scanner": "new"})

        assert result == ("old", "scanner")

    def test_no_overwrite_higher_priority_source_wins(self):
        """With overwrite off, a different winning source still replaces the value."""
        merger = make_merger(overwrite_hostname=False)

        result = merger.merge("hostname", "old", "scanner", {"freebox": "new", "scanner": "x"})

        assert result == ("new", "freebox")

    def test_manual_value_never_replaced_without_overwrite(self):
        """Operator-set values survive merges when overwrite is off."""
        merger = make_merger(overwrite_hostname=False)

        result = merger.merge("hostname", "printer", "manual", {"freebox": "fbx"})

        assert result == ("printer", "manual")

    def test_unknown_field(self):
        """Should reject fields other than hostname and vendor."""
        with pytest.raises(ValidationError):
            make_merger().merge("mac", None, None, {})


class TestCollect:
    """Tests for gathering candidates from sources."""

    def test_collect_from_enabled_sources(self):
        """Should query each enabled source."""
        scanner = ScannerSource()
        scanner.record(ProbeResult(ip="192.168.1.20", online=True, hostname="nas.lan"))
        freebox = InventorySource("freebox", enabled=True)
        freebox.update_inventory([{"ip": "192.168.1.20", "name": "NAS"}])
        unifi = InventorySource("unifi", enabled=False)
        unifi.update_inventory([{"ip": "192.168.1.20", "hostname": "ignored"}])

        candidates = make_merger().collect("hostname", "192.168.1.20", [scanner, freebox, unifi])

        assert candidates == {"scanner": "nas.lan", "freebox": "NAS"}

    def test_failing_source_counts_as_empty(self):
        """A source that raises should not abort the merge."""
        broken = MagicMock()
        broken.name = "unifi"
        broken.enabled = True
        broken.lookup_vendor.side_effect = RuntimeError("controller down")

        candidates = make_merger().collect("vendor", "192.168.1.20", [broken])

        assert candidates == {"unifi": None}

    def test_resolve(self):
        """Should collect then merge."""
        scanner = ScannerSource()
        scanner.record(ProbeResult(ip="192.168.1.20", online=True, vendor="Synology"))

        result = make_merger().resolve("vendor", "192.168.1.20", None, None, [scanner])

        assert result == ("Synology", "scanner")
