"""
Tests for device_mapper.py: name matching and custom attribute patch building.
"""

import unittest

from entra2action1.config import PropertyMapping
from entra2action1.device_mapper import (
    MATCH_FULL,
    MATCH_SHORT,
    REASON_DUPLICATE_FULL,
    REASON_DUPLICATE_SHORT,
    build_endpoint_index,
    build_endpoint_patch,
    get_endpoint_name,
    map_devices_to_patches,
    match_devices,
    normalize_name,
    strip_fqdn,
    to_custom_key,
)


GROUPS = PropertyMapping("memberOf", "Entra Groups")
OWNERSHIP = PropertyMapping("deviceOwnership", "Entra Device Ownership")


class TestNameHelpers(unittest.TestCase):
    """Test normalization helpers."""

    def test_normalize_trims_and_casefolds(self):
        self.assertEqual(normalize_name("  LapTop-01 "), "laptop-01")

    def test_normalize_none_is_empty(self):
        self.assertEqual(normalize_name(None), "")

    def test_strip_fqdn(self):
        self.assertEqual(strip_fqdn("host1.corp.example.com"), "host1")

    def test_strip_fqdn_keeps_leading_dot(self):
        self.assertEqual(strip_fqdn(".hidden"), ".hidden")

    def test_endpoint_name_prefers_device_name(self):
        self.assertEqual(get_endpoint_name({"device_name": "A", "name": "B"}), "A")
        self.assertEqual(get_endpoint_name({"name": "B"}), "B")
        self.assertEqual(get_endpoint_name(None), "")

    def test_custom_key_adds_prefix(self):
        self.assertEqual(to_custom_key("Entra Groups"), "custom:Entra Groups")

    def test_custom_key_keeps_existing_prefix_any_case(self):
        self.assertEqual(to_custom_key("Custom:Entra Groups"), "Custom:Entra Groups")

    def test_custom_key_blank(self):
        self.assertEqual(to_custom_key("   "), "")

    def test_index_skips_nameless_endpoints(self):
        index = build_endpoint_index([{"id": "1"}, {"id": "2", "name": "PC1"}])
        self.assertEqual(list(index.keys()), ["pc1"])


class TestMatchDevices(unittest.TestCase):
    """Test the two-phase name matcher."""

    def test_full_name_match_is_case_insensitive(self):
        result = match_devices([{"displayName": "pc1"}], [{"id": "e1", "device_name": "PC1"}])
        self.assertEqual(len(result.matched), 1)
        self.assertEqual(result.matched[0].match_type, MATCH_FULL)
        self.assertEqual(result.matched[0].endpoint["id"], "e1")

    def test_short_name_fallback(self):
        result = match_devices([{"displayName": "host1.corp.local"}], [{"id": "e1", "name": "HOST1"}])
        self.assertEqual(result.matched[0].match_type, MATCH_SHORT)

    def test_endpoint_fqdn_matches_short_device_name(self):
        result = match_devices([{"displayName": "host1"}], [{"id": "e1", "name": "host1.corp.local"}])
        self.assertEqual(result.matched[0].match_type, MATCH_SHORT)

    def test_duplicate_full_does_not_fall_back(self):
        """Several full-name candidates is final even if the short name is unique."""
        endpoints = [
            {"id": "e1", "name": "host1.corp.local"},
            {"id": "e2", "name": "HOST1.corp.local"},
        ]
        result = match_devices([{"displayName": "host1.corp.local"}], endpoints)
        self.assertEqual(len(result.ambiguous), 1)
        self.assertEqual(result.ambiguous[0].reason, REASON_DUPLICATE_FULL)
        self.assertEqual(len(result.ambiguous[0].candidates), 2)
        self.assertEqual(result.matched, [])

    def test_duplicate_short(self):
        endpoints = [
            {"id": "e1", "name": "host1.a.local"},
            {"id": "e2", "name": "host1.b.local"},
        ]
        result = match_devices([{"displayName": "host1"}], endpoints)
        self.assertEqual(result.ambiguous[0].reason, REASON_DUPLICATE_SHORT)

    def test_blank_display_name_is_unmatched(self):
        device = {"displayName": "   "}
        result = match_devices([device], [{"id": "e1", "name": "x"}])
        self.assertEqual(result.unmatched_entra, [device])

    def test_every_device_lands_in_one_bucket(self):
        devices = [
            {"displayName": "PC1"},
            {"displayName": "pc2.corp"},
            {"displayName": "dup"},
            {"displayName": "missing"},
            {"displayName": None},
        ]
        endpoints = [
            {"id": "1", "name": "pc1"},
            {"id": "2", "name": "PC2"},
            {"id": "3", "name": "DUP"},
            {"id": "4", "name": "dup"},
        ]
        result = match_devices(devices, endpoints)
        total = len(result.matched) + len(result.unmatched_entra) + len(result.ambiguous)
        self.assertEqual(total, len(devices))
        self.assertEqual(len(result.matched), 2)
        self.assertEqual(len(result.ambiguous), 1)
        self.assertEqual(len(result.unmatched_entra), 2)

    def test_empty_inputs(self):
        result = match_devices(None, None)
        self.assertEqual((result.matched, result.unmatched_entra, result.ambiguous), ([], [], []))


class TestBuildEndpointPatch(unittest.TestCase):
    """Test patch body construction."""

    def test_builds_custom_keys(self):
        device = {"memberOf": "A, B", "deviceOwnership": "Company"}
        patch = build_endpoint_patch(device, [GROUPS, OWNERSHIP])
        self.assertEqual(patch, {
            "custom:Entra Groups": "A, B",
            "custom:Entra Device Ownership": "Company",
        })

    def test_blank_values_skipped(self):
        device = {"memberOf": "  ", "deviceOwnership": None}
        self.assertIsNone(build_endpoint_patch(device, [GROUPS, OWNERSHIP]))

    def test_zero_and_false_are_kept(self):
        device = {"isCompliant": False, "count": 0}
        mappings = [PropertyMapping("isCompliant", "Compliant"), PropertyMapping("count", "Count")]
        patch = build_endpoint_patch(device, mappings)
        self.assertEqual(patch, {"custom:Compliant": False, "custom:Count": 0})

    def test_later_mapping_wins_for_same_attribute(self):
        device = {"memberOf": "Groups", "deviceOwnership": "Personal"}
        mappings = [GROUPS, PropertyMapping("deviceOwnership", "Entra Groups")]
        patch = build_endpoint_patch(device, mappings)
        self.assertEqual(patch, {"custom:Entra Groups": "Personal"})

    def test_missing_property_skipped(self):
        patch = build_endpoint_patch({"memberOf": "G"}, [GROUPS, OWNERSHIP])
        self.assertEqual(patch, {"custom:Entra Groups": "G"})


class TestMapDevicesToPatches(unittest.TestCase):

    def test_one_patch_per_matched_pair_with_values(self):
        devices = [
            {"displayName": "PC1", "memberOf": "G1"},
            {"displayName": "PC2", "memberOf": ""},
            {"displayName": "PC3", "memberOf": "G3"},
        ]
        endpoints = [
            {"id": "e1", "name": "pc1"},
            {"id": "e2", "name": "pc2"},
        ]
        result = map_devices_to_patches(devices, endpoints, [GROUPS])

        self.assertEqual(len(result.matched), 2)
        self.assertEqual(len(result.unmatched_entra), 1)
        self.assertEqual(len(result.patches), 1)

        planned = result.patches[0]
        self.assertEqual(planned.endpoint_id, "e1")
        self.assertEqual(planned.endpoint_name, "pc1")
        self.assertEqual(planned.entra_name, "PC1")
        self.assertEqual(planned.to_dict()["patch"], {"custom:Entra Groups": "G1"})


if __name__ == "__main__":
    unittest.main()
