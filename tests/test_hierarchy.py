"""Tests for hierarchy planning and generation."""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from cryptography import x509
from cryptography.x509.oid import NameOID

from gmpki.ca.errors import KeyGenerationError, PersistenceError
from gmpki.ca.issuer import issue
from gmpki.ca.keys import SM2PrivateKey, generate_key_pair
from gmpki.ca.persistence import write_certificate
from gmpki.ca.templates import EntityRole
from gmpki.services.hierarchy import (
    HierarchyGenerator,
    HierarchyOptions,
    PendingEntity,
    plan_hierarchy,
)

NOW = datetime(2026, 10, 19, 8, 0, 0, tzinfo=timezone.utc)


def fixed_clock() -> datetime:
    return NOW


def flatten(plan: list[PendingEntity]) -> list[PendingEntity]:
    entities = []
    for root in plan:
        entities.append(root)
        entities.extend(root.descendants())
    return entities


def pem_names(directory) -> set[str]:
    return {path.name for path in directory.glob("*.pem")}


def load_cert(directory, name: str) -> x509.Certificate:
    return x509.load_pem_x509_certificate((directory / f"{name}-cert.pem").read_bytes())


def common_name(name: x509.Name) -> str:
    return name.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value


class TestPlanHierarchy:
    """Tests for plan_hierarchy."""

    @pytest.mark.parametrize(
        "orgs,children,servers,clients",
        [(1, 1, 1, 1), (2, 2, 2, 1), (3, 1, 2, 3), (1, 0, 1, 0)],
    )
    def test_entity_counts(self, orgs, children, servers, clients):
        """Test O roots, O*C intermediates and O*(S+Cl) + O*C*(S+Cl) leaves."""
        options = HierarchyOptions(
            org_count=orgs, child_org_count=children, server_count=servers, client_count=clients
        )
        entities = flatten(plan_hierarchy(options))
        roles = [entity.role for entity in entities]

        assert roles.count(EntityRole.ROOT_CA) == orgs
        assert roles.count(EntityRole.INTERMEDIATE_CA) == orgs * children
        leaves = roles.count(EntityRole.SERVER) + roles.count(EntityRole.CLIENT)
        assert leaves == orgs * (servers + clients) + orgs * children * (servers + clients)

    def test_names_are_unique_and_ordered(self):
        """Test servers, then clients, then child authorities for each authority."""
        options = HierarchyOptions(org_count=1, child_org_count=1, server_count=2, client_count=1)
        names = [entity.name for entity in flatten(plan_hierarchy(options))]

        assert names == [
            "Org1",
            "Org1-server1",
            "Org1-server2",
            "Org1-client1",
            "Org1-child1",
            "Org1-child1-server1",
            "Org1-child1-server2",
            "Org1-child1-client1",
        ]

    def test_default_options_names_are_unique(self):
        names = [entity.name for entity in flatten(plan_hierarchy(HierarchyOptions()))]
        assert len(names) == len(set(names)) == 2 + 4 + 2 * 3 + 4 * 3

    def test_deeper_nesting(self):
        options = HierarchyOptions(
            org_count=1, child_org_count=1, server_count=0, client_count=1, nesting_depth=2, base_name="Bank"
        )
        names = [entity.name for entity in flatten(plan_hierarchy(options))]
        assert names == [
            "Bank1",
            "Bank1-client1",
            "Bank1-child1",
            "Bank1-child1-client1",
            "Bank1-child1-child1",
            "Bank1-child1-child1-client1",
        ]

    def test_location_for_diagnostics(self):
        options = HierarchyOptions(org_count=2, child_org_count=1, server_count=1, client_count=0)
        entity = [e for e in flatten(plan_hierarchy(options)) if e.name == "Org2-child1-server1"][0]
        assert entity.location == "org=2 child=1 server=1"

    def test_negative_counts_rejected(self):
        with pytest.raises(ValueError, match="server_count"):
            HierarchyOptions(server_count=-1)


class TestHierarchyGenerator:
    """Tests for HierarchyGenerator.generate."""

    def test_single_root_and_server(self, tmp_path):
        """O=1, C=0, S=1, Cl=0: Org1 and Org1-server1 signed by Org1."""
        options = HierarchyOptions(org_count=1, child_org_count=0, server_count=1, client_count=0)
        report = HierarchyGenerator(tmp_path, clock=fixed_clock).generate(plan_hierarchy(options))

        assert report.ok
        assert [entity.name for entity in report.issued] == ["Org1", "Org1-server1"]
        assert pem_names(tmp_path) == {
            "Org1-key.pem",
            "Org1-cert.pem",
            "Org1-server1-key.pem",
            "Org1-server1-cert.pem",
        }

        server = load_cert(tmp_path, "Org1-server1")
        assert common_name(server.issuer) == "Org1"
        assert common_name(server.subject) == "localhost"
        assert report.get("Org1-server1").issuer_name == "Org1"

    def test_two_orgs_one_child(self, tmp_path):
        """O=2, C=1, S=1, Cl=1: 2 roots, 2 intermediates and 8 leaves."""
        options = HierarchyOptions(org_count=2, child_org_count=1, server_count=1, client_count=1)
        report = HierarchyGenerator(tmp_path, clock=fixed_clock).generate(plan_hierarchy(options))

        assert report.ok
        roots = [e.name for e in report.authorities if e.role is EntityRole.ROOT_CA]
        intermediates = [e.name for e in report.authorities if e.role is EntityRole.INTERMEDIATE_CA]
        assert roots == ["Org1", "Org2"]
        assert intermediates == ["Org1-child1", "Org2-child1"]
        assert len(report.leaves) == 8
        assert len(pem_names(tmp_path)) == 2 * 12

    def test_chain_relationships_and_validity(self, tmp_path):
        """Test issuer == signer subject, self-signed roots and 3650 day validity on disk."""
        options = HierarchyOptions(org_count=1, child_org_count=1, server_count=1, client_count=1)
        report = HierarchyGenerator(tmp_path, clock=fixed_clock).generate(plan_hierarchy(options))

        for entity in report.issued:
            cert = load_cert(tmp_path, entity.name)
            issuer = load_cert(tmp_path, entity.issuer_name)

            assert cert.issuer == issuer.subject
            assert cert.not_valid_after_utc - cert.not_valid_before_utc == timedelta(days=3650)
            if entity.role is EntityRole.ROOT_CA:
                assert cert.issuer == cert.subject

        assert report.get("Org1-child1").issuer_name == "Org1"
        assert report.get("Org1-child1-server1").issuer_name == "Org1-child1"
        assert report.get("Org1-child1-client1").issuer_name == "Org1-child1"

    def test_rerun_keeps_names_but_not_keys(self, tmp_path):
        options = HierarchyOptions(org_count=1, child_org_count=1, server_count=1, client_count=0)
        plan = plan_hierarchy(options)

        first = HierarchyGenerator(tmp_path).generate(plan)
        first_names = pem_names(tmp_path)
        first_key = (tmp_path / "Org1-key.pem").read_bytes()

        second = HierarchyGenerator(tmp_path).generate(plan)

        assert pem_names(tmp_path) == first_names
        assert (tmp_path / "Org1-key.pem").read_bytes() != first_key
        for a, b in zip(first.issued, second.issued):
            assert a.name == b.name
            assert a.certificate.serial_number != b.certificate.serial_number


class TestFailureHandling:
    """Tests for the per-entity best-effort policy."""

    def test_key_failure_removes_only_that_entity(self, tmp_path):
        """A failing leaf key drops exactly its two files."""
        options = HierarchyOptions(org_count=2, child_org_count=1, server_count=1, client_count=1)

        baseline_dir = tmp_path / "baseline"
        baseline_dir.mkdir()
        HierarchyGenerator(baseline_dir).generate(plan_hierarchy(options))

        def failing_key_generator(name: str):
            if name == "Org1-server1":
                raise KeyGenerationError(name, "injected failure")
            return generate_key_pair(name)

        failing_dir = tmp_path / "failing"
        failing_dir.mkdir()
        report = HierarchyGenerator(failing_dir, key_generator=failing_key_generator).generate(
            plan_hierarchy(options)
        )

        assert pem_names(baseline_dir) - pem_names(failing_dir) == {
            "Org1-server1-key.pem",
            "Org1-server1-cert.pem",
        }
        assert len(report.failures) == 1
        failure = report.failures[0]
        assert failure.name == "Org1-server1"
        assert failure.location == "org=1 server=1"
        assert failure.stage == "KeyGenerationError"
        assert report.get("Org1-client1") is not None
        assert report.get("Org2-server1") is not None

    def test_authority_failure_skips_descendants(self, tmp_path):
        options = HierarchyOptions(org_count=2, child_org_count=1, server_count=1, client_count=0)

        def failing_key_generator(name: str):
            if name == "Org1-child1":
                raise KeyGenerationError(name, "injected failure")
            return generate_key_pair(name)

        report = HierarchyGenerator(tmp_path, key_generator=failing_key_generator).generate(
            plan_hierarchy(options)
        )

        assert [(f.name, f.stage) for f in report.failures] == [
            ("Org1-child1", "KeyGenerationError"),
            ("Org1-child1-server1", "skipped"),
        ]
        assert [e.name for e in report.issued] == [
            "Org1",
            "Org1-server1",
            "Org2",
            "Org2-server1",
            "Org2-child1",
            "Org2-child1-server1",
        ]
        assert not report.ok

    def test_certificate_write_failure_leaves_no_key_file(self, tmp_path):
        options = HierarchyOptions(org_count=1, child_org_count=0, server_count=1, client_count=0)

        def failing_write(name, der, directory):
            if name == "Org1-server1":
                raise PersistenceError(name, "disk full")
            return write_certificate(name, der, directory)

        with patch("gmpki.services.hierarchy.write_certificate", side_effect=failing_write):
            report = HierarchyGenerator(tmp_path).generate(plan_hierarchy(options))

        assert pem_names(tmp_path) == {"Org1-key.pem", "Org1-cert.pem"}
        assert [f.stage for f in report.failures] == ["PersistenceError"]

    def test_key_encoding_failure_is_recorded_and_run_continues(self, tmp_path):
        """An encoder error on one leaf does not stop its siblings."""
        options = HierarchyOptions(org_count=1, child_org_count=0, server_count=2, client_count=0)
        broken_keys = []

        def recording_key_generator(name: str):
            key = generate_key_pair(name)
            if name == "Org1-server1":
                broken_keys.append(key)
            return key

        original_to_der = SM2PrivateKey.to_der

        def to_der(key):
            if key in broken_keys:
                raise KeyError("Component value is tag-incompatible")
            return original_to_der(key)

        with patch.object(SM2PrivateKey, "to_der", autospec=True, side_effect=to_der):
            report = HierarchyGenerator(tmp_path, key_generator=recording_key_generator).generate(
                plan_hierarchy(options)
            )

        assert pem_names(tmp_path) == {
            "Org1-key.pem",
            "Org1-cert.pem",
            "Org1-server2-key.pem",
            "Org1-server2-cert.pem",
        }
        assert [(f.name, f.stage) for f in report.failures] == [("Org1-server1", "PersistenceError")]
        assert [e.name for e in report.issued] == ["Org1", "Org1-server2"]

    def test_unexpected_error_is_wrapped_per_entity(self, tmp_path):
        options = HierarchyOptions(org_count=2, child_org_count=0, server_count=1, client_count=0)

        def crashing_issue(name, *args):
            if name == "Org1-server1":
                raise RuntimeError("library bug")
            return issue(name, *args)

        with patch("gmpki.services.hierarchy.issue", side_effect=crashing_issue):
            report = HierarchyGenerator(tmp_path).generate(plan_hierarchy(options))

        assert [(f.name, f.stage) for f in report.failures] == [("Org1-server1", "GenerationError")]
        assert "library bug" in report.failures[0].error
        assert [e.name for e in report.issued] == ["Org1", "Org2", "Org2-server1"]
        assert not any(name.startswith("Org1-server1") for name in pem_names(tmp_path))
