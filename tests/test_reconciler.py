"""Unit tests for the reconciliation algorithm.

Covers removal candidate selection from the zone snapshot and the diff that
turns instances plus candidates into a change batch.
"""

from typing import List

import pytest

from awsns.cli import (
    DEFAULT_TTL,
    Change,
    ChangeAction,
    DNSRecord,
    InstanceRecord,
    Lifecycle,
    NoChangesError,
    RecordKind,
    desired_record,
    reconcile,
    removal_candidates,
)

SUFFIX = ".foo.example.com"

# =============================================================================
# Test Helpers
# =============================================================================


def make_instance(
    label: str, ip: str = "", dns_name: str = "", instance_id: str = ""
) -> InstanceRecord:
    return InstanceRecord(
        instance_id=instance_id or f"i-{label or 'x'}",
        label=label,
        public_dns_name=dns_name,
        public_ip=ip,
    )


def a_record(name: str, value: str, ttl: int = 300) -> DNSRecord:
    return DNSRecord(name=name, kind=RecordKind.A, ttl=ttl, values=(value,))


def summarize(changes: List[Change]) -> List[tuple]:
    return [(c.action, c.record.name, c.record.type_name, c.record.values) for c in changes]


# =============================================================================
# Removal Candidates
# =============================================================================


class TestRemovalCandidates:
    def test_selects_managed_records_under_suffix(self) -> None:
        records = [
            a_record("old.foo.example.com.", "1.2.3.4"),
            DNSRecord("ci.foo.example.com.", RecordKind.CNAME, 60, ("ec2-1.example.net",)),
        ]

        candidates = removal_candidates(records, SUFFIX)

        assert sorted(candidates) == ["ci.foo.example.com", "old.foo.example.com"]
        assert all(c.action is ChangeAction.DELETE for c in candidates.values())

    def test_strips_trailing_dot_from_name(self) -> None:
        candidates = removal_candidates([a_record("old.foo.example.com.", "1.2.3.4")], SUFFIX)

        assert candidates["old.foo.example.com"].record.name == "old.foo.example.com"

    def test_keeps_ttl_and_values_for_delete(self) -> None:
        """Route 53 rejects deletes whose TTL/values differ from the stored record."""
        records = [
            DNSRecord("old.foo.example.com.", RecordKind.A, 3600, ("1.2.3.4", "1.2.3.5")),
        ]

        change = removal_candidates(records, SUFFIX)["old.foo.example.com"]

        assert change.record.ttl == 3600
        assert change.record.values == ("1.2.3.4", "1.2.3.5")
        assert change.record.kind is RecordKind.A

    def test_ignores_suffix_itself(self) -> None:
        records = [a_record("foo.example.com.", "1.2.3.4")]
        assert removal_candidates(records, SUFFIX) == {}

    def test_ignores_records_outside_suffix(self) -> None:
        records = [
            a_record("web.example.com.", "1.2.3.4"),
            a_record("web.barfoo.example.com.", "1.2.3.4"),
            a_record("example.com.", "1.2.3.4"),
        ]
        assert removal_candidates(records, SUFFIX) == {}

    def test_ignores_unmanaged_types(self) -> None:
        records = [
            DNSRecord("mail.foo.example.com.", "MX", 300, ("10 mx.example.com",)),
            DNSRecord("txt.foo.example.com.", "TXT", 300, ('"hello"',)),
            DNSRecord("v6.foo.example.com.", "AAAA", 300, ("::1",)),
            DNSRecord("sub.foo.example.com.", "NS", 300, ("ns1.example.com",)),
        ]
        assert removal_candidates(records, SUFFIX) == {}

    def test_matches_deeper_names(self) -> None:
        records = [a_record("a.b.foo.example.com.", "1.2.3.4")]
        assert list(removal_candidates(records, SUFFIX)) == ["a.b.foo.example.com"]

    def test_matching_is_case_insensitive(self) -> None:
        records = [a_record("Old.FOO.example.com.", "1.2.3.4")]

        candidates = removal_candidates(records, SUFFIX)

        assert list(candidates) == ["old.foo.example.com"]
        assert candidates["old.foo.example.com"].record.name == "Old.FOO.example.com"

    def test_skips_routing_policy_sets(self) -> None:
        records = [
            DNSRecord("api.foo.example.com.", RecordKind.A, 60, ("1.1.1.1",), set_identifier="blue"),
            DNSRecord("api.foo.example.com.", RecordKind.A, 60, ("2.2.2.2",), set_identifier="green"),
            a_record("old.foo.example.com.", "1.2.3.4"),
        ]

        assert list(removal_candidates(records, SUFFIX)) == ["old.foo.example.com"]


# =============================================================================
# Desired Records
# =============================================================================


class TestDesiredRecord:
    def test_prefers_public_dns_name(self) -> None:
        inst = make_instance("web", ip="5.6.7.8", dns_name="ec2-5-6-7-8.example.net")

        record = desired_record(inst, SUFFIX)

        assert record == DNSRecord(
            "web.foo.example.com", RecordKind.CNAME, DEFAULT_TTL, ("ec2-5-6-7-8.example.net",)
        )

    def test_falls_back_to_public_ip(self) -> None:
        record = desired_record(make_instance("web", ip="5.6.7.8"), SUFFIX)
        assert record == DNSRecord("web.foo.example.com", RecordKind.A, 60, ("5.6.7.8",))

    def test_none_without_public_endpoint(self) -> None:
        assert desired_record(make_instance("web"), SUFFIX) is None

    def test_none_for_invalid_label(self) -> None:
        assert desired_record(make_instance("web.prod", ip="5.6.7.8"), SUFFIX) is None
        assert desired_record(make_instance("", ip="5.6.7.8"), SUFFIX) is None

    def test_none_for_ephemeral_instance(self) -> None:
        inst = InstanceRecord("i-spot", "web", public_ip="5.6.7.8", lifecycle=Lifecycle.EPHEMERAL)
        assert desired_record(inst, SUFFIX) is None


# =============================================================================
# Reconcile
# =============================================================================


class TestReconcile:
    def test_stale_record_scenario(self) -> None:
        """Stale record deleted, running instance upserted as A record."""
        candidates = removal_candidates([a_record("old.foo.example.com.", "1.2.3.4")], SUFFIX)

        changes = reconcile([make_instance("web", ip="5.6.7.8")], SUFFIX, candidates)

        assert summarize(changes) == [
            (ChangeAction.UPSERT, "web.foo.example.com", "A", ("5.6.7.8",)),
            (ChangeAction.DELETE, "old.foo.example.com", "A", ("1.2.3.4",)),
        ]
        assert changes[0].record.ttl == 60

    def test_cname_scenario(self) -> None:
        candidates = removal_candidates([a_record("old.foo.example.com.", "1.2.3.4")], SUFFIX)
        inst = make_instance("web", ip="5.6.7.8", dns_name="ec2-5-6-7-8.example.net")

        changes = reconcile([inst], SUFFIX, candidates)

        assert summarize(changes)[0] == (
            ChangeAction.UPSERT,
            "web.foo.example.com",
            "CNAME",
            ("ec2-5-6-7-8.example.net",),
        )

    def test_running_instance_protects_its_record(self) -> None:
        candidates = removal_candidates([a_record("web.foo.example.com.", "1.1.1.1")], SUFFIX)

        changes = reconcile([make_instance("web", ip="5.6.7.8")], SUFFIX, candidates)

        assert [c.action for c in changes] == [ChangeAction.UPSERT]
        assert changes[0].record.values == ("5.6.7.8",)

    def test_protection_ignores_case_of_existing_record(self) -> None:
        candidates = removal_candidates([a_record("web.foo.example.com.", "1.1.1.1")], SUFFIX)

        changes = reconcile([make_instance("Web", ip="5.6.7.8")], SUFFIX, candidates)

        assert [c.action for c in changes] == [ChangeAction.UPSERT]

    @pytest.mark.parametrize(
        "excluded",
        [
            make_instance("old.bad", ip="9.9.9.9", instance_id="i-old"),
            make_instance("", ip="9.9.9.9", instance_id="i-old"),
            make_instance("old", instance_id="i-old"),
            InstanceRecord("i-spot", "old", public_ip="9.9.9.9", lifecycle=Lifecycle.EPHEMERAL),
        ],
    )
    def test_excluded_instance_does_not_protect_record(self, excluded: InstanceRecord) -> None:
        candidates = removal_candidates([a_record("old.foo.example.com.", "1.2.3.4")], SUFFIX)

        changes = reconcile([make_instance("web", ip="5.6.7.8"), excluded], SUFFIX, candidates)

        upserts = [c for c in changes if c.action is ChangeAction.UPSERT]
        deletes = [c.record.name for c in changes if c.action is ChangeAction.DELETE]
        assert [c.record.name for c in upserts] == ["web.foo.example.com"]
        assert deletes == ["old.foo.example.com"]

    def test_no_instances_raises_safety_guard(self) -> None:
        candidates = removal_candidates([a_record("old.foo.example.com.", "1.2.3.4")], SUFFIX)

        with pytest.raises(NoChangesError, match="no changes to apply"):
            reconcile([], SUFFIX, candidates)

    def test_only_unusable_instances_raises_safety_guard(self) -> None:
        instances = [make_instance("bad_label", ip="1.1.1.1"), make_instance("noaddr")]

        with pytest.raises(NoChangesError):
            reconcile(instances, SUFFIX, {})

    def test_duplicate_labels_last_instance_wins(self) -> None:
        instances = [
            make_instance("web", ip="1.1.1.1", instance_id="i-1"),
            make_instance("api", ip="3.3.3.3", instance_id="i-3"),
            make_instance("web", ip="2.2.2.2", instance_id="i-2"),
        ]

        changes = reconcile(instances, SUFFIX, {})

        assert summarize(changes) == [
            (ChangeAction.UPSERT, "web.foo.example.com", "A", ("2.2.2.2",)),
            (ChangeAction.UPSERT, "api.foo.example.com", "A", ("3.3.3.3",)),
        ]

    def test_order_upserts_then_sorted_deletes(self) -> None:
        records = [
            a_record("zeta.foo.example.com.", "1.0.0.1"),
            a_record("alpha.foo.example.com.", "1.0.0.2"),
            a_record("mid.foo.example.com.", "1.0.0.3"),
        ]
        instances = [make_instance("b", ip="2.0.0.1"), make_instance("a", ip="2.0.0.2")]

        changes = reconcile(instances, SUFFIX, removal_candidates(records, SUFFIX))

        assert [(c.action, c.record.name) for c in changes] == [
            (ChangeAction.UPSERT, "b.foo.example.com"),
            (ChangeAction.UPSERT, "a.foo.example.com"),
            (ChangeAction.DELETE, "alpha.foo.example.com"),
            (ChangeAction.DELETE, "mid.foo.example.com"),
            (ChangeAction.DELETE, "zeta.foo.example.com"),
        ]

    def test_one_change_per_name(self) -> None:
        records = [a_record("web.foo.example.com.", "1.1.1.1")]
        instances = [make_instance("web", ip="2.2.2.2"), make_instance("web", ip="3.3.3.3")]

        changes = reconcile(instances, SUFFIX, removal_candidates(records, SUFFIX))

        names = [c.record.name.lower() for c in changes]
        assert len(names) == len(set(names))

    def test_does_not_mutate_candidates(self) -> None:
        candidates = removal_candidates([a_record("web.foo.example.com.", "1.1.1.1")], SUFFIX)

        reconcile([make_instance("web", ip="2.2.2.2")], SUFFIX, candidates)

        assert list(candidates) == ["web.foo.example.com"]


# =============================================================================
# Wire Format
# =============================================================================


def test_change_to_route53() -> None:
    change = Change(
        ChangeAction.UPSERT, DNSRecord("web.foo.example.com", RecordKind.A, 60, ("5.6.7.8",))
    )

    assert change.to_route53() == {
        "Action": "UPSERT",
        "ResourceRecordSet": {
            "Name": "web.foo.example.com",
            "Type": "A",
            "TTL": 60,
            "ResourceRecords": [{"Value": "5.6.7.8"}],
        },
    }


def test_alias_record_delete_carries_alias_target() -> None:
    target = {"HostedZoneId": "Z2", "DNSName": "lb.example.net.", "EvaluateTargetHealth": False}
    records = [DNSRecord("lb.foo.example.com.", RecordKind.A, alias_target=target)]

    change = reconcile([make_instance("web", ip="5.6.7.8")], SUFFIX, removal_candidates(records, SUFFIX))[1]

    assert change.to_route53() == {
        "Action": "DELETE",
        "ResourceRecordSet": {"Name": "lb.foo.example.com", "Type": "A", "AliasTarget": target},
    }
