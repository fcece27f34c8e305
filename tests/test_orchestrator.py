"""Subject dispatch, namespace selection, failure isolation and concurrency."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone

import pytest

from conftest import FakeFeed, record
from threatscope.core.models import (
    BindingSubject,
    CertificateSnapshot,
    ClusterSnapshot,
    ConfigDataSnapshot,
    ContainerSnapshot,
    HostSnapshot,
    NodeSnapshot,
    RoleBindingSnapshot,
    WorkloadSnapshot,
)
from threatscope.core.orchestrator import ScanOptions, ScanOrchestrator

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


def pod(namespace, name, **container_fields) -> WorkloadSnapshot:
    container = ContainerSnapshot(f"{name}/app", "app", namespace=namespace, kind="Pod", **container_fields)
    return WorkloadSnapshot("Pod", namespace, name, (container,))


def docker_host(*containers, engine="24.0.7", kernel="6.1.0") -> HostSnapshot:
    return HostSnapshot("web01", engine, kernel, tuple(containers))


def make_cluster(version="v1.27.3", **fields) -> ClusterSnapshot:
    fields.setdefault("nodes", (NodeSnapshot("node-1", "6.1.0", "containerd", "1.7.2"),))
    return ClusterSnapshot("prod", version, **fields)


def test_only_triggered_subjects_get_a_finding(fake_feed, clean_container) -> None:
    risky = ContainerSnapshot("b" * 64, "risky", privileged=True, pid_mode="host", network_mode="host")

    report = ScanOrchestrator(fake_feed).scan_host(docker_host(clean_container, risky))

    assert [f.subject_name for f in report] == ["risky"]
    finding = report.findings[0]
    assert finding.subject_id == "b" * 12
    assert [t.param for t in finding.threats] == ["privileged", "pid", "network"]


def test_host_engine_and_kernel_are_checked() -> None:
    feed = FakeFeed(
        by_name={"docker": [record("CVE-2019-5736", "0.0", "18.09.2", "HIGH")]},
        by_cve={"CVE-2022-0847": [record("CVE-2022-0847", "5.8", "5.16.11")]},
    )

    report = ScanOrchestrator(feed).scan_host(docker_host(engine="18.09.1", kernel="5.10.0"))

    assert len(report) == 1
    finding = report.findings[0]
    assert finding.subject_id == "Host/web01"
    assert [t.severity for t in finding.threats] == ["critical", "high"]


def test_feed_failure_does_not_stop_other_subjects() -> None:
    feed = FakeFeed(failing={"docker"})
    containers = [ContainerSnapshot(f"{i:012d}", f"c{i}", privileged=True) for i in range(3)]

    report = ScanOrchestrator(feed).scan_host(docker_host(*containers, engine="18.09.1"))

    assert [f.subject_name for f in report] == ["c0", "c1", "c2"]


def test_unexpected_rule_error_only_drops_that_rule() -> None:
    class BrokenFeed(FakeFeed):
        def query_by_name(self, product):
            raise RuntimeError("socket closed")

    feed = BrokenFeed(by_cve={"CVE-2022-0847": [record("CVE-2022-0847", "5.8", "5.16.11")]})

    report = ScanOrchestrator(feed).scan_host(docker_host(engine="18.09.1", kernel="5.10.0"))

    assert [t.param for t in report.findings[0].threats] == ["kernel version"]


@pytest.mark.parametrize(
    ("namespace", "expected"),
    [
        ("standard", ["Pod/default/web"]),
        ("all", ["Pod/kube-system/proxy", "Pod/default/web"]),
        ("kube-system", ["Pod/kube-system/proxy"]),
    ],
)
def test_namespace_selection(fake_feed, namespace, expected) -> None:
    cluster = make_cluster(workloads=(
        pod("kube-system", "proxy", privileged=True),
        pod("default", "web", privileged=True),
    ))

    report = ScanOrchestrator(fake_feed, options=ScanOptions(namespace=namespace)).scan_cluster(cluster)

    assert [f.subject_id for f in report] == expected


def test_custom_exclusion_set(fake_feed) -> None:
    cluster = make_cluster(
        workloads=(pod("staging", "web", privileged=True),),
        config_data=(ConfigDataSnapshot("Secret", "staging", "db", (("password", "admin"),)),),
        role_bindings=(RoleBindingSnapshot("RoleBinding", "anon", "staging", "Role", "reader",
                                           (BindingSubject("User", "system:anonymous"),)),),
    )
    options = ScanOptions(excluded_namespaces=frozenset({"staging"}))

    report = ScanOrchestrator(fake_feed, options=options).scan_cluster(cluster)

    assert len(report) == 0


def test_old_cluster_checks_docker_engines() -> None:
    feed = FakeFeed(by_name={"docker": [record("CVE-2019-5736", "0.0", "18.09.2", "HIGH")]})
    cluster = make_cluster("v1.23.17", nodes=(
        NodeSnapshot("node-1", "5.4.0", "docker", "18.9.1"),
        NodeSnapshot("node-2", "5.4.0", "containerd", "1.6.8"),
    ))

    report = ScanOrchestrator(feed).scan_cluster(cluster)

    assert [f.subject_id for f in report] == ["Node/node-1"]
    assert report.findings[0].threats[0].type == "K8s version less than v1.24"
    assert all(kind == "name" for kind, _ in feed.calls)


def test_new_cluster_checks_kernels() -> None:
    feed = FakeFeed(by_cve={"CVE-2022-0847": [record("CVE-2022-0847", "5.8", "5.16.11")]})
    cluster = make_cluster("v1.24.0", nodes=(
        NodeSnapshot("node-1", "5.10.0-23-amd64", "docker", "18.9.1"),
        NodeSnapshot("node-2", "6.1.0", "containerd", "1.6.8"),
    ))

    report = ScanOrchestrator(feed).scan_cluster(cluster)

    assert [f.subject_id for f in report] == ["Node/node-1"]
    assert all(kind == "cve" for kind, _ in feed.calls)


def test_old_engine_escalates_host_network_pods(fake_feed) -> None:
    cluster = make_cluster(
        "v1.20.4",
        nodes=(NodeSnapshot("node-1", "5.4.0", "docker", "19.3.11"),),
        workloads=(pod("default", "web", network_mode="host"),),
    )

    report = ScanOrchestrator(fake_feed).scan_cluster(cluster)

    assert report.findings[0].threats[0].severity == "critical"


def test_certificates_use_the_reference_time(fake_feed) -> None:
    cluster = make_cluster(certificates=(
        CertificateSnapshot("apiserver.crt", "/etc/kubernetes/pki/apiserver.crt", NOW - timedelta(hours=1)),
        CertificateSnapshot("front-proxy-client.crt", "/etc/kubernetes/pki/front-proxy-client.crt",
                            NOW + timedelta(days=200)),
    ))

    report = ScanOrchestrator(fake_feed, options=ScanOptions(now=NOW)).scan_cluster(cluster)

    assert [f.subject_id for f in report] == ["Certificate/apiserver.crt"]


def test_concurrent_scan_matches_sequential_scan() -> None:
    feed = FakeFeed(by_cve={"CVE-2022-0847": [record("CVE-2022-0847", "5.8", "5.16.11")]})
    workloads = tuple(
        pod(f"team-{i % 3}", f"svc-{i:02d}", privileged=i % 2 == 0, pid_mode="host" if i % 3 == 0 else "")
        for i in range(20)
    )
    nodes = tuple(NodeSnapshot(f"node-{i}", "5.10.0", "containerd", "1.7.2") for i in range(4))
    cluster = make_cluster(nodes=nodes, workloads=workloads)

    sequential = ScanOrchestrator(feed).scan_cluster(cluster)
    concurrent = ScanOrchestrator(feed, options=ScanOptions(max_workers=4)).scan_cluster(cluster)

    sequential.sort_by_subject()
    assert concurrent.findings == sequential.findings


def test_cancelled_scan_stops_between_subjects(fake_feed) -> None:
    cancel = threading.Event()
    cancel.set()
    containers = [ContainerSnapshot(f"{i:012d}", f"c{i}", privileged=True) for i in range(3)]

    sequential = ScanOrchestrator(fake_feed, options=ScanOptions(cancel_event=cancel))
    pooled = ScanOrchestrator(fake_feed, options=ScanOptions(cancel_event=cancel, max_workers=2))

    assert len(sequential.scan_host(docker_host(*containers))) == 0
    assert len(pooled.scan_host(docker_host(*containers))) == 0
    assert fake_feed.calls == []


def test_findings_append_to_a_shared_report(fake_feed) -> None:
    first = ScanOrchestrator(fake_feed).scan_host(
        docker_host(ContainerSnapshot("c" * 64, "db", privileged=True)))
    ScanOrchestrator(fake_feed).scan_host(
        docker_host(ContainerSnapshot("d" * 64, "cache", pid_mode="host")), report=first)

    assert [f.subject_name for f in first] == ["db", "cache"]


def test_pooled_scan_keeps_earlier_findings_of_a_shared_report(fake_feed) -> None:
    first = ScanOrchestrator(fake_feed).scan_host(
        docker_host(ContainerSnapshot("z" * 64, "zeta", privileged=True)))
    pooled = ScanOrchestrator(fake_feed, options=ScanOptions(max_workers=2))

    pooled.scan_host(docker_host(ContainerSnapshot("b" * 64, "beta", privileged=True),
                                 ContainerSnapshot("a" * 64, "alpha", pid_mode="host")), report=first)

    assert [f.subject_name for f in first] == ["zeta", "alpha", "beta"]


def test_namespace_selection_is_logged(fake_feed, caplog) -> None:
    cluster = make_cluster(namespaces=("default", "kube-system", "shop"),
                           workloads=(pod("shop", "web", privileged=True),))

    with caplog.at_level(logging.INFO, logger="threatscope.core.orchestrator"):
        ScanOrchestrator(fake_feed).scan_cluster(cluster)

    assert "Scanning 2 of 3 namespaces: ['default', 'shop']" in caplog.text
    assert "Skipped excluded namespaces: ['kube-system']" in caplog.text
