"""
@file orchestrator.py
@brief Scan orchestration: which checks run on which subject

@details
The orchestrator turns a HostSnapshot or ClusterSnapshot into a list of
subjects, each with the rules that apply to it, evaluates them and appends
the resulting findings to a Report.

**Version path selection (clusters):**
- control plane below v1.24: dockershim is assumed, node engine versions are
  checked against the feed by product name
- control plane at or above v1.24: node kernel versions are checked against
  the known container-escape CVEs

**Failure handling:**
Every rule call is guarded. An exception is logged, that rule contributes
nothing for that subject, and the scan goes on.

**Concurrency:**
With max_workers > 1 subjects are evaluated on a thread pool and the
findings of that run are appended sorted by subject id. Sequential runs keep discovery order.
The cancel event is checked before each subject.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from typing import Optional

from threatscope.caching.constants import DEFAULT_EXCLUDED_NAMESPACES, DOCKERSHIM_REMOVAL_VERSION
from threatscope.caching.feed_client import VulnFeedClient
from threatscope.core.models import Report
from threatscope.matching import cluster_rules, version_checks
from threatscope.matching.rules import CONTAINER_RULES
from threatscope.matching.version_matcher import DEFAULT_MATCHER, compare_versions, parse_version
from threatscope.reporting.aggregator import aggregate

logger = logging.getLogger(__name__)

NAMESPACE_STANDARD = "standard"
NAMESPACE_ALL = "all"


@dataclass(frozen=True)
class ScanOptions:
    """
    Per-run scan options.

    @param namespace str "standard" skips excluded namespaces, "all" scans
                         every namespace, any other value scans only that
                         namespace
    @param excluded_namespaces frozenset Namespaces skipped in standard mode
    @param max_workers int 1 runs subjects sequentially
    @param cancel_event threading.Event Stops the scan between subjects
    @param now datetime Reference time for certificate expiry
    """

    namespace: str = NAMESPACE_STANDARD
    excluded_namespaces: frozenset = DEFAULT_EXCLUDED_NAMESPACES
    max_workers: int = 1
    cancel_event: threading.Event = field(default_factory=threading.Event)
    now: Optional[datetime] = None

    def selects(self, namespace) -> bool:
        if self.namespace == NAMESPACE_ALL:
            return True
        if self.namespace == NAMESPACE_STANDARD:
            return namespace not in self.excluded_namespaces
        return namespace == self.namespace


@dataclass(frozen=True)
class _Subject:
    subject_id: str
    subject_name: str
    rules: tuple


class ScanOrchestrator:
    """
    Glue between snapshots, rules, version checks and the aggregator.

    @param feed VulnFeedClient Feed used by the version checks
    @param matcher VersionMatcher Range matcher shared by all version checks
    @param options ScanOptions Per-run options
    """

    def __init__(self, feed: VulnFeedClient, matcher=DEFAULT_MATCHER, options=None):
        self.feed = feed
        self.matcher = matcher
        self.options = options or ScanOptions()

    # ------------------------------------------------------------------ subjects

    def _container_subject(self, container, engine_version):
        rules = []
        for name, rule, needs_engine in CONTAINER_RULES:
            call = partial(rule, container, engine_version) if needs_engine else partial(rule, container)
            rules.append((name, call))
        return _Subject(container.subject_id, container.name, tuple(rules))

    def _host_subjects(self, host):
        host_rules = (
            ("engine version", partial(version_checks.check_engine_version, self.feed,
                                       host.engine_version, self.matcher, "Engine version")),
            ("kernel version", partial(version_checks.check_kernel_version, self.feed,
                                       host.kernel_version, self.matcher)),
        )
        subjects = [_Subject(f"Host/{host.name}", host.name, host_rules)]
        subjects.extend(self._container_subject(c, host.engine_version) for c in host.containers)
        return subjects

    def uses_engine_path(self, cluster_version) -> bool:
        """True when the control plane predates dockershim removal."""
        return compare_versions(cluster_version, DOCKERSHIM_REMOVAL_VERSION) < 0

    def _node_subjects(self, cluster):
        subjects = []
        if self.uses_engine_path(cluster.version):
            logger.info(f"Cluster {cluster.version} is below v{DOCKERSHIM_REMOVAL_VERSION}, checking engine versions")
            for node in cluster.nodes:
                if node.runtime != "docker":
                    logger.debug(f"Node {node.name} runs {node.runtime or 'an unknown runtime'}, no engine check")
                    continue
                rule = partial(version_checks.check_engine_version, self.feed, node.runtime_version,
                               self.matcher, f"K8s version less than v{DOCKERSHIM_REMOVAL_VERSION}")
                subjects.append(_Subject(node.subject_id, node.name, (("engine version", rule),)))
        else:
            logger.info(f"Cluster {cluster.version} is v{DOCKERSHIM_REMOVAL_VERSION} or later, checking kernel versions")
            for node in cluster.nodes:
                rule = partial(version_checks.check_kernel_version, self.feed, node.kernel_version,
                               self.matcher, f"K8s version v{DOCKERSHIM_REMOVAL_VERSION} or later")
                subjects.append(_Subject(node.subject_id, node.name, (("kernel version", rule),)))
        return subjects

    def _cluster_engine_version(self, cluster):
        """Oldest docker engine in the cluster, used by the network rule."""
        if not self.uses_engine_path(cluster.version):
            return ""
        versions = [n.runtime_version for n in cluster.nodes
                    if n.runtime == "docker" and parse_version(n.runtime_version)[0]]
        if not versions:
            return ""
        oldest = versions[0]
        for version in versions[1:]:
            if compare_versions(version, oldest) < 0:
                oldest = version
        return oldest

    def _cluster_subjects(self, cluster):
        subjects = self._node_subjects(cluster)
        engine_version = self._cluster_engine_version(cluster)
        selects = self.options.selects

        skipped = set()

        def keep(namespace):
            if selects(namespace):
                return True
            skipped.add(namespace)
            return False

        for binding in cluster.role_bindings:
            if binding.namespace and not keep(binding.namespace):
                continue
            subjects.append(_Subject(binding.subject_id, binding.name,
                                     (("role binding", partial(cluster_rules.check_role_binding, binding)),)))

        for config in cluster.config_data:
            if not keep(config.namespace):
                continue
            subjects.append(_Subject(config.subject_id, config.name,
                                     (("config data", partial(cluster_rules.check_config_data, config)),)))

        for workload in cluster.workloads:
            if not keep(workload.namespace):
                continue
            on_error = partial(self._rule_failed, workload.subject_id)
            rule = partial(cluster_rules.check_workload, workload, engine_version, on_error)
            subjects.append(_Subject(workload.subject_id, workload.name, (("workload", rule),)))

        for volume in cluster.volumes:
            if volume.namespace and not keep(volume.namespace):
                continue
            subjects.append(_Subject(volume.subject_id, volume.name,
                                     (("volume", partial(cluster_rules.check_persistent_volume, volume)),)))

        now = self.options.now or datetime.now(timezone.utc)
        for cert in cluster.certificates:
            reference = now if cert.not_after.tzinfo else now.replace(tzinfo=None)
            subjects.append(_Subject(cert.subject_id, cert.name,
                                     (("certificate", partial(cluster_rules.check_certificate, cert, reference)),)))

        if cluster.cni is not None:
            rule = partial(version_checks.check_cni_version, self.feed, cluster.cni, self.matcher)
            subjects.append(_Subject(cluster.cni.subject_id, cluster.cni.plugin, (("cni", rule),)))

        if cluster.namespaces:
            selected = [namespace for namespace in cluster.namespaces if keep(namespace)]
            logger.info(f"Scanning {len(selected)} of {len(cluster.namespaces)} namespaces: {selected}")
        if skipped:
            logger.info(f"Skipped excluded namespaces: {sorted(skipped)}")
        return subjects

    # ---------------------------------------------------------------- evaluation

    def _rule_failed(self, subject_id, rule_name, error):
        logger.error(f"Rule {rule_name} failed on {subject_id}, skipping its contribution: {error}")

    def evaluate(self, subject):
        """Run every rule of a subject and aggregate the threats."""
        threats = []
        for name, rule in subject.rules:
            try:
                matched, found = rule()
            except Exception as e:
                self._rule_failed(subject.subject_id, name, e)
                continue
            if matched:
                threats.extend(found)
        return aggregate(subject.subject_id, subject.subject_name, threats)

    def _run(self, subjects, report):
        cancel = self.options.cancel_event

        if self.options.max_workers <= 1:
            for index, subject in enumerate(subjects):
                if cancel.is_set():
                    logger.warning(f"Scan cancelled, {len(subjects) - index} subjects not checked")
                    break
                finding = self.evaluate(subject)
                if finding is not None:
                    report.append(finding)
            return report

        def work(subject):
            if cancel.is_set():
                return None
            return self.evaluate(subject)

        with ThreadPoolExecutor(max_workers=self.options.max_workers) as pool:
            findings = [finding for finding in pool.map(work, subjects) if finding is not None]
        if cancel.is_set():
            logger.warning("Scan cancelled, report is partial")
        for finding in sorted(findings, key=lambda finding: finding.subject_id):
            report.append(finding)
        return report

    # ------------------------------------------------------------------- entries

    def scan_host(self, host, report=None):
        """
        Scan a Docker host: engine and kernel versions plus every container.

        @return Report Findings of the host (appended to report when given)
        """
        report = report if report is not None else Report(target=host.name)
        logger.info(f"Begin container analyzing on {host.name} ({len(host.containers)} containers)")
        return self._run(self._host_subjects(host), report)

    def scan_cluster(self, cluster, report=None):
        """
        Scan a Kubernetes cluster snapshot.

        @return Report Findings of the cluster (appended to report when given)
        """
        report = report if report is not None else Report(target=cluster.name)
        logger.info(f"Begin Kubernetes analyzing on {cluster.name} (version {cluster.version})")
        return self._run(self._cluster_subjects(cluster), report)
