"""
@file models.py
@brief Data model shared by rules, matchers, aggregator and orchestrator

@details
Snapshots describe what was observed on a target and are never mutated once
built. Threats are produced by exactly one rule or matcher invocation and are
immutable. Findings group the threats of one subject, and the Report collects
the findings of one run.

Snapshot overview:
- ContainerSnapshot: one Docker container, or one container of a pod template
- WorkloadSnapshot: Pod, DaemonSet, Job or CronJob with its containers
- RoleBindingSnapshot: RoleBinding or ClusterRoleBinding
- ConfigDataSnapshot: ConfigMap or Secret key/value pairs
- VolumeSnapshot: PersistentVolume or PersistentVolumeClaim
- CertificateSnapshot: control-plane certificate expiry
- CniSnapshot: detected CNI plugin and version
- NodeSnapshot: kernel and container runtime reported by a node
- HostSnapshot / ClusterSnapshot: everything collected from one target
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True)
class Threat:
    """
    A single security weakness discovered on a subject.

    @param param str What was inspected (e.g. "network", "kernel version")
    @param value str The observed value that triggered the rule
    @param type str Rule family that produced the threat
    @param describe str Human readable explanation
    @param reference str Remediation hint or upstream reference
    @param severity str One of critical, high, medium, low
    """

    param: str
    value: str
    type: str
    describe: str
    reference: str
    severity: str


@dataclass(frozen=True)
class VulnRecord:
    """
    One vulnerable version range published by the feed.

    An empty or "0.0" min_version means there is no lower bound.
    """

    cve_id: str
    min_version: str
    max_version: str
    level: str
    description: str
    max_inclusive: bool = False


@dataclass(frozen=True)
class Mount:
    source: str
    destination: str
    mode: str = "rw"


@dataclass(frozen=True)
class ContainerSnapshot:
    """Container descriptor as seen by the container rules."""

    id: str
    name: str
    privileged: bool = False
    cap_add: Tuple[str, ...] = ()
    security_opt: Tuple[str, ...] = ()
    mounts: Tuple[Mount, ...] = ()
    env: Tuple[Tuple[str, str], ...] = ()
    network_mode: str = ""
    pid_mode: str = ""
    ipc_mode: str = ""
    uts_mode: str = ""
    userns_mode: str = ""
    namespace: str = ""
    kind: str = "Container"

    @property
    def subject_id(self):
        if self.kind == "Container":
            return self.id[:12]
        return f"{self.kind}/{self.namespace}/{self.id}"


@dataclass(frozen=True)
class WorkloadSnapshot:
    kind: str
    namespace: str
    name: str
    containers: Tuple[ContainerSnapshot, ...] = ()

    @property
    def subject_id(self):
        return f"{self.kind}/{self.namespace}/{self.name}"


@dataclass(frozen=True)
class BindingSubject:
    kind: str
    name: str
    namespace: str = ""


@dataclass(frozen=True)
class RoleBindingSnapshot:
    kind: str
    name: str
    namespace: str
    role_kind: str
    role_name: str
    subjects: Tuple[BindingSubject, ...] = ()

    @property
    def subject_id(self):
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"


@dataclass(frozen=True)
class ConfigDataSnapshot:
    """
    ConfigMap or Secret content.

    Secret values are stored already base64-decoded; values that could not be
    decoded are kept as the raw string.
    """

    kind: str
    namespace: str
    name: str
    data: Tuple[Tuple[str, str], ...] = ()

    @property
    def subject_id(self):
        return f"{self.kind}/{self.namespace}/{self.name}"


@dataclass(frozen=True)
class VolumeSnapshot:
    kind: str
    name: str
    namespace: str = ""
    phase: str = ""
    host_path: str = ""
    claim_ref: str = ""

    @property
    def subject_id(self):
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"


@dataclass(frozen=True)
class CertificateSnapshot:
    name: str
    path: str
    not_after: datetime

    @property
    def subject_id(self):
        return f"Certificate/{self.name}"


@dataclass(frozen=True)
class CniSnapshot:
    plugin: str
    version: str

    @property
    def subject_id(self):
        return f"CNI/{self.plugin}"


@dataclass(frozen=True)
class NodeSnapshot:
    name: str
    kernel_version: str = ""
    runtime: str = ""
    runtime_version: str = ""

    @property
    def subject_id(self):
        return f"Node/{self.name}"


@dataclass(frozen=True)
class HostSnapshot:
    """Everything collected from a single Docker host."""

    name: str
    engine_version: str = ""
    kernel_version: str = ""
    containers: Tuple[ContainerSnapshot, ...] = ()


@dataclass(frozen=True)
class ClusterSnapshot:
    """Everything collected from a single Kubernetes cluster."""

    name: str
    version: str
    nodes: Tuple[NodeSnapshot, ...] = ()
    namespaces: Tuple[str, ...] = ()
    workloads: Tuple[WorkloadSnapshot, ...] = ()
    role_bindings: Tuple[RoleBindingSnapshot, ...] = ()
    config_data: Tuple[ConfigDataSnapshot, ...] = ()
    volumes: Tuple[VolumeSnapshot, ...] = ()
    certificates: Tuple[CertificateSnapshot, ...] = ()
    cni: Optional[CniSnapshot] = None


@dataclass
class Finding:
    """Ranked threats of one subject. Only created when threats exist."""

    subject_id: str
    subject_name: str
    threats: Tuple[Threat, ...]

    def to_dict(self):
        return {
            "subject_id": self.subject_id,
            "subject_name": self.subject_name,
            "threats": [
                {
                    "param": t.param,
                    "value": t.value,
                    "type": t.type,
                    "describe": t.describe,
                    "reference": t.reference,
                    "severity": t.severity,
                }
                for t in self.threats
            ],
        }


@dataclass
class Report:
    """
    Append-only sequence of findings for one scan run.

    Appends are serialized by an internal lock so worker threads can share
    a single report.
    """

    target: str = ""
    findings: list = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def append(self, finding):
        with self._lock:
            self.findings.append(finding)

    def sort_by_subject(self):
        with self._lock:
            self.findings.sort(key=lambda f: f.subject_id)

    def total_threats(self):
        return sum(len(f.threats) for f in self.findings)

    def __iter__(self):
        return iter(list(self.findings))

    def __len__(self):
        return len(self.findings)
