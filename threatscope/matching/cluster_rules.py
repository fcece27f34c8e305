"""
@file cluster_rules.py
@brief Configuration-risk rules for Kubernetes objects

@details
Same contract as the container rules: each check reads one snapshot and
returns (matched, threats).

Workloads (Pod, DaemonSet, Job, CronJob) are not given rules of their own.
Their pod template containers are already ContainerSnapshots, with
hostNetwork / hostPID / hostIPC and hostPath volumes folded in, so the
container rules run on them unchanged.
"""

import logging
from datetime import timedelta

from threatscope.caching.constants import CERT_EXPIRY_WARNING_DAYS
from threatscope.core.models import Severity, Threat
from threatscope.matching.rules import (
    grade_credentials,
    is_credential_key,
    run_container_rules,
    sensitive_mount_severity,
)

logger = logging.getLogger(__name__)

ANONYMOUS_SUBJECTS = {
    ("User", "system:anonymous"),
    ("Group", "system:unauthenticated"),
}


def check_workload(workload, engine_version="", on_error=None):
    """
    Run the container rules on every container of a workload.

    Each threat is prefixed with the container it came from so a workload
    with several containers stays readable in one finding.
    """
    threats = []
    for container in workload.containers:
        for threat in run_container_rules(container, engine_version, on_error=on_error):
            threats.append(Threat(
                param=f"{container.name}: {threat.param}",
                value=threat.value,
                type=threat.type,
                describe=threat.describe,
                reference=threat.reference,
                severity=threat.severity,
            ))
    return bool(threats), threats


def check_role_binding(binding):
    """
    Flag bindings that hand cluster-admin out, or any role to anonymous users.
    """
    threats = []

    for subject in binding.subjects:
        if (subject.kind, subject.name) in ANONYMOUS_SUBJECTS:
            threats.append(Threat(
                param="subject",
                value=f"{subject.kind} {subject.name}",
                type="RBAC",
                describe=f"{binding.role_kind} {binding.role_name} is bound to "
                         f"unauthenticated requests ({subject.name}).",
                reference="Remove anonymous subjects from the binding.",
                severity=Severity.CRITICAL.value,
            ))
        elif binding.role_name == "cluster-admin" and subject.kind in ("ServiceAccount", "User"):
            owner = f"{subject.namespace}/{subject.name}" if subject.namespace else subject.name
            threats.append(Threat(
                param="subject",
                value=f"{subject.kind} {owner}",
                type="RBAC",
                describe=f"{subject.kind} {owner} is granted cluster-admin.",
                reference="Bind a namespaced role with the minimal set of verbs instead.",
                severity=Severity.HIGH.value,
            ))

    return bool(threats), threats


def check_config_data(config):
    """
    Flag credentials kept in ConfigMaps and weak credentials in Secrets.

    ConfigMaps are not meant for secrets: any credential-looking key is at
    least medium, weak values are graded on top.
    """
    threats = []

    if config.kind == "ConfigMap":
        for key, _ in config.data:
            if is_credential_key(key):
                threats.append(Threat(
                    param="configmap",
                    value=key,
                    type="Plaintext credential",
                    describe=f"Key {key} looks like a credential stored in a ConfigMap.",
                    reference="Move credentials into a Secret.",
                    severity=Severity.MEDIUM.value,
                ))

    threats.extend(grade_credentials(config.data, config.kind.lower(), "Weak password"))
    return bool(threats), threats


def check_persistent_volume(volume):
    """Flag hostPath volumes on sensitive paths and claims in a broken state."""
    threats = []

    if volume.host_path:
        severity = sensitive_mount_severity(volume.host_path)
        if severity is not None:
            threats.append(Threat(
                param="hostPath",
                value=volume.host_path,
                type="Sensitive mount",
                describe=f"{volume.kind} {volume.name} exposes host path {volume.host_path}.",
                reference="Use a storage class instead of hostPath volumes.",
                severity=severity,
            ))

    if volume.kind == "PersistentVolumeClaim" and volume.phase == "Lost":
        threats.append(Threat(
            param="phase",
            value=volume.phase,
            type="Volume binding",
            describe=f"Claim {volume.name} lost its bound volume, data may be served from another volume.",
            reference="Recreate the claim or restore the volume.",
            severity=Severity.LOW.value,
        ))
    elif volume.kind == "PersistentVolume" and volume.phase == "Released":
        threats.append(Threat(
            param="phase",
            value=volume.phase,
            type="Volume binding",
            describe=f"Volume {volume.name} was released by {volume.claim_ref or 'its claim'} "
                     "and still holds the previous tenant's data.",
            reference="Wipe and delete released volumes.",
            severity=Severity.LOW.value,
        ))

    return bool(threats), threats


def check_certificate(cert, now):
    """
    Flag expired certificates (high) and certificates close to expiry (medium).

    @param cert CertificateSnapshot Certificate to check
    @param now datetime Reference time, same timezone awareness as not_after
    """
    if cert.not_after <= now:
        severity = Severity.HIGH.value
        describe = f"Certificate {cert.name} expired on {cert.not_after.isoformat()}."
    elif cert.not_after - now <= timedelta(days=CERT_EXPIRY_WARNING_DAYS):
        severity = Severity.MEDIUM.value
        describe = f"Certificate {cert.name} expires on {cert.not_after.isoformat()}."
    else:
        return False, []

    return True, [Threat(
        param="certificate",
        value=cert.path,
        type="Certificate expiration",
        describe=describe,
        reference="Renew the certificate (kubeadm certs renew).",
        severity=severity,
    )]
