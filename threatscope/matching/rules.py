"""
@file rules.py
@brief Configuration-risk rules for container descriptors

@details
Every rule has the shape

    check_x(container, ...) -> (matched, threats)

and only reads the ContainerSnapshot it is given. Rules never look at each
other's output, so they can be called in any order or from several threads.

Rules:
- check_privileged: privileged mode, added capabilities, unconfined profiles
- check_mount: sensitive host paths mounted into the container
- check_env_password: weak credentials in environment variables
- check_network_model: host network, escalated on old engines
- check_pid: shared PID namespace
- check_namespace_sharing: shared IPC, UTS and user namespaces
"""

import logging
import posixpath
import string

from threatscope.caching.constants import (
    CREDENTIAL_KEY_MARKERS,
    DANGEROUS_CAPABILITIES,
    HOST_NETWORK_HARDENED_ENGINE,
    MIN_PASSWORD_LENGTH,
    SENSITIVE_MOUNTS,
    WEAK_PASSWORDS,
)
from threatscope.core.models import Severity, Threat
from threatscope.matching.version_matcher import compare_versions, parse_version

logger = logging.getLogger(__name__)


def _normalize_capability(cap) -> str:
    cap = cap.strip().upper()
    return cap[4:] if cap.startswith("CAP_") else cap


def check_privileged(container):
    """
    Flag privileged mode and privilege-granting settings.

    Privileged mode or the ALL capability give unrestricted host access and
    are critical; a single dangerous capability or an unconfined security
    profile is high.
    """
    threats = []

    if container.privileged:
        threats.append(Threat(
            param="privileged",
            value="true",
            type="Privileged container",
            describe="Container is running in privileged mode, "
                     "all devices and capabilities of the host are exposed.",
            reference="Remove --privileged, grant only the capabilities the workload needs.",
            severity=Severity.CRITICAL.value,
        ))

    for cap in container.cap_add:
        name = _normalize_capability(cap)
        if name == "ALL":
            threats.append(Threat(
                param="capabilities",
                value=cap,
                type="Dangerous capability",
                describe="Container adds ALL Linux capabilities, "
                         "which is equivalent to privileged mode.",
                reference="Drop ALL and add back the minimal capability set.",
                severity=Severity.CRITICAL.value,
            ))
        elif name in DANGEROUS_CAPABILITIES:
            threats.append(Threat(
                param="capabilities",
                value=cap,
                type="Dangerous capability",
                describe=f"Container adds CAP_{name}, which has a known container escape path.",
                reference=f"Remove CAP_{name} from the container capabilities.",
                severity=Severity.HIGH.value,
            ))

    for option in container.security_opt:
        key, _, value = option.replace(":", "=", 1).partition("=")
        if key.strip() in ("apparmor", "seccomp") and value.strip() == "unconfined":
            threats.append(Threat(
                param="security_opt",
                value=option,
                type="Unconfined profile",
                describe=f"Container runs without a {key.strip()} profile, "
                         "kernel attack surface is not restricted.",
                reference=f"Use the default {key.strip()} profile or a custom one.",
                severity=Severity.HIGH.value,
            ))

    return bool(threats), threats


def sensitive_mount_severity(source):
    """
    Severity of exposing a host path, or None if the path is not sensitive.

    A path inherits the severity of its closest listed parent; "/" only
    matches itself.
    """
    path = posixpath.normpath(source or "")
    if not path.startswith("/"):
        return None
    if path in SENSITIVE_MOUNTS:
        return SENSITIVE_MOUNTS[path]

    best = None
    for listed, severity in SENSITIVE_MOUNTS.items():
        if listed == "/":
            continue
        if path.startswith(listed + "/") and (best is None or len(listed) > len(best[0])):
            best = (listed, severity)
    return best[1] if best else None


def check_mount(container):
    """Flag bind mounts of sensitive host paths, one threat per mount."""
    threats = []

    for mount in container.mounts:
        severity = sensitive_mount_severity(mount.source)
        if severity is None:
            continue
        threats.append(Threat(
            param="mount",
            value=f"{mount.source}:{mount.destination}:{mount.mode}",
            type="Sensitive mount",
            describe=f"Host path {mount.source} is mounted into the container at "
                     f"{mount.destination} ({mount.mode}).",
            reference="Avoid mounting host paths, use named volumes or read-only narrow paths.",
            severity=severity,
        ))

    return bool(threats), threats


def is_credential_key(key) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in CREDENTIAL_KEY_MARKERS)


def _is_reference(value) -> bool:
    value = value.strip()
    return value.startswith("$(") or value.startswith("${")


def password_weakness(value):
    """
    Grade a credential value.

    @return tuple (severity, reason) or None when the value looks strong
    """
    if value == "":
        return Severity.HIGH.value, "is empty"
    if value.lower() in WEAK_PASSWORDS:
        return Severity.HIGH.value, "is a common or vendor default password"

    classes = sum([
        any(c in string.ascii_lowercase for c in value),
        any(c in string.ascii_uppercase for c in value),
        any(c in string.digits for c in value),
        any(c not in string.ascii_letters + string.digits for c in value),
    ])
    if len(value) < MIN_PASSWORD_LENGTH:
        return Severity.MEDIUM.value, f"is shorter than {MIN_PASSWORD_LENGTH} characters"
    if classes < 3:
        return Severity.MEDIUM.value, "uses fewer than 3 character classes"
    return None


def grade_credentials(pairs, param, type_):
    """Shared weak-password grading for env vars and ConfigMap/Secret data."""
    threats = []
    for key, value in pairs:
        if not is_credential_key(key) or value is None or _is_reference(value):
            continue
        weakness = password_weakness(value)
        if weakness is None:
            continue
        severity, reason = weakness
        threats.append(Threat(
            param=param,
            value=key,
            type=type_,
            describe=f"Value of {key} {reason}.",
            reference="Use a strong random credential and inject it from a secret store.",
            severity=severity,
        ))
    return threats


def check_env_password(container):
    """Flag weak credentials in declared environment variables, one threat per key."""
    threats = grade_credentials(container.env, "env", "Weak password")
    return bool(threats), threats


def check_network_model(container, engine_version=""):
    """
    Flag the host network mode, and joining another container's network.

    Engines older than HOST_NETWORK_HARDENED_ENGINE let a host-network
    container reach the containerd-shim abstract socket (CVE-2020-15257),
    which escalates the threat to critical.
    """
    mode = container.network_mode or ""
    if mode.startswith("container:"):
        return True, [Threat(
            param="network",
            value=mode,
            type="Network mode",
            describe=f"Container shares the network namespace of {mode.split(':', 1)[1]}, "
                     "its ports and loopback services are reachable.",
            reference="Give each container its own network.",
            severity=Severity.LOW.value,
        )]
    if mode != "host":
        return False, []

    severity = Severity.MEDIUM.value
    describe = "Container shares the host network namespace, " \
               "host services and interfaces are reachable."
    reference = "Use a bridge or overlay network."

    if engine_version and parse_version(engine_version)[0] \
            and compare_versions(engine_version, HOST_NETWORK_HARDENED_ENGINE) < 0:
        severity = Severity.CRITICAL.value
        describe += f" Engine {engine_version} is affected by CVE-2020-15257, " \
                    "the containerd-shim API is reachable from the container."
        reference = f"Upgrade the engine to {HOST_NETWORK_HARDENED_ENGINE} or later."

    return True, [Threat(
        param="network",
        value="host",
        type="Network mode",
        describe=describe,
        reference=reference,
        severity=severity,
    )]


def check_pid(container):
    """Flag sharing of the host or another container's PID namespace."""
    mode = container.pid_mode or ""
    if mode == "host":
        severity = Severity.HIGH.value
        describe = "Container shares the host PID namespace, host processes can be seen and signalled."
    elif mode.startswith("container:"):
        severity = Severity.MEDIUM.value
        describe = f"Container shares the PID namespace of {mode.split(':', 1)[1]}."
    else:
        return False, []

    return True, [Threat(
        param="pid",
        value=mode,
        type="PID namespace",
        describe=describe,
        reference="Do not share the PID namespace.",
        severity=severity,
    )]


_NAMESPACE_SEVERITY = {
    ("ipc", "host"): Severity.MEDIUM.value,
    ("ipc", "container"): Severity.LOW.value,
    ("uts", "host"): Severity.LOW.value,
    ("userns", "host"): Severity.MEDIUM.value,
}


def check_namespace_sharing(container):
    """Flag shared IPC, UTS and user namespaces."""
    threats = []
    for name, mode in (("ipc", container.ipc_mode), ("uts", container.uts_mode),
                       ("userns", container.userns_mode)):
        mode = mode or ""
        target = "container" if mode.startswith("container:") else mode
        severity = _NAMESPACE_SEVERITY.get((name, target))
        if severity is None:
            continue
        threats.append(Threat(
            param=name,
            value=mode,
            type="Namespace sharing",
            describe=f"Container shares the {name} namespace with {'the host' if mode == 'host' else mode}.",
            reference=f"Do not share the {name} namespace.",
            severity=severity,
        ))
    return bool(threats), threats


# (name, rule, needs_engine_version)
CONTAINER_RULES = (
    ("privileged", check_privileged, False),
    ("mount", check_mount, False),
    ("env password", check_env_password, False),
    ("network", check_network_model, True),
    ("pid", check_pid, False),
    ("namespace sharing", check_namespace_sharing, False),
)


def run_container_rules(container, engine_version="", on_error=None):
    """
    Run every container rule against one container.

    A rule that raises is skipped; on_error(rule_name, exc) is called
    when given, otherwise the failure is logged.

    @return list Threats in rule order, then discovery order within a rule
    """
    threats = []
    for name, rule, needs_engine in CONTAINER_RULES:
        try:
            if needs_engine:
                matched, found = rule(container, engine_version)
            else:
                matched, found = rule(container)
        except Exception as e:
            if on_error is not None:
                on_error(name, e)
            else:
                logger.error(f"Rule {name} failed on {container.subject_id}: {e}")
            continue
        if matched:
            threats.extend(found)
    return threats
