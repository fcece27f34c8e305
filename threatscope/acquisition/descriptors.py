"""
@file descriptors.py
@brief Conversion of raw runtime and cluster JSON into immutable snapshots

Parses the output of `docker inspect` and `kubectl get -o json` into the
snapshot types of threatscope.core.models. Only the fields the rules read
are kept.

@details
**Docker containers:**
HostConfig (privileged, capabilities, security options, namespace modes),
bind mounts and Config.Env.

**Kubernetes workloads:**
Pods, DaemonSets, Jobs and CronJobs are reduced to their pod template. Pod
level settings are folded into every container:
- hostNetwork -> network_mode "host"
- hostPID -> pid_mode "host", shareProcessNamespace -> "container:<pod>"
- hostIPC -> ipc_mode "host"
- hostPath volumes -> Mount entries of the containers mounting them
- seccompProfile Unconfined -> security_opt "seccomp=unconfined"

**Malformed input:**
A single entry that cannot be read raises MalformedInputError; the list
parsers log it and skip the entry so one odd object never hides the others.
"""

import base64
import binascii
import json
import logging
from datetime import datetime, timezone

from threatscope.caching.constants import KNOWN_CNI_PLUGINS
from threatscope.core.errors import MalformedInputError
from threatscope.core.models import (
    BindingSubject,
    CertificateSnapshot,
    CniSnapshot,
    ConfigDataSnapshot,
    ContainerSnapshot,
    Mount,
    NodeSnapshot,
    RoleBindingSnapshot,
    VolumeSnapshot,
    WorkloadSnapshot,
)

logger = logging.getLogger(__name__)


def load_json(text, what):
    """Decode command output as JSON, raising MalformedInputError on failure."""
    try:
        return json.loads(text)
    except (TypeError, ValueError) as e:
        raise MalformedInputError(f"{what} is not valid JSON: {e}") from e


def parse_items(items, parser, what):
    parsed = []
    for item in items or []:
        try:
            parsed.append(parser(item))
        except (MalformedInputError, AttributeError, KeyError, TypeError) as e:
            logger.warning(f"Skipping malformed {what}: {e}")
    return parsed


def _split_env(entries):
    env = []
    for entry in entries or []:
        key, sep, value = entry.partition("=")
        env.append((key, value if sep else ""))
    return tuple(env)


# --- DOCKER ---
def parse_docker_container(data) -> ContainerSnapshot:
    """
    Build a ContainerSnapshot from one `docker inspect` object.

    @param data dict Decoded docker inspect entry
    """
    if not isinstance(data, dict) or not data.get("Id"):
        raise MalformedInputError("docker inspect entry without Id")

    host_config = data.get("HostConfig") or {}
    config = data.get("Config") or {}

    mounts = []
    for mount in data.get("Mounts") or []:
        if mount.get("Type", "bind") != "bind":
            continue
        mode = mount.get("Mode") or ("rw" if mount.get("RW", True) else "ro")
        mounts.append(Mount(mount.get("Source", ""), mount.get("Destination", ""), mode))

    return ContainerSnapshot(
        id=data["Id"],
        name=(data.get("Name") or "").lstrip("/"),
        privileged=bool(host_config.get("Privileged")),
        cap_add=tuple(host_config.get("CapAdd") or ()),
        security_opt=tuple(host_config.get("SecurityOpt") or ()),
        mounts=tuple(mounts),
        env=_split_env(config.get("Env")),
        network_mode=host_config.get("NetworkMode") or "",
        pid_mode=host_config.get("PidMode") or "",
        ipc_mode=host_config.get("IpcMode") or "",
        uts_mode=host_config.get("UTSMode") or "",
        userns_mode=host_config.get("UsernsMode") or "",
    )


def parse_docker_inspect(text) -> list:
    """Parse the JSON array printed by `docker inspect <id>...`."""
    return parse_items(load_json(text, "docker inspect output"), parse_docker_container, "container")


# --- KUBERNETES WORKLOADS ---
POD_SPEC_PATHS = {
    "Pod": ("spec",),
    "DaemonSet": ("spec", "template", "spec"),
    "Job": ("spec", "template", "spec"),
    "CronJob": ("spec", "jobTemplate", "spec", "template", "spec"),
}


def _dig(data, path):
    for key in path:
        data = (data or {}).get(key)
    return data or {}


def _container_env(container):
    env = []
    for entry in container.get("env") or []:
        # valueFrom entries reference a Secret or ConfigMap, nothing to grade here
        if "value" in entry:
            env.append((entry.get("name", ""), entry.get("value") or ""))
    return tuple(env)


def _seccomp_unconfined(*contexts):
    for context in contexts:
        profile = (context or {}).get("seccompProfile") or {}
        if profile.get("type") == "Unconfined":
            return True
    return False


def parse_pod_spec(spec, kind, namespace, name) -> tuple:
    """
    Build the container snapshots of a pod spec.

    @param spec dict Pod spec (spec of a Pod, template spec of a controller)
    @return tuple ContainerSnapshots for init and regular containers
    """
    host_paths = {}
    for volume in spec.get("volumes") or []:
        host_path = volume.get("hostPath")
        if host_path:
            host_paths[volume.get("name")] = host_path.get("path", "")

    pod_context = spec.get("securityContext") or {}
    if spec.get("hostPID"):
        pid_mode = "host"
    elif spec.get("shareProcessNamespace"):
        pid_mode = f"container:{name}"
    else:
        pid_mode = ""

    containers = []
    for container in (spec.get("initContainers") or []) + (spec.get("containers") or []):
        context = container.get("securityContext") or {}
        capabilities = context.get("capabilities") or {}

        mounts = []
        for volume_mount in container.get("volumeMounts") or []:
            source = host_paths.get(volume_mount.get("name"))
            if source is None:
                continue
            mode = "ro" if volume_mount.get("readOnly") else "rw"
            mounts.append(Mount(source, volume_mount.get("mountPath", ""), mode))

        security_opt = ("seccomp=unconfined",) if _seccomp_unconfined(context, pod_context) else ()

        containers.append(ContainerSnapshot(
            id=f"{name}/{container.get('name', '')}",
            name=container.get("name", ""),
            privileged=bool(context.get("privileged")),
            cap_add=tuple(capabilities.get("add") or ()),
            security_opt=security_opt,
            mounts=tuple(mounts),
            env=_container_env(container),
            network_mode="host" if spec.get("hostNetwork") else "",
            pid_mode=pid_mode,
            ipc_mode="host" if spec.get("hostIPC") else "",
            namespace=namespace,
            kind=kind,
        ))
    return tuple(containers)


def parse_workload(item, kind=None) -> WorkloadSnapshot:
    kind = kind or item.get("kind")
    if kind not in POD_SPEC_PATHS:
        raise MalformedInputError(f"unsupported workload kind {kind!r}")
    metadata = item.get("metadata") or {}
    name = metadata.get("name")
    if not name:
        raise MalformedInputError(f"{kind} without metadata.name")
    namespace = metadata.get("namespace", "default")
    spec = _dig(item, POD_SPEC_PATHS[kind])
    return WorkloadSnapshot(
        kind=kind,
        namespace=namespace,
        name=name,
        containers=parse_pod_spec(spec, kind, namespace, name),
    )


def parse_workloads(items, kind) -> list:
    """
    Parse workloads of one kind.

    Pods owned by a controller are skipped, the controller template is
    checked instead.
    """
    if kind == "Pod":
        items = [item for item in items or []
                 if not (isinstance(item, dict) and (item.get("metadata") or {}).get("ownerReferences"))]
    return parse_items(items, lambda item: parse_workload(item, kind), kind)


# --- KUBERNETES RBAC, CONFIG AND STORAGE ---
def parse_role_binding(item) -> RoleBindingSnapshot:
    metadata = item.get("metadata") or {}
    role_ref = item.get("roleRef") or {}
    if not metadata.get("name") or not role_ref.get("name"):
        raise MalformedInputError("binding without name or roleRef")
    subjects = tuple(
        BindingSubject(s.get("kind", ""), s.get("name", ""), s.get("namespace", ""))
        for s in item.get("subjects") or []
    )
    return RoleBindingSnapshot(
        kind=item.get("kind") or ("RoleBinding" if metadata.get("namespace") else "ClusterRoleBinding"),
        name=metadata["name"],
        namespace=metadata.get("namespace", ""),
        role_kind=role_ref.get("kind", ""),
        role_name=role_ref["name"],
        subjects=subjects,
    )


def _decode_secret_value(value):
    try:
        return base64.b64decode(value, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return value


def parse_config_data(item, kind) -> ConfigDataSnapshot:
    metadata = item.get("metadata") or {}
    if not metadata.get("name"):
        raise MalformedInputError(f"{kind} without metadata.name")
    data = item.get("data") or {}
    if kind == "Secret":
        pairs = tuple((key, _decode_secret_value(value)) for key, value in data.items())
    else:
        pairs = tuple((key, str(value)) for key, value in data.items())
    return ConfigDataSnapshot(kind=kind, namespace=metadata.get("namespace", "default"),
                              name=metadata["name"], data=pairs)


def parse_volume(item, kind) -> VolumeSnapshot:
    metadata = item.get("metadata") or {}
    if not metadata.get("name"):
        raise MalformedInputError(f"{kind} without metadata.name")
    spec = item.get("spec") or {}
    claim = spec.get("claimRef") or {}
    return VolumeSnapshot(
        kind=kind,
        name=metadata["name"],
        namespace=metadata.get("namespace", "") if kind == "PersistentVolumeClaim" else "",
        phase=(item.get("status") or {}).get("phase", ""),
        host_path=(spec.get("hostPath") or {}).get("path", ""),
        claim_ref=f"{claim.get('namespace')}/{claim.get('name')}" if claim.get("name") else "",
    )


def parse_node(item) -> NodeSnapshot:
    metadata = item.get("metadata") or {}
    info = (item.get("status") or {}).get("nodeInfo") or {}
    runtime, _, runtime_version = (info.get("containerRuntimeVersion") or "").partition("://")
    return NodeSnapshot(
        name=metadata.get("name", ""),
        kernel_version=info.get("kernelVersion", ""),
        runtime=runtime,
        runtime_version=runtime_version,
    )


def list_items(text, what) -> list:
    """Items of a `kubectl get -o json` List."""
    data = load_json(text, what)
    if not isinstance(data, dict):
        raise MalformedInputError(f"{what} is not a Kubernetes List")
    return data.get("items") or []


def parse_server_version(text) -> str:
    """gitVersion of `kubectl version -o json`."""
    data = load_json(text, "kubectl version output")
    version = (data.get("serverVersion") or {}).get("gitVersion")
    if not version:
        raise MalformedInputError("kubectl version output has no serverVersion")
    return version


# --- CERTIFICATES AND CNI ---
def parse_openssl_enddate(name, path, text) -> CertificateSnapshot:
    """
    Parse `openssl x509 -enddate -noout` output.

    @code
    notAfter=Jan  1 00:00:00 2030 GMT
    @endcode
    """
    _, _, stamp = (text or "").strip().partition("=")
    try:
        not_after = datetime.strptime(stamp.strip(), "%b %d %H:%M:%S %Y %Z")
    except ValueError as e:
        raise MalformedInputError(f"cannot read expiry of {path}: {e}") from e
    return CertificateSnapshot(name=name, path=path, not_after=not_after.replace(tzinfo=timezone.utc))


def detect_cni(daemonsets):
    """
    Identify the CNI plugin from DaemonSet images.

    @param daemonsets list DaemonSet items (usually from kube-system)
    @return CniSnapshot|None First known plugin found with its image tag
    """
    for item in daemonsets or []:
        spec = _dig(item, POD_SPEC_PATHS["DaemonSet"])
        for container in (spec.get("containers") or []) + (spec.get("initContainers") or []):
            image = container.get("image", "")
            repository, _, tag = image.rpartition(":")
            if not repository or "/" in tag:
                repository, tag = image, ""
            image_name = repository.rsplit("/", 1)[-1]
            for plugin in KNOWN_CNI_PLUGINS:
                if plugin in image_name or f"/{plugin}/" in f"/{repository}/":
                    return CniSnapshot(plugin=plugin, version=tag.lstrip("v"))
    return None
