"""
@file host_probe.py
@brief SSH-based snapshot collection from Docker hosts and Kubernetes nodes

Connects to the machines listed in the inventory and runs read-only
commands to collect the runtime and cluster state the rules inspect.
Nothing is installed or changed on the target.

@details
**Inventory entry (inventory.ini):**
@code
[web01]
type = docker
host = 10.0.0.12
user = audit
password = ...

[prod-cluster]
type = kubernetes
host = 10.0.0.20
user = audit
key_file = ~/.ssh/id_ed25519
@endcode

**Docker hosts:**
- docker version --format '{{.Server.Version}}'
- uname -r
- docker ps -q, then docker inspect on the listed ids

**Kubernetes (run on a control-plane node with kubectl configured):**
- kubectl version -o json
- kubectl get <kind> -A -o json for nodes, workloads, bindings, config data
  and volumes
- openssl x509 -enddate on the kubeadm PKI certificates

**Error Handling:**
- Connection failure or a failing mandatory command raises
  CollaboratorUnreachableError
- A failing optional listing (one resource kind, one certificate) is logged
  and left out, the rest of the snapshot is still returned
"""

import logging
import os
import shlex

import paramiko

from threatscope.acquisition import descriptors
from threatscope.core.errors import CollaboratorUnreachableError, MalformedInputError
from threatscope.core.models import ClusterSnapshot, HostSnapshot

logger = logging.getLogger(__name__)

COMMAND_TIMEOUT = 60

KUBE_PKI_DIR = "/etc/kubernetes/pki"
KUBE_PKI_CERTS = (
    "apiserver.crt",
    "apiserver-kubelet-client.crt",
    "apiserver-etcd-client.crt",
    "front-proxy-client.crt",
    "etcd/server.crt",
    "etcd/peer.crt",
)

NAMESPACED_KINDS = {
    "Pod": "pods",
    "DaemonSet": "daemonsets",
    "Job": "jobs",
    "CronJob": "cronjobs",
}


def connect(config, machine):
    """
    Open an SSH session to an inventory machine.

    @param config ConfigParser Loaded inventory
    @param machine str Section name of the machine

    @return paramiko.SSHClient Connected client, caller must close it
    @throws CollaboratorUnreachableError when the connection fails
    """
    section = config[machine]
    client = paramiko.SSHClient()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

    key_file = section.get("key_file")
    try:
        logger.debug(f"Connecting to {machine} ({section['host']})")
        client.connect(
            section["host"],
            port=section.getint("port", 22),
            username=section.get("user"),
            password=section.get("password"),
            key_filename=os.path.expanduser(key_file) if key_file else None,
            timeout=COMMAND_TIMEOUT,
        )
    except Exception as e:
        logger.error(f"Connection error to {machine} ({section.get('host')}): {e}")
        client.close()
        raise CollaboratorUnreachableError(machine, f"SSH connection failed: {e}") from e
    return client


def run_command(client, machine, command) -> str:
    """
    Run a command and return its standard output.

    @throws CollaboratorUnreachableError on a non-zero exit status
    """
    logger.debug(f"[{machine}] $ {command}")
    try:
        _, stdout, stderr = client.exec_command(command, timeout=COMMAND_TIMEOUT)
        output = stdout.read().decode(errors="replace")
        status = stdout.channel.recv_exit_status()
        error = stderr.read().decode(errors="replace").strip()
    except Exception as e:
        raise CollaboratorUnreachableError(machine, f"command {command!r} failed: {e}") from e

    if status != 0:
        raise CollaboratorUnreachableError(machine, f"command {command!r} exited with {status}: {error}")
    return output


def _optional(client, machine, command, what):
    try:
        return run_command(client, machine, command)
    except CollaboratorUnreachableError as e:
        logger.warning(f"Could not collect {what} on {machine}, continuing without it: {e}")
        return None


# --- DOCKER ---
def collect_docker_host(config, machine) -> HostSnapshot:
    """
    Collect engine version, kernel version and running containers of a Docker host.

    @return HostSnapshot Snapshot of the host
    """
    client = connect(config, machine)
    try:
        engine_version = run_command(client, machine, "docker version --format '{{.Server.Version}}'").strip()
        kernel_version = (_optional(client, machine, "uname -r", "kernel version") or "").strip()
        logger.info(f"{machine}: docker {engine_version}, kernel {kernel_version or 'unknown'}")

        ids = run_command(client, machine, "docker ps -q").split()
        containers = []
        if ids:
            output = run_command(client, machine, "docker inspect " + " ".join(shlex.quote(i) for i in ids))
            try:
                containers = descriptors.parse_docker_inspect(output)
            except MalformedInputError as e:
                logger.error(f"Unreadable docker inspect output on {machine}: {e}")
        logger.info(f"Retrieved {len(containers)} running containers from {machine}")
    finally:
        client.close()
        logger.debug(f"Closed SSH connection to {machine}")

    return HostSnapshot(
        name=machine,
        engine_version=engine_version,
        kernel_version=kernel_version,
        containers=tuple(containers),
    )


# --- KUBERNETES ---
def _kubectl_items(client, machine, resource, all_namespaces=True):
    scope = " -A" if all_namespaces else ""
    output = _optional(client, machine, f"kubectl get {resource}{scope} -o json", resource)
    if output is None:
        return []
    try:
        return descriptors.list_items(output, resource)
    except MalformedInputError as e:
        logger.warning(f"Unreadable {resource} listing on {machine}: {e}")
        return []


def _collect_certificates(client, machine):
    certificates = []
    for cert in KUBE_PKI_CERTS:
        path = f"{KUBE_PKI_DIR}/{cert}"
        output = _optional(client, machine, f"openssl x509 -enddate -noout -in {shlex.quote(path)}", path)
        if output is None:
            continue
        try:
            certificates.append(descriptors.parse_openssl_enddate(cert, path, output))
        except MalformedInputError as e:
            logger.warning(f"Skipping certificate {path}: {e}")
    return certificates


def collect_cluster(config, machine) -> ClusterSnapshot:
    """
    Collect a read-only snapshot of a Kubernetes cluster through kubectl.

    @return ClusterSnapshot Snapshot of the cluster
    @throws CollaboratorUnreachableError when the API server cannot be reached
    """
    client = connect(config, machine)
    try:
        try:
            version = descriptors.parse_server_version(
                run_command(client, machine, "kubectl version -o json"))
        except MalformedInputError as e:
            raise CollaboratorUnreachableError(machine, str(e)) from e
        logger.info(f"{machine}: Kubernetes {version}")

        nodes = descriptors.parse_items(_kubectl_items(client, machine, "nodes", False), descriptors.parse_node, "node")
        namespaces = [
            (item.get("metadata") or {}).get("name", "")
            for item in _kubectl_items(client, machine, "namespaces", False)
        ]

        workloads = []
        daemonsets = []
        for kind, resource in NAMESPACED_KINDS.items():
            items = _kubectl_items(client, machine, resource)
            if kind == "DaemonSet":
                daemonsets = items
            workloads.extend(descriptors.parse_workloads(items, kind))

        bindings = []
        for resource in ("rolebindings", "clusterrolebindings"):
            items = _kubectl_items(client, machine, resource, resource == "rolebindings")
            bindings.extend(descriptors.parse_items(items, descriptors.parse_role_binding, resource))

        config_data = []
        for kind, resource in (("ConfigMap", "configmaps"), ("Secret", "secrets")):
            items = _kubectl_items(client, machine, resource)
            config_data.extend(descriptors.parse_items(
                items, lambda item, k=kind: descriptors.parse_config_data(item, k), resource))

        volumes = []
        for kind, resource, namespaced in (("PersistentVolume", "pv", False),
                                           ("PersistentVolumeClaim", "pvc", True)):
            items = _kubectl_items(client, machine, resource, namespaced)
            volumes.extend(descriptors.parse_items(
                items, lambda item, k=kind: descriptors.parse_volume(item, k), resource))

        certificates = _collect_certificates(client, machine)
        cni = descriptors.detect_cni(
            [d for d in daemonsets if (d.get("metadata") or {}).get("namespace") == "kube-system"])
    finally:
        client.close()
        logger.debug(f"Closed SSH connection to {machine}")

    logger.info(
        f"Collected from {machine}: {len(nodes)} nodes, {len(workloads)} workloads, "
        f"{len(bindings)} bindings, {len(config_data)} config objects, {len(volumes)} volumes, "
        f"{len(certificates)} certificates, CNI {cni.plugin if cni else 'unknown'}"
    )
    return ClusterSnapshot(
        name=machine,
        version=version,
        nodes=tuple(nodes),
        namespaces=tuple(namespaces),
        workloads=tuple(workloads),
        role_bindings=tuple(bindings),
        config_data=tuple(config_data),
        volumes=tuple(volumes),
        certificates=tuple(certificates),
        cni=cni,
    )
