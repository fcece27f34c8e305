"""
@file constants.py
@brief Process-wide configuration for the threat scanner

@details
Values in this module are loaded once at import time and treated as
read-only for the lifetime of a run. Per-run options (namespace selection,
exclusion list, worker count) are passed explicitly through ScanOptions in
threatscope.core.orchestrator instead of being changed here.

Environment overrides:
- THREATSCOPE_CACHE_DIR: cache directory (default: cache)
- THREATSCOPE_INVENTORY: inventory file (default: inventory.ini)
- NVD_API_KEY: NVD API key, raises the NVD rate limit when present
- THREATSCOPE_API_DELAY: seconds between two NVD requests
"""

import os

CACHE_DIR = os.environ.get("THREATSCOPE_CACHE_DIR", "cache")
DEFAULT_INVENTORY = os.environ.get("THREATSCOPE_INVENTORY", "inventory.ini")
NVD_API_KEY = os.environ.get("NVD_API_KEY") or None

# NVD allows 50 requests / 30 seconds with a key, 5 / 30 seconds without one
API_REQUEST_DELAY = float(os.environ.get("THREATSCOPE_API_DELAY", "0.6" if NVD_API_KEY else "6"))

# Below this control-plane version dockershim is assumed and the engine
# version is checked; at or above it node kernels are checked directly.
DOCKERSHIM_REMOVAL_VERSION = "1.24"

# Kernel vulnerabilities with a known container escape, by CVE identifier.
KERNEL_ESCAPE_CVES = {
    "CVE-2016-5195": "Dirty Cow",
    "CVE-2020-14386": "CVE-2020-14386 with CAP_NET_RAW",
    "CVE-2021-22555": "CVE-2021-22555 kernel-netfilter",
    "CVE-2022-0847": "Dirty Pipe",
    "CVE-2022-0185": "CVE-2022-0185 with CAP_SYS_ADMIN",
    "CVE-2022-0492": "CVE-2022-0492 with CAP_SYS_ADMIN and v1 architecture of cgroups",
}

# Feed entries whose published range is known to be wrong.
KNOWN_RANGE_OVERRIDES = {
    "CVE-2016-5195": {"max_version": "4.8.3", "max_inclusive": False},
}

# Product name used to query engine vulnerabilities.
ENGINE_PRODUCT = "docker"

# Engines older than this still expose the containerd-shim abstract socket
# to host-network containers (CVE-2020-15257).
HOST_NETWORK_HARDENED_ENGINE = "19.03.14"

DEFAULT_EXCLUDED_NAMESPACES = frozenset({
    "kube-system",
    "kube-public",
    "kube-node-lease",
    "istio-system",
    "kubesphere-system",
    "kubesphere-controls-system",
    "kubesphere-monitoring-system",
    "kubesphere-router-gateway",
})

# Host paths and the severity of exposing them inside a container.
# Sub-paths inherit the severity of their closest listed parent.
SENSITIVE_MOUNTS = {
    "/var/run/docker.sock": "critical",
    "/run/docker.sock": "critical",
    "/var/run/containerd/containerd.sock": "critical",
    "/run/containerd/containerd.sock": "critical",
    "/var/run/crio/crio.sock": "critical",
    "/": "critical",
    "/etc": "high",
    "/proc": "high",
    "/sys": "high",
    "/root": "high",
    "/dev": "high",
    "/boot": "high",
    "/lib/modules": "high",
    "/var/lib/kubelet": "high",
    "/var/lib/docker": "high",
    "/etc/kubernetes": "critical",
    "/var/log": "medium",
    "/home": "medium",
}

DANGEROUS_CAPABILITIES = (
    "SYS_ADMIN",
    "SYS_MODULE",
    "SYS_PTRACE",
    "SYS_RAWIO",
    "DAC_READ_SEARCH",
    "DAC_OVERRIDE",
    "NET_ADMIN",
    "SYS_BOOT",
    "BPF",
)

# Environment / data keys that hold credentials.
CREDENTIAL_KEY_MARKERS = (
    "password",
    "passwd",
    "_pwd",
    "secret",
    "token",
    "api_key",
    "apikey",
    "access_key",
    "private_key",
)

# Dictionary-common and vendor default passwords.
WEAK_PASSWORDS = frozenset({
    "123456", "12345678", "123456789", "1234567890", "111111", "000000",
    "password", "password1", "password123", "passw0rd", "p@ssw0rd",
    "admin", "admin123", "administrator", "root", "toor", "test", "test123",
    "guest", "qwerty", "qwerty123", "abc123", "letmein", "welcome",
    "changeme", "default", "secret", "master", "postgres", "mysql",
    "redis", "mongo", "oracle", "elastic", "changeit", "rabbitmq",
    "minioadmin", "nacos", "grafana", "prom-operator",
})

MIN_PASSWORD_LENGTH = 8

CERT_EXPIRY_WARNING_DAYS = 30

# CNI plugins recognised from kube-system DaemonSet images.
KNOWN_CNI_PLUGINS = ("calico", "flannel", "cilium", "weave", "canal", "antrea", "kube-router")
