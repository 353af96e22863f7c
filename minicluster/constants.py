"""Global constants and path configuration for minicluster."""

from __future__ import annotations

import os
import re
from pathlib import Path

MACHINE_NAME = "minicluster"

# MINICLUSTER_HOME provides a single directory for all local state.
_HOME_DIR = os.environ.get("MINICLUSTER_HOME")
if _HOME_DIR:
    MINI_PATH = Path(_HOME_DIR)
else:
    MINI_PATH = Path.home() / ".minicluster"

MACHINES_DIR = MINI_PATH / "machines"
CACHE_DIR = MINI_PATH / "cache"
ISO_CACHE_DIR = CACHE_DIR / "iso"
LOCALKUBE_CACHE_DIR = CACHE_DIR / "localkube"
CONFIG_FILE = MINI_PATH / "config" / "config.yaml"
USER_ADDONS_DIR = MINI_PATH / "addons"
DOCKER_CERTS_DIR = MINI_PATH / "certs"

LIBVIRT_URI = os.environ.get("LIBVIRT_URI", "qemu:///system")
TRUTHY = {"1", "true", "yes", "on"}

DEFAULT_VM_DRIVER = "virtualbox"
DEFAULT_MEMORY_MB = 2048
DEFAULT_CPUS = 2
DEFAULT_DISK_SIZE = "20G"
DEFAULT_HOST_ONLY_CIDR = "192.168.99.1/24"
DEFAULT_ISO_URL = "https://storage.googleapis.com/minikube/iso/minikube-v0.7.iso"
DEFAULT_SSH_USER = "docker"

DEFAULT_KUBERNETES_VERSION = "v1.5.1"
DEFAULT_CONTAINER_RUNTIME = "docker"
DEFAULT_DNS_DOMAIN = "cluster.local"
LOCALKUBE_RELEASE_URL = "https://storage.googleapis.com/minikube/k8sReleases/{version}/localkube-linux-amd64"
# Binary shipped alongside the installation, used when no version is requested.
LOCALKUBE_ASSET_PATH = Path(
    os.environ.get("MINICLUSTER_LOCALKUBE", str(Path(__file__).resolve().parent / "deploy" / "localkube"))
)
LOCALKUBE_REMOTE_DIR = "/usr/local/bin"
LOCALKUBE_REMOTE_NAME = "localkube"
LOCALKUBE_DATA_DIR = "/var/lib/localkube"

CERT_NAMES = ("ca.crt", "ca.key", "apiserver.crt", "apiserver.key")
DEFAULT_CERT_PATH = "/var/lib/localkube/certs/"
SERVICE_CLUSTER_IP = "10.0.0.1"
API_SERVER_NAMES = (
    "localhost",
    "kubernetes",
    "kubernetes.default",
    "kubernetes.default.svc",
    "kubernetes.default.svc.cluster.local",
)

ADDONS_MANIFEST_DIR = Path(__file__).resolve().parent / "deploy" / "addons"
ADDONS_REMOTE_DIR = "/etc/kubernetes/addons"

DOCKER_DAEMON_PORT = 2376
# TLS material and daemon options for the docker engine inside the VM.
DOCKER_REMOTE_DIR = "/var/lib/boot2docker"
DOCKER_PROFILE_NAME = "profile"
DOCKER_RESTART_COMMAND = "sudo /etc/init.d/docker restart"
DOCKER_CLIENT_CERT_NAMES = ("ca.pem", "cert.pem", "key.pem")
DOCKER_SERVER_CERT_NAMES = ("server.pem", "server-key.pem")
DEFAULT_SERVICE_FORMAT = "http://{{.IP}}:{{.Port}}"
DEFAULT_NAMESPACE = "default"
KUBECTL_CONTEXT = os.environ.get("MINICLUSTER_KUBE_CONTEXT", MACHINE_NAME)

DOES_NOT_EXIST = "Does Not Exist"

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in {"1", "true", "yes", "on"}

DISK_SIZE_RE = re.compile(r"^(\d+)([KMGTkmgt]?)$")
EXTRA_OPTION_RE = re.compile(r"^(?P<component>[a-z-]+)\.(?P<key>[A-Za-z0-9_.-]+)=(?P<value>.*)$")
EXTRA_OPTION_COMPONENTS = {"apiserver", "controller-manager", "scheduler", "kubelet", "proxy"}
