"""minicluster package."""

__all__ = [
    "assets",
    "bootstrap",
    "certs",
    "cli",
    "config",
    "constants",
    "drivers",
    "exceptions",
    "host",
    "images",
    "kube",
    "kvm",
    "models",
    "prompt",
    "provision",
    "retry",
    "service",
    "ssh",
    "store",
    "utils",
    "virtualbox",
]
