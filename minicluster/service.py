"""Resolve Kubernetes services to reachable URLs and poll them for readiness."""

from __future__ import annotations

import base64
import re
import sys
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

from minicluster.drivers import Driver
from minicluster.exceptions import ManagerError, MissingNodePortError, RetriableError
from minicluster.kube import KubeClient
from minicluster.models import ServiceURL, ServiceURLs
from minicluster.retry import retry_after

NOT_READY_MESSAGE = "Waiting, endpoint for service is not ready yet..."

_PLACEHOLDER_RE = re.compile(r"{{\s*(.*?)\s*}}")
_FIELDS = {".IP": "ip", ".Port": "port"}


class UrlTemplate:
    """A ``--format`` string with ``{{.IP}}`` and ``{{.Port}}`` placeholders.

    The template is checked when it is built, so a typo in a field name is
    reported before any cluster call is made.
    """

    def __init__(self, text: str) -> None:
        for match in _PLACEHOLDER_RE.finditer(text):
            if match.group(1) not in _FIELDS:
                raise ManagerError(
                    f"Invalid --format template {text!r}: unknown field {match.group(0)!r} "
                    "(available: {{.IP}}, {{.Port}})"
                )
        self.text = text

    def render(self, ip: str, port: int) -> str:
        values = {"ip": ip, "port": str(port)}
        return _PLACEHOLDER_RE.sub(lambda m: values[_FIELDS[m.group(1)]], self.text)

    def __repr__(self) -> str:
        return f"UrlTemplate({self.text!r})"


def _client(client: Optional[KubeClient]) -> KubeClient:
    return client if client is not None else KubeClient()


def get_service_ports(client: KubeClient, namespace: str, service: str) -> List[int]:
    try:
        svc = client.get_service(namespace, service)
    except ManagerError as exc:
        raise ManagerError(f"Error getting {service} service: {exc}") from exc
    ports = [
        int(port.get("nodePort") or 0)
        for port in (svc.get("spec") or {}).get("ports") or []
    ]
    node_ports = [port for port in ports if port > 0]
    if not node_ports:
        raise MissingNodePortError(svc)
    return node_ports


def get_service_urls(
    client: KubeClient,
    ip: str,
    namespace: str,
    service: str,
    template: Optional[UrlTemplate],
) -> List[str]:
    if template is None:
        raise ManagerError("Error, attempted to generate service url with no --format template")
    urls = []
    for port in get_service_ports(client, namespace, service):
        rendered = template.render(ip, port)
        try:
            urls.append(urlsplit(rendered).geturl())
        except ValueError as exc:
            raise ManagerError(f"Rendered service url {rendered!r} is not a valid URL: {exc}") from exc
    return urls


def get_service_urls_for_service(
    driver: Driver,
    namespace: str,
    service: str,
    template: Optional[UrlTemplate],
    client: Optional[KubeClient] = None,
) -> List[str]:
    """URLs for each node port of one service, built from the VM's IP."""
    try:
        ip = driver.get_ip()
    except ManagerError as exc:
        raise ManagerError(f"Error getting ip from host: {exc}") from exc
    return get_service_urls(_client(client), ip, namespace, service, template)


def get_all_service_urls(
    driver: Driver,
    namespace: str,
    template: Optional[UrlTemplate],
    client: Optional[KubeClient] = None,
) -> ServiceURLs:
    """One entry per service in ``namespace``; services without node ports get no URLs."""
    client = _client(client)
    try:
        ip = driver.get_ip()
    except ManagerError as exc:
        raise ManagerError(f"Error getting ip from host: {exc}") from exc
    try:
        services = client.list_services(namespace)
    except ManagerError as exc:
        raise ManagerError(f"Error listing services in namespace {namespace}: {exc}") from exc
    entries: ServiceURLs = []
    for svc in services:
        meta = svc.get("metadata") or {}
        svc_namespace = meta.get("namespace", namespace)
        name = meta.get("name", "")
        try:
            urls = get_service_urls(client, ip, svc_namespace, name, template)
        except MissingNodePortError:
            entries.append(ServiceURL(namespace=svc_namespace, name=name))
            continue
        entries.append(ServiceURL(namespace=svc_namespace, name=name, urls=urls))
    return entries


def check_endpoint_ready(endpoints: Dict[str, Any]) -> None:
    subsets = endpoints.get("subsets") or []
    if not subsets:
        print(NOT_READY_MESSAGE, file=sys.stderr, flush=True)
        raise RetriableError(ManagerError("Endpoint for service is not ready yet"))
    for subset in subsets:
        if not subset.get("addresses"):
            print(NOT_READY_MESSAGE, file=sys.stderr, flush=True)
            raise RetriableError(ManagerError("No endpoints for service are ready yet"))


def check_service(namespace: str, service: str, client: Optional[KubeClient] = None) -> None:
    """Raise RetriableError until the service's endpoints have live addresses."""
    try:
        endpoints = _client(client).get_endpoints(namespace, service)
    except ManagerError as exc:
        raise RetriableError(exc) from exc
    check_endpoint_ready(endpoints)


def wait_for_ready(
    namespace: str,
    service: str,
    attempts: int = 20,
    interval: float = 6,
    client: Optional[KubeClient] = None,
) -> None:
    retry_after(attempts, lambda: check_service(namespace, service, client), interval)


def get_service_list_by_label(
    namespace: str, key: str, value: str, client: Optional[KubeClient] = None
) -> List[Dict[str, Any]]:
    try:
        return _client(client).list_services(namespace, label_selector=f"{key}={value}")
    except ManagerError as exc:
        raise RetriableError(exc) from exc


def create_secret(
    namespace: str,
    name: str,
    data: Dict[str, str],
    labels: Optional[Dict[str, str]] = None,
    client: Optional[KubeClient] = None,
) -> None:
    """Create (or replace) an Opaque secret holding ``data``."""
    client = _client(client)
    try:
        if client.get_secret(namespace, name) is not None:
            client.delete_secret(namespace, name)
        client.create_secret(
            {
                "apiVersion": "v1",
                "kind": "Secret",
                "type": "Opaque",
                "metadata": {"name": name, "namespace": namespace, "labels": dict(labels or {})},
                "data": {
                    key: base64.b64encode(value.encode("utf-8")).decode("ascii")
                    for key, value in data.items()
                },
            }
        )
    except ManagerError as exc:
        raise RetriableError(exc) from exc


def delete_secret(namespace: str, name: str, client: Optional[KubeClient] = None) -> None:
    try:
        _client(client).delete_secret(namespace, name)
    except ManagerError as exc:
        raise RetriableError(exc) from exc
