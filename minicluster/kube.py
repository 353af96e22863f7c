"""Thin client for the cluster API, driven through ``kubectl -o json``."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from minicluster.constants import KUBECTL_CONTEXT
from minicluster.exceptions import CommandError, ManagerError
from minicluster.utils import run_output


class KubeClient:
    """Reads and writes cluster objects with the local kubectl binary."""

    def __init__(self, context: str = KUBECTL_CONTEXT, kubectl: str = "kubectl") -> None:
        self.context = context
        self.kubectl = kubectl

    def _command(self, *args: str) -> List[str]:
        return [self.kubectl, "--context", self.context, *args]

    def _get_json(self, *args: str) -> Dict[str, Any]:
        output = run_output(self._command(*args, "-o", "json"))
        try:
            data = json.loads(output)
        except json.JSONDecodeError as exc:
            raise ManagerError(f"kubectl returned invalid JSON for {' '.join(args)}: {exc}") from exc
        if not isinstance(data, dict):
            raise ManagerError(f"kubectl returned unexpected output for {' '.join(args)}")
        return data

    def get_service(self, namespace: str, name: str) -> Dict[str, Any]:
        return self._get_json("get", "service", name, "--namespace", namespace)

    def list_services(self, namespace: str, label_selector: Optional[str] = None) -> List[Dict[str, Any]]:
        args = ["get", "services", "--namespace", namespace]
        if label_selector:
            args += ["--selector", label_selector]
        return list(self._get_json(*args).get("items") or [])

    def get_endpoints(self, namespace: str, name: str) -> Dict[str, Any]:
        return self._get_json("get", "endpoints", name, "--namespace", namespace)

    def get_secret(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        """The secret, or None when it does not exist."""
        try:
            return self._get_json("get", "secret", name, "--namespace", namespace)
        except CommandError as exc:
            if "NotFound" in exc.stderr or "not found" in exc.stderr:
                return None
            raise

    def create_secret(self, manifest: Dict[str, Any]) -> None:
        run_output(self._command("create", "-f", "-"), input_data=json.dumps(manifest))

    def delete_secret(self, namespace: str, name: str) -> None:
        run_output(self._command("delete", "secret", name, "--namespace", namespace, "--ignore-not-found"))
