"""
Kubernetes adapters: Helm releases and Ingress routes.

Both adapters shell out to helm/kubectl through CommandRunner, which pins the
kube context and a per-command timeout and turns failures into provider
errors.
"""

import json
import logging
import subprocess
from typing import Any, Optional

import yaml

from converge.adapters.base import (
    ProviderResult,
    ResourceAdapter,
    ResourceState,
    ResourceStatus,
)
from converge.errors import PermanentProviderError, TransientProviderError
from converge.schemas import ResourceKind, ResourceSpec

logger = logging.getLogger(__name__)


# stderr fragments for failures that clear on retry
TRANSIENT_MARKERS = (
    "connection refused",
    "connection reset",
    "i/o timeout",
    "tls handshake timeout",
    "unable to connect to the server",
    "the server is currently unable to handle the request",
    "etcdserver: request timed out",
    "too many requests",
    "another operation (install/upgrade/rollback) is in progress",
    "context deadline exceeded",
)

NOT_FOUND_MARKERS = (
    "not found",
    "notfound",
)


class CommandRunner:
    """
    Runs helm and kubectl against one kube context.

    Args:
        kube_context: Context name passed to every command (None = current)
        timeout: Seconds before a command is killed
    """

    def __init__(self, kube_context: Optional[str] = None, timeout: float = 300):
        self.kube_context = kube_context
        self.timeout = timeout

    def build(self, tool: str, args: list[str]) -> list[str]:
        cmd = [tool, *args]
        if self.kube_context:
            flag = "--kube-context" if tool == "helm" else "--context"
            cmd += [flag, self.kube_context]
        return cmd

    def run(
        self,
        tool: str,
        args: list[str],
        input_text: Optional[str] = None,
    ) -> subprocess.CompletedProcess:
        """
        Run a command without raising on a non-zero exit.

        Raises:
            TransientProviderError: If the command timed out
            PermanentProviderError: If the tool is not installed
        """
        cmd = self.build(tool, args)
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            return subprocess.run(
                cmd,
                input=input_text,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise TransientProviderError(f"{tool} timed out after {self.timeout:g}s") from e
        except FileNotFoundError as e:
            raise PermanentProviderError(f"{tool} not found on PATH") from e

    def check(self, result: subprocess.CompletedProcess, action: str) -> str:
        """
        Return stdout of a finished command, or raise a classified error.
        """
        if result.returncode == 0:
            return result.stdout
        stderr = (result.stderr or "").strip()
        lowered = stderr.lower()
        if any(marker in lowered for marker in TRANSIENT_MARKERS):
            raise TransientProviderError(f"{action}: {stderr}")
        raise PermanentProviderError(f"{action} (exit {result.returncode}): {stderr}")


def is_not_found(result: subprocess.CompletedProcess) -> bool:
    lowered = (result.stderr or "").lower()
    return result.returncode != 0 and any(m in lowered for m in NOT_FOUND_MARKERS)


def _split_id(provider_id: str) -> tuple[str, str]:
    namespace, _, name = provider_id.partition("/")
    if not name:
        raise PermanentProviderError(f"Malformed provider id: {provider_id}")
    return namespace, name


_HELM_STATES = {
    "deployed": ResourceState.READY,
    "pending-install": ResourceState.PENDING,
    "pending-upgrade": ResourceState.PENDING,
    "pending-rollback": ResourceState.PENDING,
    "uninstalling": ResourceState.PENDING,
    "failed": ResourceState.FAILED,
    "superseded": ResourceState.FAILED,
    "uninstalled": ResourceState.ABSENT,
}


class ReleaseAdapter(ResourceAdapter):
    """
    Helm release. The provider id is "<namespace>/<release>".

    Config:
        chart: chart reference (required)
        chart_version: pinned chart version
        namespace: default "default"
        release_name: defaults to the resource name
        image: image repository, usually "@ref.<registry>.repository_uri"
        tag: image tag
        digest: image digest; pins the image when set
        image_values_key: values key receiving {repository, tag, digest} (default "image")
        values: extra chart values
        objects: Kubernetes objects the release owns, e.g. ["deployment/web"]

    Outputs: release, namespace, revision, status, chart
    """

    kind = ResourceKind.RELEASE

    def __init__(self, runner: CommandRunner):
        self._runner = runner

    @staticmethod
    def values_for(spec: ResourceSpec) -> dict[str, Any]:
        """Chart values with the image fields merged in."""
        values = dict(spec.config.get("values") or {})
        image: dict[str, Any] = {}
        if spec.config.get("image"):
            image["repository"] = spec.config["image"]
        if spec.config.get("tag"):
            image["tag"] = str(spec.config["tag"])
        if spec.config.get("digest"):
            image["digest"] = spec.config["digest"]
        if image:
            key = spec.config.get("image_values_key", "image")
            merged = dict(values.get(key) or {})
            merged.update(image)
            values[key] = merged
        return values

    def _upgrade(self, spec: ResourceSpec) -> ProviderResult:
        chart = spec.config.get("chart")
        if not chart:
            raise PermanentProviderError(f"Release '{spec.name}' requires config 'chart'")
        namespace = spec.config.get("namespace", "default")
        release = spec.config.get("release_name", spec.name)

        args = [
            "upgrade", "--install", release, chart,
            "--namespace", namespace,
            "--create-namespace",
            "--values", "-",
        ]
        if spec.config.get("chart_version"):
            args += ["--version", str(spec.config["chart_version"])]

        result = self._runner.run("helm", args, input_text=yaml.safe_dump(self.values_for(spec)))
        self._runner.check(result, f"helm upgrade {namespace}/{release}")
        logger.info(f"Upgraded helm release {namespace}/{release}")
        return ProviderResult(
            provider_id=f"{namespace}/{release}",
            outputs={"release": release, "namespace": namespace},
        )

    def create(self, spec: ResourceSpec) -> ProviderResult:
        return self._upgrade(spec)

    def update(self, provider_id: str, spec: ResourceSpec) -> ProviderResult:
        return self._upgrade(spec)

    def delete(self, provider_id: str) -> None:
        namespace, release = _split_id(provider_id)
        result = self._runner.run("helm", ["uninstall", release, "--namespace", namespace])
        if is_not_found(result):
            return
        self._runner.check(result, f"helm uninstall {provider_id}")
        logger.info(f"Uninstalled helm release {provider_id}")

    def describe(self, provider_id: str) -> ResourceStatus:
        namespace, release = _split_id(provider_id)
        result = self._runner.run(
            "helm", ["status", release, "--namespace", namespace, "--output", "json"]
        )
        if is_not_found(result):
            return ResourceStatus(state=ResourceState.ABSENT)
        data = json.loads(self._runner.check(result, f"helm status {provider_id}"))

        status = data.get("info", {}).get("status", "")
        chart = data.get("chart", {}).get("metadata", {})
        return ResourceStatus(
            state=_HELM_STATES.get(status, ResourceState.PENDING),
            outputs={
                "release": release,
                "namespace": namespace,
                "revision": data.get("version"),
                "status": status,
                "chart": f"{chart.get('name')}-{chart.get('version')}" if chart else None,
            },
            message=status,
        )


class RouteAdapter(ResourceAdapter):
    """
    Ingress routing external traffic to a service. The provider id is
    "<namespace>/<name>".

    Config:
        host: external hostname (required)
        service: backend service name (required)
        port: backend service port (default 80)
        path: path prefix (default "/")
        namespace: default "default"
        ingress_class: ingressClassName
        tls_secret: secret holding the TLS certificate for host
        annotations: extra metadata annotations

    Outputs: host, address, url
    """

    kind = ResourceKind.ROUTE

    def __init__(self, runner: CommandRunner):
        self._runner = runner

    @staticmethod
    def manifest(spec: ResourceSpec) -> dict[str, Any]:
        """Build the Ingress object for spec."""
        for key in ("host", "service"):
            if not spec.config.get(key):
                raise PermanentProviderError(f"Route '{spec.name}' requires config '{key}'")

        host = spec.config["host"]
        ingress_spec: dict[str, Any] = {
            "rules": [{
                "host": host,
                "http": {
                    "paths": [{
                        "path": spec.config.get("path", "/"),
                        "pathType": "Prefix",
                        "backend": {
                            "service": {
                                "name": spec.config["service"],
                                "port": {"number": int(spec.config.get("port", 80))},
                            },
                        },
                    }],
                },
            }],
        }
        if spec.config.get("ingress_class"):
            ingress_spec["ingressClassName"] = spec.config["ingress_class"]
        if spec.config.get("tls_secret"):
            ingress_spec["tls"] = [{"hosts": [host], "secretName": spec.config["tls_secret"]}]

        metadata: dict[str, Any] = {
            "name": spec.name,
            "namespace": spec.config.get("namespace", "default"),
            "labels": {"app.kubernetes.io/managed-by": "converge"},
        }
        if spec.config.get("annotations"):
            metadata["annotations"] = {str(k): str(v) for k, v in spec.config["annotations"].items()}

        return {
            "apiVersion": "networking.k8s.io/v1",
            "kind": "Ingress",
            "metadata": metadata,
            "spec": ingress_spec,
        }

    def _apply(self, spec: ResourceSpec) -> ProviderResult:
        manifest = self.manifest(spec)
        namespace = manifest["metadata"]["namespace"]
        result = self._runner.run("kubectl", ["apply", "-f", "-"], input_text=yaml.safe_dump(manifest))
        self._runner.check(result, f"kubectl apply ingress {namespace}/{spec.name}")
        logger.info(f"Applied ingress {namespace}/{spec.name}")
        return ProviderResult(
            provider_id=f"{namespace}/{spec.name}",
            outputs={"host": spec.config["host"]},
        )

    def create(self, spec: ResourceSpec) -> ProviderResult:
        return self._apply(spec)

    def update(self, provider_id: str, spec: ResourceSpec) -> ProviderResult:
        return self._apply(spec)

    def delete(self, provider_id: str) -> None:
        namespace, name = _split_id(provider_id)
        result = self._runner.run(
            "kubectl", ["delete", "ingress", name, "--namespace", namespace, "--ignore-not-found"]
        )
        self._runner.check(result, f"kubectl delete ingress {provider_id}")
        logger.info(f"Deleted ingress {provider_id}")

    def describe(self, provider_id: str) -> ResourceStatus:
        namespace, name = _split_id(provider_id)
        result = self._runner.run(
            "kubectl", ["get", "ingress", name, "--namespace", namespace, "--output", "json"]
        )
        if is_not_found(result):
            return ResourceStatus(state=ResourceState.ABSENT)
        data = json.loads(self._runner.check(result, f"kubectl get ingress {provider_id}"))

        rules = data.get("spec", {}).get("rules") or [{}]
        host = rules[0].get("host")
        ingress = data.get("status", {}).get("loadBalancer", {}).get("ingress") or []
        if not ingress:
            return ResourceStatus(
                state=ResourceState.PENDING,
                outputs={"host": host},
                message="waiting for load balancer address",
            )

        address = ingress[0].get("hostname") or ingress[0].get("ip")
        scheme = "https" if data.get("spec", {}).get("tls") else "http"
        return ResourceStatus(
            state=ResourceState.READY,
            outputs={"host": host, "address": address, "url": f"{scheme}://{host}"},
        )
