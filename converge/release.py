"""
Release collaborators: build, publish and readiness.

The orchestrator only talks to the three abstract roles:
- ArtifactBuilder.build(trigger)              -> local image reference
- ArtifactPublisher.publish(trigger)          -> confirmed digest
- ReadinessProbe.check(descriptor, spec)      -> True once the release serves

Concrete implementations wrap docker, ECR and kubectl.
"""

import base64
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Optional

from botocore.exceptions import ClientError

from converge.adapters.aws import AwsClientFactory, error_code, translate_errors
from converge.adapters.kube import CommandRunner
from converge.errors import PermanentProviderError
from converge.schemas import ReleaseDescriptor, ReleaseTrigger, ResourceSpec

logger = logging.getLogger(__name__)


# <account>.dkr.ecr.<region>.amazonaws.com/<repository>
ECR_IMAGE_PATTERN = re.compile(
    r"^(?P<registry>(?P<account>\d+)\.dkr\.ecr\.(?P<region>[a-z0-9-]+)\.amazonaws\.com(?:\.cn)?)"
    r"/(?P<repository>[a-z0-9._/-]+)$"
)

ROLLOUT_KINDS = ("deployment", "statefulset", "daemonset")


def parse_ecr_image(artifact_ref: str) -> dict[str, str]:
    """
    Split an ECR image reference into registry, account, region and repository.

    Raises:
        PermanentProviderError: If artifact_ref is not an ECR repository URI
    """
    match = ECR_IMAGE_PATTERN.match(artifact_ref)
    if not match:
        raise PermanentProviderError(f"Not an ECR image repository: {artifact_ref}")
    return match.groupdict()


class ArtifactBuilder(ABC):
    """Builds the container image for a trigger."""

    @abstractmethod
    def build(self, trigger: ReleaseTrigger) -> str:
        """
        Build the artifact.

        Returns:
            Local image reference (repository:tag)
        """
        pass


class ArtifactPublisher(ABC):
    """Pushes a built artifact and confirms the registry has it."""

    @abstractmethod
    def publish(self, trigger: ReleaseTrigger) -> str:
        """
        Publish the artifact and confirm availability.

        Returns:
            Digest reported by the registry (sha256:...)
        """
        pass


class ReadinessProbe(ABC):
    """Decides whether a deployed release is serving."""

    @abstractmethod
    def check(self, descriptor: ReleaseDescriptor, spec: ResourceSpec) -> bool:
        pass


class DockerBuilder(ArtifactBuilder):
    """
    Builds images with `docker build`.

    Args:
        runner: CommandRunner used to invoke docker
        docker_binary: docker executable
        build_args: --build-arg values passed to every build
    """

    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        docker_binary: str = "docker",
        build_args: Optional[dict[str, Any]] = None,
    ):
        self._runner = runner or CommandRunner(timeout=3600)
        self._docker = docker_binary
        self._build_args = dict(build_args or {})

    def build(self, trigger: ReleaseTrigger) -> str:
        if not trigger.context:
            raise PermanentProviderError("Building an artifact requires a build context")
        image = f"{trigger.artifact_ref}:{trigger.version}"
        args = ["build", "--tag", image]
        for key, value in sorted(self._build_args.items()):
            args += ["--build-arg", f"{key}={value}"]
        args.append(trigger.context)

        logger.info(f"Building {image} from {trigger.context}")
        result = self._runner.run(self._docker, args)
        self._runner.check(result, f"docker build {image}")
        return image


class EcrPublisher(ArtifactPublisher):
    """
    Pushes to ECR with docker and confirms the digest with DescribeImages.

    For a redeploy (trigger.rebuild False) nothing is pushed; the existing
    tag is confirmed and, when the trigger carries a digest, it must match.
    """

    def __init__(
        self,
        clients: AwsClientFactory,
        runner: Optional[CommandRunner] = None,
        docker_binary: str = "docker",
    ):
        self._clients = clients
        self._runner = runner or CommandRunner(timeout=3600)
        self._docker = docker_binary

    @property
    def ecr(self) -> Any:
        return self._clients.get_client("ecr")

    def publish(self, trigger: ReleaseTrigger) -> str:
        image = parse_ecr_image(trigger.artifact_ref)
        if trigger.rebuild:
            self._login(image["registry"], image["account"])
            tagged = f"{trigger.artifact_ref}:{trigger.version}"
            logger.info(f"Pushing {tagged}")
            result = self._runner.run(self._docker, ["push", tagged])
            self._runner.check(result, f"docker push {tagged}")

        digest = self.confirm(image["repository"], trigger.version)
        if trigger.digest and trigger.digest != digest:
            raise PermanentProviderError(
                f"{trigger.artifact_ref}:{trigger.version} now has digest {digest}, "
                f"expected {trigger.digest}"
            )
        logger.info(f"Confirmed {trigger.artifact_ref}:{trigger.version} at {digest}")
        return digest

    def confirm(self, repository: str, tag: str) -> str:
        """Return the digest ECR reports for repository:tag."""
        with translate_errors(f"describe image {repository}:{tag}"):
            try:
                response = self.ecr.describe_images(
                    repositoryName=repository,
                    imageIds=[{"imageTag": tag}],
                )
            except ClientError as e:
                if error_code(e) == "ImageNotFoundException":
                    raise PermanentProviderError(f"Image {repository}:{tag} not found in ECR") from e
                raise
        details = response.get("imageDetails", [])
        if not details or not details[0].get("imageDigest"):
            raise PermanentProviderError(f"ECR returned no digest for {repository}:{tag}")
        return details[0]["imageDigest"]

    def _login(self, registry: str, account: str) -> None:
        with translate_errors("get ECR authorization token"):
            response = self.ecr.get_authorization_token(registryIds=[account])
        token = response["authorizationData"][0]["authorizationToken"]
        username, _, password = base64.b64decode(token).decode().partition(":")
        result = self._runner.run(
            self._docker,
            ["login", "--username", username, "--password-stdin", registry],
            input_text=password,
        )
        self._runner.check(result, f"docker login {registry}")


class KubectlRolloutProbe(ReadinessProbe):
    """
    Passes once every workload in the descriptor has finished rolling out.

    Objects are "<kind>/<name>"; only deployments, statefulsets and
    daemonsets are checked. The namespace comes from the Release config.
    """

    def __init__(self, runner: CommandRunner):
        self._runner = runner

    def check(self, descriptor: ReleaseDescriptor, spec: ResourceSpec) -> bool:
        namespace = spec.config.get("namespace", "default")
        workloads = [o for o in descriptor.objects if o.split("/", 1)[0].lower() in ROLLOUT_KINDS]
        if not workloads:
            logger.warning(f"Release {descriptor.release} lists no workloads to probe")
            return True

        for workload in workloads:
            result = self._runner.run(
                "kubectl",
                ["rollout", "status", workload, "--namespace", namespace, "--watch=false"],
            )
            if result.returncode != 0 or "successfully rolled out" not in result.stdout:
                logger.debug(f"{workload} not rolled out yet: {result.stdout.strip() or result.stderr.strip()}")
                return False
        return True
