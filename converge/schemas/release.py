"""
Release schemas - deployable artifact versions and the triggers that start them.

ReleaseDescriptor identifies one deployable artifact version and the
Kubernetes objects it maps to. It is only written into ObservedState by the
Release Orchestrator, after the release has passed its readiness probe.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional


@dataclass(frozen=True)
class ReleaseDescriptor:
    """
    One deployable artifact version.

    Attributes:
        release: Name of the Release ResourceSpec this version deploys through
        image: Image repository (e.g. 123.dkr.ecr.us-east-1.amazonaws.com/webapp)
        tag: Image tag
        digest: Content digest confirmed by the registry (sha256:...)
        version_label: Human version label carried from the trigger
        objects: Kubernetes objects the release maps to
                 (deployment, service, ingress, init dependencies)
        deployed_at: When the release passed readiness
    """
    release: str
    image: str
    tag: str
    digest: Optional[str] = None
    version_label: Optional[str] = None
    objects: tuple[str, ...] = field(default_factory=tuple)
    deployed_at: Optional[datetime] = None

    @property
    def image_ref(self) -> str:
        """Pullable image reference, pinned by digest when one is known."""
        if self.digest:
            return f"{self.image}@{self.digest}"
        return f"{self.image}:{self.tag}"

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "release": self.release,
            "image": self.image,
            "tag": self.tag,
            "objects": list(self.objects),
        }
        if self.digest is not None:
            result["digest"] = self.digest
        if self.version_label is not None:
            result["version_label"] = self.version_label
        if self.deployed_at is not None:
            result["deployed_at"] = self.deployed_at.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReleaseDescriptor":
        return cls(
            release=data["release"],
            image=data["image"],
            tag=data["tag"],
            digest=data.get("digest"),
            version_label=data.get("version_label"),
            objects=tuple(data.get("objects", ())),
            deployed_at=datetime.fromisoformat(data["deployed_at"]) if data.get("deployed_at") else None,
        )


@dataclass(frozen=True)
class ReleaseTrigger:
    """
    Inbound event that starts a release run.

    Attributes:
        artifact_ref: Image repository to build and publish (without tag)
        version: Version label, also used as the image tag
        context: Build context directory for the artifact builder
        rebuild: False when redeploying an artifact that already exists
        digest: Known digest when redeploying a prior descriptor
    """
    artifact_ref: str
    version: str
    context: Optional[str] = None
    rebuild: bool = True
    digest: Optional[str] = None

    def __post_init__(self):
        if not self.artifact_ref:
            raise ValueError("ReleaseTrigger requires an artifact_ref")
        if not self.version:
            raise ValueError("ReleaseTrigger requires a version")

    @classmethod
    def from_descriptor(cls, descriptor: ReleaseDescriptor) -> "ReleaseTrigger":
        """Trigger an explicit redeploy of a previously deployed descriptor."""
        return cls(
            artifact_ref=descriptor.image,
            version=descriptor.tag,
            rebuild=False,
            digest=descriptor.digest,
        )
