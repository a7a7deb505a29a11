"""
AWS adapters: VPC networks, EKS clusters and node groups, ECR repositories.

Each adapter talks to AWS through a boto3 client obtained from
AwsClientFactory, and translates botocore errors into
TransientProviderError / PermanentProviderError.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from converge.adapters.base import (
    ProviderResult,
    ResourceAdapter,
    ResourceState,
    ResourceStatus,
)
from converge.errors import (
    PermanentProviderError,
    TransientProviderError,
    classify_error,
    ErrorKind,
)
from converge.schemas import ResourceKind, ResourceSpec

logger = logging.getLogger(__name__)


# Error codes that clear on retry
TRANSIENT_ERROR_CODES = frozenset({
    "Throttling",
    "ThrottlingException",
    "ThrottledException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
    "RequestThrottled",
    "ServiceUnavailable",
    "ServiceUnavailableException",
    "InternalError",
    "InternalFailure",
    "InternalServerError",
    "ServerException",
    "RequestTimeout",
    "RequestTimeoutException",
    "DependencyViolation",
})


class AwsClientFactory:
    """Creates and caches boto3 clients for one region/profile."""

    def __init__(
        self,
        region: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        profile: Optional[str] = None,
    ):
        self.region = region
        self.endpoint_url = endpoint_url
        self.profile = profile
        self._session: Optional[boto3.session.Session] = None
        self._clients: dict[str, Any] = {}
        self._mutex = threading.Lock()

    def get_client(self, service_name: str) -> Any:
        """Get or create an AWS service client."""
        with self._mutex:
            if service_name in self._clients:
                return self._clients[service_name]

            if self._session is None:
                self._session = boto3.session.Session(
                    profile_name=self.profile,
                    region_name=self.region,
                )

            client_kwargs: dict[str, Any] = {}
            if self.endpoint_url:
                client_kwargs["endpoint_url"] = self.endpoint_url

            client = self._session.client(service_name, **client_kwargs)
            self._clients[service_name] = client
            logger.debug(f"Created {service_name} client (region={self._session.region_name})")
            return client


def error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


@contextmanager
def translate_errors(action: str) -> Iterator[None]:
    """
    Translate botocore errors raised inside the block.

    ClientErrors with throttling/availability codes and botocore connection
    errors become TransientProviderError; other ClientErrors become
    PermanentProviderError.
    """
    try:
        yield
    except ClientError as e:
        code = error_code(e)
        message = e.response.get("Error", {}).get("Message", str(e))
        if code in TRANSIENT_ERROR_CODES:
            raise TransientProviderError(f"{action}: {code}: {message}") from e
        raise PermanentProviderError(f"{action}: {code}: {message}") from e
    except BotoCoreError as e:
        if classify_error(e) == ErrorKind.TRANSIENT:
            raise TransientProviderError(f"{action}: {e}") from e
        raise PermanentProviderError(f"{action}: {e}") from e


def _tags(spec: ResourceSpec) -> dict[str, str]:
    tags = {"Name": spec.name, "ManagedBy": "converge"}
    tags.update({str(k): str(v) for k, v in (spec.config.get("tags") or {}).items()})
    return tags


def _tag_list(tags: dict[str, str]) -> list[dict[str, str]]:
    return [{"Key": k, "Value": v} for k, v in sorted(tags.items())]


def _require(spec: ResourceSpec, key: str) -> Any:
    if key not in spec.config or spec.config[key] in (None, ""):
        raise PermanentProviderError(f"{spec.kind.value} '{spec.name}' requires config '{key}'")
    return spec.config[key]


class NetworkAdapter(ResourceAdapter):
    """
    VPC with subnets and, when any subnet is public, an internet gateway and
    a public route table sending 0.0.0.0/0 through it.

    create() adopts a VPC an earlier attempt tagged for the same resource.

    Config:
        cidr: VPC CIDR block (required, cannot change in place)
        subnets: list of {cidr, availability_zone, public}
        enable_dns: enable DNS support and hostnames (default true)
        tags: extra tags

    Outputs: vpc_id, subnet_ids, public_subnet_ids, private_subnet_ids
    """

    kind = ResourceKind.NETWORK

    def __init__(self, clients: AwsClientFactory):
        self._clients = clients

    @property
    def ec2(self) -> Any:
        return self._clients.get_client("ec2")

    def create(self, spec: ResourceSpec) -> ProviderResult:
        cidr = _require(spec, "cidr")
        with translate_errors(f"create VPC {spec.name}"):
            vpc = self._find_vpc(spec)
            if vpc is not None:
                vpc_id = vpc["VpcId"]
                if vpc["CidrBlock"] != cidr:
                    raise PermanentProviderError(
                        f"VPC {vpc_id} tagged for {spec.name} has CIDR {vpc['CidrBlock']}, not {cidr}"
                    )
                logger.info(f"VPC {vpc_id} for {spec.name} already exists, adopting")
            else:
                response = self.ec2.create_vpc(
                    CidrBlock=cidr,
                    TagSpecifications=[{"ResourceType": "vpc", "Tags": _tag_list(_tags(spec))}],
                )
                vpc_id = response["Vpc"]["VpcId"]
                logger.info(f"Created VPC {vpc_id} for {spec.name}")

            if spec.config.get("enable_dns", True):
                self.ec2.modify_vpc_attribute(VpcId=vpc_id, EnableDnsSupport={"Value": True})
                self.ec2.modify_vpc_attribute(VpcId=vpc_id, EnableDnsHostnames={"Value": True})

            self._sync_subnets(vpc_id, spec)
        return ProviderResult(provider_id=vpc_id, outputs={"vpc_id": vpc_id})

    def update(self, provider_id: str, spec: ResourceSpec) -> ProviderResult:
        cidr = _require(spec, "cidr")
        with translate_errors(f"update VPC {spec.name}"):
            vpc = self._describe_vpc(provider_id)
            if vpc is None:
                raise PermanentProviderError(f"VPC {provider_id} for {spec.name} no longer exists")
            if vpc["CidrBlock"] != cidr:
                raise PermanentProviderError(
                    f"VPC {provider_id} CIDR {vpc['CidrBlock']} cannot change to {cidr} in place; "
                    f"rename the resource to replace it"
                )
            self.ec2.create_tags(Resources=[provider_id], Tags=_tag_list(_tags(spec)))
            self._sync_subnets(provider_id, spec)
        return ProviderResult(provider_id=provider_id, outputs={"vpc_id": provider_id})

    def delete(self, provider_id: str) -> None:
        with translate_errors(f"delete VPC {provider_id}"):
            if self._describe_vpc(provider_id) is None:
                return
            for subnet in self._subnets(provider_id):
                self.ec2.delete_subnet(SubnetId=subnet["SubnetId"])
            for igw in self._gateways(provider_id):
                igw_id = igw["InternetGatewayId"]
                self.ec2.detach_internet_gateway(InternetGatewayId=igw_id, VpcId=provider_id)
                self.ec2.delete_internet_gateway(InternetGatewayId=igw_id)
            for table in self._public_route_tables(provider_id):
                self.ec2.delete_route_table(RouteTableId=table["RouteTableId"])
            self.ec2.delete_vpc(VpcId=provider_id)
            logger.info(f"Deleted VPC {provider_id}")

    def describe(self, provider_id: str) -> ResourceStatus:
        with translate_errors(f"describe VPC {provider_id}"):
            vpc = self._describe_vpc(provider_id)
            if vpc is None:
                return ResourceStatus(state=ResourceState.ABSENT)
            if vpc.get("State") != "available":
                return ResourceStatus(state=ResourceState.PENDING, message=vpc.get("State"))

            subnets = self._subnets(provider_id)
            public = sorted(s["SubnetId"] for s in subnets if s.get("MapPublicIpOnLaunch"))
            private = sorted(s["SubnetId"] for s in subnets if not s.get("MapPublicIpOnLaunch"))
            return ResourceStatus(
                state=ResourceState.READY,
                outputs={
                    "vpc_id": provider_id,
                    "cidr": vpc["CidrBlock"],
                    "subnet_ids": sorted(public + private),
                    "public_subnet_ids": public,
                    "private_subnet_ids": private,
                },
            )

    def _describe_vpc(self, vpc_id: str) -> Optional[dict[str, Any]]:
        try:
            response = self.ec2.describe_vpcs(VpcIds=[vpc_id])
        except ClientError as e:
            if error_code(e) == "InvalidVpcID.NotFound":
                return None
            raise
        vpcs = response.get("Vpcs", [])
        return vpcs[0] if vpcs else None

    def _find_vpc(self, spec: ResourceSpec) -> Optional[dict[str, Any]]:
        """A VPC left by an earlier create attempt for this resource, if any."""
        response = self.ec2.describe_vpcs(Filters=[
            {"Name": "tag:Name", "Values": [spec.name]},
            {"Name": "tag:ManagedBy", "Values": ["converge"]},
        ])
        vpcs = [v for v in response.get("Vpcs", []) if v.get("State") != "deleting"]
        if len(vpcs) > 1:
            raise PermanentProviderError(
                f"{len(vpcs)} VPCs are tagged for {spec.name}: "
                f"{', '.join(sorted(v['VpcId'] for v in vpcs))}"
            )
        return vpcs[0] if vpcs else None

    def _subnets(self, vpc_id: str) -> list[dict[str, Any]]:
        response = self.ec2.describe_subnets(Filters=[{"Name": "vpc-id", "Values": [vpc_id]}])
        return response.get("Subnets", [])

    def _gateways(self, vpc_id: str) -> list[dict[str, Any]]:
        response = self.ec2.describe_internet_gateways(
            Filters=[{"Name": "attachment.vpc-id", "Values": [vpc_id]}]
        )
        return response.get("InternetGateways", [])

    def _public_route_tables(self, vpc_id: str) -> list[dict[str, Any]]:
        response = self.ec2.describe_route_tables(Filters=[
            {"Name": "vpc-id", "Values": [vpc_id]},
            {"Name": "tag:Type", "Values": ["public"]},
        ])
        return response.get("RouteTables", [])

    def _sync_subnets(self, vpc_id: str, spec: ResourceSpec) -> None:
        desired = {s["cidr"]: s for s in spec.config.get("subnets") or []}
        existing = {s["CidrBlock"]: s for s in self._subnets(vpc_id)}

        for cidr, subnet in sorted(existing.items()):
            if cidr not in desired:
                self.ec2.delete_subnet(SubnetId=subnet["SubnetId"])
                logger.info(f"Deleted subnet {subnet['SubnetId']} ({cidr}) from {spec.name}")

        public_ids = []
        for cidr, subnet in sorted(desired.items()):
            if cidr in existing:
                if subnet.get("public"):
                    public_ids.append(existing[cidr]["SubnetId"])
                continue
            kwargs: dict[str, Any] = {
                "VpcId": vpc_id,
                "CidrBlock": cidr,
                "TagSpecifications": [{
                    "ResourceType": "subnet",
                    "Tags": _tag_list({
                        **_tags(spec),
                        "Type": "public" if subnet.get("public") else "private",
                    }),
                }],
            }
            if subnet.get("availability_zone"):
                kwargs["AvailabilityZone"] = subnet["availability_zone"]
            subnet_id = self.ec2.create_subnet(**kwargs)["Subnet"]["SubnetId"]
            if subnet.get("public"):
                self.ec2.modify_subnet_attribute(
                    SubnetId=subnet_id, MapPublicIpOnLaunch={"Value": True}
                )
                public_ids.append(subnet_id)
            logger.info(f"Created subnet {subnet_id} ({cidr}) for {spec.name}")

        if public_ids:
            self._sync_public_routes(vpc_id, spec, public_ids)

    def _sync_public_routes(self, vpc_id: str, spec: ResourceSpec, subnet_ids: list[str]) -> None:
        """Route 0.0.0.0/0 from the public subnets through the VPC's internet gateway."""
        gateways = self._gateways(vpc_id)
        if gateways:
            igw_id = gateways[0]["InternetGatewayId"]
        else:
            igw_id = self.ec2.create_internet_gateway(
                TagSpecifications=[{"ResourceType": "internet-gateway", "Tags": _tag_list(_tags(spec))}]
            )["InternetGateway"]["InternetGatewayId"]
            self.ec2.attach_internet_gateway(InternetGatewayId=igw_id, VpcId=vpc_id)
            logger.info(f"Attached internet gateway {igw_id} to {vpc_id}")

        tables = self._public_route_tables(vpc_id)
        if tables:
            table = tables[0]
        else:
            table = self.ec2.create_route_table(
                VpcId=vpc_id,
                TagSpecifications=[{
                    "ResourceType": "route-table",
                    "Tags": _tag_list({**_tags(spec), "Type": "public"}),
                }],
            )["RouteTable"]
            logger.info(f"Created public route table {table['RouteTableId']} for {spec.name}")
        table_id = table["RouteTableId"]

        default = [r for r in table.get("Routes", []) if r.get("DestinationCidrBlock") == "0.0.0.0/0"]
        if not default:
            self.ec2.create_route(RouteTableId=table_id, DestinationCidrBlock="0.0.0.0/0", GatewayId=igw_id)
        elif default[0].get("GatewayId") != igw_id:
            self.ec2.replace_route(RouteTableId=table_id, DestinationCidrBlock="0.0.0.0/0", GatewayId=igw_id)

        associated = {a.get("SubnetId") for a in table.get("Associations", [])}
        for subnet_id in subnet_ids:
            if subnet_id not in associated:
                self.ec2.associate_route_table(RouteTableId=table_id, SubnetId=subnet_id)


_EKS_STATES = {
    "ACTIVE": ResourceState.READY,
    "CREATING": ResourceState.PENDING,
    "UPDATING": ResourceState.PENDING,
    "DELETING": ResourceState.PENDING,
    "PENDING": ResourceState.PENDING,
    "FAILED": ResourceState.FAILED,
    "CREATE_FAILED": ResourceState.FAILED,
    "DELETE_FAILED": ResourceState.FAILED,
    "DEGRADED": ResourceState.FAILED,
}


class ComputeClusterAdapter(ResourceAdapter):
    """
    EKS control plane.

    Config:
        cluster_name: defaults to the resource name
        version: Kubernetes version
        role_arn: cluster IAM role (required)
        subnet_ids: subnets for the control plane ENIs (required)
        security_group_ids: extra security groups
        endpoint_public_access: default true
        tags: extra tags

    Outputs: name, arn, endpoint, version, certificate_authority, oidc_issuer
    """

    kind = ResourceKind.COMPUTE_CLUSTER
    ready_timeout = 1800.0

    def __init__(self, clients: AwsClientFactory):
        self._clients = clients

    @property
    def eks(self) -> Any:
        return self._clients.get_client("eks")

    def create(self, spec: ResourceSpec) -> ProviderResult:
        name = spec.config.get("cluster_name", spec.name)
        vpc_config: dict[str, Any] = {
            "subnetIds": list(_require(spec, "subnet_ids")),
            "endpointPublicAccess": bool(spec.config.get("endpoint_public_access", True)),
        }
        if spec.config.get("security_group_ids"):
            vpc_config["securityGroupIds"] = list(spec.config["security_group_ids"])

        kwargs: dict[str, Any] = {
            "name": name,
            "roleArn": _require(spec, "role_arn"),
            "resourcesVpcConfig": vpc_config,
            "tags": _tags(spec),
        }
        if spec.config.get("version"):
            kwargs["version"] = str(spec.config["version"])

        with translate_errors(f"create EKS cluster {name}"):
            try:
                self.eks.create_cluster(**kwargs)
                logger.info(f"Creating EKS cluster {name}")
            except ClientError as e:
                if error_code(e) != "ResourceInUseException":
                    raise
                logger.info(f"EKS cluster {name} already exists, adopting")
        return ProviderResult(provider_id=name, outputs={"name": name})

    def update(self, provider_id: str, spec: ResourceSpec) -> ProviderResult:
        with translate_errors(f"update EKS cluster {provider_id}"):
            try:
                cluster = self.eks.describe_cluster(name=provider_id)["cluster"]
                desired_version = spec.config.get("version")
                if desired_version and str(desired_version) != cluster.get("version"):
                    self.eks.update_cluster_version(name=provider_id, version=str(desired_version))
                    logger.info(f"Upgrading EKS cluster {provider_id} to {desired_version}")
                    return ProviderResult(provider_id=provider_id, outputs={"name": provider_id})

                public = bool(spec.config.get("endpoint_public_access", True))
                current_public = cluster.get("resourcesVpcConfig", {}).get("endpointPublicAccess")
                if current_public is not None and public != current_public:
                    self.eks.update_cluster_config(
                        name=provider_id,
                        resourcesVpcConfig={"endpointPublicAccess": public},
                    )
                    logger.info(f"Updating endpoint access on EKS cluster {provider_id}")

                tags = _tags(spec)
                if cluster.get("arn") and tags != cluster.get("tags"):
                    self.eks.tag_resource(resourceArn=cluster["arn"], tags=tags)
            except ClientError as e:
                # One update at a time per cluster; another is still running.
                if error_code(e) == "ResourceInUseException":
                    raise TransientProviderError(f"EKS cluster {provider_id} is busy: {e}") from e
                raise
        return ProviderResult(provider_id=provider_id, outputs={"name": provider_id})

    def delete(self, provider_id: str) -> None:
        with translate_errors(f"delete EKS cluster {provider_id}"):
            try:
                self.eks.delete_cluster(name=provider_id)
                logger.info(f"Deleting EKS cluster {provider_id}")
            except ClientError as e:
                if error_code(e) != "ResourceNotFoundException":
                    raise

    def describe(self, provider_id: str) -> ResourceStatus:
        with translate_errors(f"describe EKS cluster {provider_id}"):
            try:
                cluster = self.eks.describe_cluster(name=provider_id)["cluster"]
            except ClientError as e:
                if error_code(e) == "ResourceNotFoundException":
                    return ResourceStatus(state=ResourceState.ABSENT)
                raise

        status = cluster.get("status", "")
        state = _EKS_STATES.get(status, ResourceState.PENDING)
        outputs = {
            "name": provider_id,
            "arn": cluster.get("arn"),
            "endpoint": cluster.get("endpoint"),
            "version": cluster.get("version"),
            "certificate_authority": cluster.get("certificateAuthority", {}).get("data"),
            "oidc_issuer": cluster.get("identity", {}).get("oidc", {}).get("issuer"),
        }
        return ResourceStatus(state=state, outputs=outputs, message=status)


class NodePoolAdapter(ResourceAdapter):
    """
    EKS managed node group. The provider id is "<cluster>/<nodegroup>".

    Config:
        cluster: EKS cluster name, usually "@ref.<cluster>.name" (required)
        nodegroup_name: defaults to the resource name
        node_role_arn: node IAM role (required)
        subnet_ids: subnets for the nodes (required)
        instance_types: list of EC2 instance types
        min_size / max_size / desired_size: scaling config
        capacity_type: ON_DEMAND or SPOT
        labels: Kubernetes node labels

    Outputs: cluster, nodegroup, arn, status
    """

    kind = ResourceKind.NODE_POOL
    ready_timeout = 1800.0

    def __init__(self, clients: AwsClientFactory):
        self._clients = clients

    @property
    def eks(self) -> Any:
        return self._clients.get_client("eks")

    @staticmethod
    def _split(provider_id: str) -> tuple[str, str]:
        cluster, _, nodegroup = provider_id.partition("/")
        if not nodegroup:
            raise PermanentProviderError(f"Malformed node group id: {provider_id}")
        return cluster, nodegroup

    @staticmethod
    def _scaling(spec: ResourceSpec) -> dict[str, int]:
        min_size = int(spec.config.get("min_size", 1))
        max_size = int(spec.config.get("max_size", max(min_size, 1)))
        desired = int(spec.config.get("desired_size", min_size))
        if not min_size <= desired <= max_size:
            raise PermanentProviderError(
                f"NodePool '{spec.name}': need min_size <= desired_size <= max_size, "
                f"got {min_size}/{desired}/{max_size}"
            )
        return {"minSize": min_size, "maxSize": max_size, "desiredSize": desired}

    def create(self, spec: ResourceSpec) -> ProviderResult:
        cluster = _require(spec, "cluster")
        nodegroup = spec.config.get("nodegroup_name", spec.name)
        kwargs: dict[str, Any] = {
            "clusterName": cluster,
            "nodegroupName": nodegroup,
            "scalingConfig": self._scaling(spec),
            "subnets": list(_require(spec, "subnet_ids")),
            "nodeRole": _require(spec, "node_role_arn"),
            "tags": _tags(spec),
        }
        if spec.config.get("instance_types"):
            kwargs["instanceTypes"] = list(spec.config["instance_types"])
        if spec.config.get("capacity_type"):
            kwargs["capacityType"] = spec.config["capacity_type"]
        if spec.config.get("labels"):
            kwargs["labels"] = {str(k): str(v) for k, v in spec.config["labels"].items()}

        provider_id = f"{cluster}/{nodegroup}"
        with translate_errors(f"create node group {provider_id}"):
            try:
                self.eks.create_nodegroup(**kwargs)
                logger.info(f"Creating node group {provider_id}")
            except ClientError as e:
                if error_code(e) != "ResourceInUseException":
                    raise
                logger.info(f"Node group {provider_id} already exists, adopting")
        return ProviderResult(provider_id=provider_id, outputs={"cluster": cluster, "nodegroup": nodegroup})

    def update(self, provider_id: str, spec: ResourceSpec) -> ProviderResult:
        cluster, nodegroup = self._split(provider_id)
        with translate_errors(f"update node group {provider_id}"):
            try:
                self.eks.update_nodegroup_config(
                    clusterName=cluster,
                    nodegroupName=nodegroup,
                    scalingConfig=self._scaling(spec),
                )
                logger.info(f"Updating node group {provider_id}")
            except ClientError as e:
                if error_code(e) == "ResourceInUseException":
                    raise TransientProviderError(f"Node group {provider_id} is busy: {e}") from e
                raise
        return ProviderResult(provider_id=provider_id, outputs={"cluster": cluster, "nodegroup": nodegroup})

    def delete(self, provider_id: str) -> None:
        cluster, nodegroup = self._split(provider_id)
        with translate_errors(f"delete node group {provider_id}"):
            try:
                self.eks.delete_nodegroup(clusterName=cluster, nodegroupName=nodegroup)
                logger.info(f"Deleting node group {provider_id}")
            except ClientError as e:
                if error_code(e) != "ResourceNotFoundException":
                    raise

    def describe(self, provider_id: str) -> ResourceStatus:
        cluster, nodegroup = self._split(provider_id)
        with translate_errors(f"describe node group {provider_id}"):
            try:
                group = self.eks.describe_nodegroup(
                    clusterName=cluster, nodegroupName=nodegroup
                )["nodegroup"]
            except ClientError as e:
                if error_code(e) == "ResourceNotFoundException":
                    return ResourceStatus(state=ResourceState.ABSENT)
                raise

        status = group.get("status", "")
        return ResourceStatus(
            state=_EKS_STATES.get(status, ResourceState.PENDING),
            outputs={
                "cluster": cluster,
                "nodegroup": nodegroup,
                "arn": group.get("nodegroupArn"),
                "status": status,
            },
            message=status,
        )


class RegistryAdapter(ResourceAdapter):
    """
    ECR repository.

    Config:
        repository_name: defaults to the resource name
        image_tag_mutability: MUTABLE (default) or IMMUTABLE
        scan_on_push: default true
        tags: extra tags

    Outputs: repository_name, repository_uri, arn
    """

    kind = ResourceKind.REGISTRY

    def __init__(self, clients: AwsClientFactory):
        self._clients = clients

    @property
    def ecr(self) -> Any:
        return self._clients.get_client("ecr")

    def create(self, spec: ResourceSpec) -> ProviderResult:
        name = spec.config.get("repository_name", spec.name)
        with translate_errors(f"create ECR repository {name}"):
            try:
                self.ecr.create_repository(
                    repositoryName=name,
                    imageTagMutability=spec.config.get("image_tag_mutability", "MUTABLE"),
                    imageScanningConfiguration={
                        "scanOnPush": bool(spec.config.get("scan_on_push", True))
                    },
                    tags=_tag_list(_tags(spec)),
                )
                logger.info(f"Created ECR repository {name}")
            except ClientError as e:
                if error_code(e) != "RepositoryAlreadyExistsException":
                    raise
                logger.info(f"ECR repository {name} already exists, adopting")
        return ProviderResult(provider_id=name, outputs={"repository_name": name})

    def update(self, provider_id: str, spec: ResourceSpec) -> ProviderResult:
        with translate_errors(f"update ECR repository {provider_id}"):
            self.ecr.put_image_tag_mutability(
                repositoryName=provider_id,
                imageTagMutability=spec.config.get("image_tag_mutability", "MUTABLE"),
            )
            self.ecr.put_image_scanning_configuration(
                repositoryName=provider_id,
                imageScanningConfiguration={
                    "scanOnPush": bool(spec.config.get("scan_on_push", True))
                },
            )
        return ProviderResult(provider_id=provider_id, outputs={"repository_name": provider_id})

    def delete(self, provider_id: str) -> None:
        with translate_errors(f"delete ECR repository {provider_id}"):
            try:
                self.ecr.delete_repository(repositoryName=provider_id)
                logger.info(f"Deleted ECR repository {provider_id}")
            except ClientError as e:
                if error_code(e) != "RepositoryNotFoundException":
                    raise

    def describe(self, provider_id: str) -> ResourceStatus:
        with translate_errors(f"describe ECR repository {provider_id}"):
            try:
                response = self.ecr.describe_repositories(repositoryNames=[provider_id])
            except ClientError as e:
                if error_code(e) == "RepositoryNotFoundException":
                    return ResourceStatus(state=ResourceState.ABSENT)
                raise

        repo = response["repositories"][0]
        return ResourceStatus(
            state=ResourceState.READY,
            outputs={
                "repository_name": repo["repositoryName"],
                "repository_uri": repo["repositoryUri"],
                "arn": repo["repositoryArn"],
            },
        )
