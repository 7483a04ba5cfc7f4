import json
from typing import Any, Mapping, Optional, Protocol

from attrs import define, field
from attrs.validators import instance_of

import common.constants as constants
from topology.errors import InvalidPolicyError
from topology.health import HealthCheckPolicy
from topology.models import RemovalPolicy, StorageBounds


class ContextSource(Protocol):
    def try_get_context(self, key: str) -> Any:
        ...


def _positive(instance, attribute, value) -> None:
    if value < 1:
        raise InvalidPolicyError(f"{attribute.name} must be at least 1, got {value}")


def _as_mapping(value: Any) -> Mapping[str, Any]:
    # `cdk -c key=value` hands over strings, cdk.json hands over objects.
    if isinstance(value, str):
        value = json.loads(value)
    if not isinstance(value, Mapping):
        raise InvalidPolicyError(f"expected an object, got {value!r}")
    return value


def _storage(value: Any) -> StorageBounds:
    if isinstance(value, StorageBounds):
        return value
    return StorageBounds.from_mapping(_as_mapping(value))


def _health_check(value: Any) -> HealthCheckPolicy:
    if isinstance(value, HealthCheckPolicy):
        return value
    return HealthCheckPolicy.from_mapping(_as_mapping(value))


@define(slots=True, frozen=True, kw_only=True)
class TopologyConfig:
    """Configuration surface of the stack.

    Every field maps to a CDK context key (``cdk.json`` or ``-c key=value``);
    see ``CONTEXT_KEYS``.
    """

    env: str = field(
        default=constants.DEFAULT_ENV,
        validator=instance_of(str),
        metadata={"description": "Deployment environment (dev, staging, prod)"},
    )
    vpc_cidr: str = field(default=constants.VPC_CIDR, validator=instance_of(str))
    vpc_zones: int = field(default=constants.VPC_ZONES, converter=int, validator=_positive)
    nat_gateways: int = field(default=constants.NAT_GATEWAYS, converter=int)
    db_engine_version: str = field(default=constants.DB_ENGINE_VERSION, converter=str)
    db_storage_gb: StorageBounds = field(factory=StorageBounds, converter=_storage)
    db_name: str = field(default=constants.DB_NAME, validator=instance_of(str))
    db_username: str = field(default=constants.DB_USERNAME, validator=instance_of(str))
    task_cpu: int = field(default=constants.TASK_CPU, converter=int)
    task_memory_mib: int = field(default=constants.TASK_MEMORY_MIB, converter=int)
    desired_replicas: int = field(default=constants.DESIRED_REPLICAS, converter=int)
    container_port: int = field(default=constants.CONTAINER_PORT, converter=int)
    listener_port: int = field(default=constants.LISTENER_PORT, converter=int)
    image_repository: str = field(
        default=constants.IMAGE_REPOSITORY, validator=instance_of(str)
    )
    image_tag: str = field(default=constants.IMAGE_TAG, validator=instance_of(str))
    health_check: HealthCheckPolicy = field(
        factory=HealthCheckPolicy, converter=_health_check
    )
    removal_policy: RemovalPolicy = field(
        default=RemovalPolicy.DESTROY, converter=RemovalPolicy
    )

    @classmethod
    def from_context(cls, source: ContextSource) -> "TopologyConfig":
        """Read overrides from a construct node; unset keys keep their defaults."""
        values = {}
        for key, attribute in CONTEXT_KEYS.items():
            value: Optional[Any] = source.try_get_context(key)
            if value is not None:
                values[attribute] = value
        return cls(**values)


CONTEXT_KEYS = {
    "env": "env",
    "vpcCidr": "vpc_cidr",
    "vpcZones": "vpc_zones",
    "natGateways": "nat_gateways",
    "dbEngineVersion": "db_engine_version",
    "dbStorageGB": "db_storage_gb",
    "dbName": "db_name",
    "dbUsername": "db_username",
    "taskCpu": "task_cpu",
    "taskMemoryMiB": "task_memory_mib",
    "desiredReplicas": "desired_replicas",
    "containerPort": "container_port",
    "listenerPort": "listener_port",
    "imageRepository": "image_repository",
    "imageTag": "image_tag",
    "healthCheck": "health_check",
    "removalPolicy": "removal_policy",
}
