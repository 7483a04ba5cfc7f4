"""Entities of the topology graph.

Every entity is a frozen attrs value object identified by its logical
``name``. Cross-entity references are plain names that the graph builder
resolves, never live object references, so the builder stays the single
owner of all entities.
"""
import ipaddress
import re
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional, Union

from attrs import define, field
from attrs.validators import instance_of, optional

import common.constants as constants
from topology.errors import InvalidPolicyError
from topology.health import HealthCheckPolicy

NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9-]*$")

Resolver = Callable[[str], "Entity"]


def _valid_name(instance, attribute, value) -> None:
    if not isinstance(value, str) or not NAME_PATTERN.match(value):
        raise ValueError(
            f"{attribute.name} must start with a letter and contain only "
            f"letters, digits and hyphens, got {value!r}"
        )


def frozen_mapping(value: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(value or {}))


class RemovalPolicy(str, Enum):
    DESTROY = "destroy"
    RETAIN = "retain"


class AccessMode(str, Enum):
    PRIVATE = "private"
    PUBLIC = "public"


class SubnetKind(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"


class ViewerPolicy(str, Enum):
    REDIRECT_TO_HTTPS = "redirect-to-https"
    HTTPS_ONLY = "https-only"
    ALLOW_ALL = "allow-all"


class CredentialKind(str, Enum):
    DATABASE = "database"  # username/password generated by the owning database
    GENERATED = "generated"  # standalone random secret


@define(slots=True, frozen=True)
class Handle:
    """Returned by ``GraphBuilder.declare``; stands for a declared entity."""

    name: str
    kind: str


@define(slots=True, frozen=True, kw_only=True)
class Entity:
    name: str = field(validator=_valid_name)

    @property
    def kind(self) -> str:
        return type(self).__name__

    def references(self) -> tuple[str, ...]:
        """Names of the entities this one points at."""
        return ()

    def check(self, resolve: Resolver) -> None:
        """Validate references once they resolve. Raise on violations."""

    def claims(self) -> dict[str, dict[str, Any]]:
        """Changes this entity makes to the entities it takes ownership of."""
        return {}

    @property
    def owned(self) -> bool:
        return True


def _expect(resolve: Resolver, name: str, expected: type, role: str) -> "Entity":
    entity = resolve(name)
    if not isinstance(entity, expected):
        raise InvalidPolicyError(
            f"{role} '{name}' must be a {expected.__name__}, got {entity.kind}"
        )
    return entity


# ---------- network ----------


@define(slots=True, frozen=True, kw_only=True)
class SubnetTier:
    name: str = field(validator=instance_of(str))
    kind: SubnetKind = field(converter=SubnetKind)
    cidr_mask: int = field(default=constants.CIDR_MASK, converter=int)

    @property
    def public_route(self) -> bool:
        # Only public tiers route straight to the internet gateway; private
        # tiers egress through NAT.
        return self.kind is SubnetKind.PUBLIC


def default_tiers() -> tuple[SubnetTier, ...]:
    return (
        SubnetTier(name=constants.PUBLIC_SUBNET_NAME, kind=SubnetKind.PUBLIC),
        SubnetTier(name=constants.PRIVATE_SUBNET_NAME, kind=SubnetKind.PRIVATE),
    )


@define(slots=True, frozen=True, kw_only=True)
class NetworkSegment(Entity):
    cidr: str = field(default=constants.VPC_CIDR, validator=instance_of(str))
    zones: int = field(default=constants.VPC_ZONES, converter=int)
    tiers: tuple[SubnetTier, ...] = field(factory=default_tiers, converter=tuple)
    nat_gateways: int = field(default=constants.NAT_GATEWAYS, converter=int)

    def __attrs_post_init__(self) -> None:
        try:
            network = ipaddress.ip_network(self.cidr)
        except ValueError as exc:
            raise InvalidPolicyError(f"invalid network range '{self.cidr}'") from exc
        if self.zones < 1:
            raise InvalidPolicyError("a network segment needs at least one zone")
        if not self.tiers:
            raise InvalidPolicyError("a network segment needs at least one subnet tier")
        names = [tier.name for tier in self.tiers]
        if len(set(names)) != len(names):
            raise InvalidPolicyError(f"duplicate subnet tier names in {names}")
        for tier in self.tiers:
            if not network.prefixlen < tier.cidr_mask <= network.max_prefixlen:
                raise InvalidPolicyError(
                    f"subnet tier '{tier.name}' mask /{tier.cidr_mask} does not fit "
                    f"inside {self.cidr}"
                )
        if self.private_tiers and self.nat_gateways < 1:
            raise InvalidPolicyError("private subnet tiers need at least one NAT gateway")
        if self.nat_gateways > self.zones:
            raise InvalidPolicyError(
                f"{self.nat_gateways} NAT gateways requested for {self.zones} zones"
            )
        # Raises when the tiers do not fit.
        self.subnet_ranges()

    @property
    def network(self) -> Union[ipaddress.IPv4Network, ipaddress.IPv6Network]:
        return ipaddress.ip_network(self.cidr)

    @property
    def public_tiers(self) -> tuple[SubnetTier, ...]:
        return tuple(tier for tier in self.tiers if tier.kind is SubnetKind.PUBLIC)

    @property
    def private_tiers(self) -> tuple[SubnetTier, ...]:
        return tuple(tier for tier in self.tiers if tier.kind is SubnetKind.PRIVATE)

    def tier(self, name: str) -> Optional[SubnetTier]:
        return next((tier for tier in self.tiers if tier.name == name), None)

    def subnet_ranges(self) -> dict[str, tuple]:
        """Allocate one subnet per tier and zone, in declaration order.

        Blocks are carved sequentially and aligned to their own size, so the
        tiers never overlap and always stay inside the segment range.
        """
        network = self.network
        cursor = int(network.network_address)
        end = int(network.broadcast_address) + 1
        ranges: dict[str, tuple] = {}
        for tier in self.tiers:
            size = 2 ** (network.max_prefixlen - tier.cidr_mask)
            subnets = []
            for _ in range(self.zones):
                cursor = -(-cursor // size) * size
                if cursor + size > end:
                    raise InvalidPolicyError(
                        f"subnet tiers across {self.zones} zones do not fit in {self.cidr}"
                    )
                subnets.append(type(network)((cursor, tier.cidr_mask)))
                cursor += size
            ranges[tier.name] = tuple(subnets)
        return ranges


@define(slots=True, frozen=True, kw_only=True)
class SecurityBoundary(Entity):
    network: str = field(validator=instance_of(str))
    description: str = field(default="", validator=instance_of(str))
    allow_all_outbound: bool = field(default=True, validator=instance_of(bool))

    def references(self) -> tuple[str, ...]:
        return (self.network,)

    def check(self, resolve: Resolver) -> None:
        _expect(resolve, self.network, NetworkSegment, "network")


@define(slots=True, frozen=True, kw_only=True)
class IngressRule(Entity):
    """Directional rule: ``source`` (or ``source_cidr``) may reach ``destination``."""

    destination: str = field(validator=instance_of(str))
    port: int = field(converter=int)
    source: Optional[str] = field(default=None, validator=optional(instance_of(str)))
    source_cidr: Optional[str] = field(
        default=None, validator=optional(instance_of(str))
    )
    protocol: str = field(default="tcp", validator=instance_of(str))
    description: str = field(default="", validator=instance_of(str))

    def __attrs_post_init__(self) -> None:
        if (self.source is None) == (self.source_cidr is None):
            raise InvalidPolicyError(
                f"ingress rule '{self.name}' needs exactly one of a source "
                "boundary or a source range"
            )
        if not 0 < self.port < 65536:
            raise InvalidPolicyError(f"invalid port {self.port}")

    @property
    def is_unrestricted(self) -> bool:
        if self.source_cidr is None:
            return False
        return ipaddress.ip_network(self.source_cidr).prefixlen == 0

    def references(self) -> tuple[str, ...]:
        if self.source is None:
            return (self.destination,)
        return (self.source, self.destination)

    def check(self, resolve: Resolver) -> None:
        _expect(resolve, self.destination, SecurityBoundary, "destination")
        if self.source is not None:
            _expect(resolve, self.source, SecurityBoundary, "source")


# ---------- storage & edge ----------


@define(slots=True, frozen=True, kw_only=True)
class StorageBucket(Entity):
    removal_policy: RemovalPolicy = field(
        default=RemovalPolicy.DESTROY, converter=RemovalPolicy
    )
    access_mode: AccessMode = field(default=AccessMode.PRIVATE, converter=AccessMode)

    def __attrs_post_init__(self) -> None:
        if self.access_mode is AccessMode.PUBLIC:
            raise InvalidPolicyError(
                f"bucket '{self.name}' cannot be public; serve it through a distribution"
            )


@define(slots=True, frozen=True, kw_only=True)
class GrantCondition:
    key: str = field(validator=instance_of(str))
    source: str = field(validator=instance_of(str))


@define(slots=True, frozen=True, kw_only=True)
class AccessGrant(Entity):
    principal: str = field(validator=instance_of(str))
    resource: str = field(validator=instance_of(str))
    consumer: str = field(validator=instance_of(str))
    actions: tuple[str, ...] = field(converter=tuple)
    condition: Optional[GrantCondition] = field(default=None)

    def __attrs_post_init__(self) -> None:
        if not self.actions:
            raise InvalidPolicyError(f"grant '{self.name}' allows no actions")

    def references(self) -> tuple[str, ...]:
        return (self.resource, self.consumer)

    def permits(self, principal: str, source: str) -> bool:
        """Evaluate a request from ``principal`` acting on behalf of ``source``."""
        if principal != self.principal:
            return False
        if self.condition is None:
            return source == self.consumer
        return source == self.condition.source


@define(slots=True, frozen=True, kw_only=True)
class Distribution(Entity):
    origin: str = field(validator=instance_of(str))
    viewer_policy: ViewerPolicy = field(
        default=ViewerPolicy.REDIRECT_TO_HTTPS, converter=ViewerPolicy
    )
    root_object: str = field(default=constants.ROOT_OBJECT, validator=instance_of(str))

    def references(self) -> tuple[str, ...]:
        return (self.origin,)

    def check(self, resolve: Resolver) -> None:
        _expect(resolve, self.origin, StorageBucket, "origin")


# ---------- database ----------


@define(slots=True, frozen=True, kw_only=True)
class Credential(Entity):
    credential_kind: CredentialKind = field(
        default=CredentialKind.DATABASE, converter=CredentialKind
    )
    username: Optional[str] = field(default=None, validator=optional(instance_of(str)))
    exclude_characters: str = field(
        default=constants.SECRET_EXCLUDE_CHARACTERS, validator=instance_of(str)
    )
    length: int = field(default=30, converter=int)
    removal_policy: RemovalPolicy = field(
        default=RemovalPolicy.DESTROY, converter=RemovalPolicy
    )
    owner: Optional[str] = field(default=None, validator=optional(instance_of(str)))

    def __attrs_post_init__(self) -> None:
        if self.credential_kind is CredentialKind.DATABASE and not self.username:
            raise InvalidPolicyError(
                f"database credential '{self.name}' needs a username"
            )

    @property
    def fields(self) -> tuple[str, ...]:
        if self.credential_kind is CredentialKind.DATABASE:
            return ("username", "password")
        return ()

    @property
    def ready(self) -> bool:
        return self.credential_kind is CredentialKind.GENERATED or self.owner is not None

    # ``owner`` is a back-pointer: the owning database references the
    # credential, so the credential carries no edge of its own.


@define(slots=True, frozen=True, kw_only=True)
class StorageBounds:
    initial: int = field(default=constants.DB_STORAGE_INITIAL_GB, converter=int)
    max: int = field(default=constants.DB_STORAGE_MAX_GB, converter=int)

    def __attrs_post_init__(self) -> None:
        if self.initial < 1:
            raise InvalidPolicyError("initial storage must be at least 1 GB")
        if self.initial > self.max:
            raise InvalidPolicyError(
                f"initial storage ({self.initial} GB) exceeds the maximum "
                f"({self.max} GB)"
            )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "StorageBounds":
        return cls(**{key: data[key] for key in ("initial", "max") if key in data})


@define(slots=True, frozen=True, kw_only=True)
class Database(Entity):
    network: str = field(validator=instance_of(str))
    credential: str = field(validator=instance_of(str))
    placement: str = field(
        default=constants.PRIVATE_SUBNET_NAME, validator=instance_of(str)
    )
    boundary: Optional[str] = field(default=None, validator=optional(instance_of(str)))
    storage: StorageBounds = field(factory=StorageBounds)
    engine: str = field(default=constants.DB_ENGINE, validator=instance_of(str))
    engine_version: str = field(default=constants.DB_ENGINE_VERSION, converter=str)
    port: int = field(default=constants.DB_PORT, converter=int)
    database_name: str = field(default=constants.DB_NAME, validator=instance_of(str))
    instance_class: str = field(
        default=constants.DB_INSTANCE_CLASS, validator=instance_of(str)
    )
    removal_policy: RemovalPolicy = field(
        default=RemovalPolicy.DESTROY, converter=RemovalPolicy
    )

    def references(self) -> tuple[str, ...]:
        refs = (self.network, self.credential)
        return refs + (self.boundary,) if self.boundary else refs

    def claims(self) -> dict[str, dict[str, Any]]:
        # Declaring the database is what generates its credential.
        return {self.credential: {"owner": self.name}}

    def check(self, resolve: Resolver) -> None:
        network = _expect(resolve, self.network, NetworkSegment, "network")
        credential = _expect(resolve, self.credential, Credential, "credential")
        if credential.credential_kind is not CredentialKind.DATABASE:
            raise InvalidPolicyError(
                f"'{self.credential}' is not a database credential"
            )
        if credential.owner is not None:
            raise InvalidPolicyError(
                f"credential '{self.credential}' is already owned by '{credential.owner}'"
            )
        _check_private_placement(self, network, self.placement)
        if self.boundary:
            _expect(resolve, self.boundary, SecurityBoundary, "boundary")


def _check_private_placement(entity: Entity, network: NetworkSegment, placement: str):
    tier = network.tier(placement)
    if tier is None:
        raise InvalidPolicyError(
            f"'{entity.name}' is placed in unknown subnet tier '{placement}'"
        )
    if tier.public_route:
        raise InvalidPolicyError(
            f"'{entity.name}' must be placed in a private subnet tier, "
            f"'{placement}' is public"
        )


# ---------- compute ----------


@define(slots=True, frozen=True, kw_only=True)
class ContainerRegistry(Entity):
    repository_name: str = field(validator=instance_of(str))
    imported: bool = field(default=True, validator=instance_of(bool))

    @property
    def owned(self) -> bool:
        return not self.imported


@define(slots=True, frozen=True, kw_only=True)
class ComputeCluster(Entity):
    network: str = field(validator=instance_of(str))

    def references(self) -> tuple[str, ...]:
        return (self.network,)

    def check(self, resolve: Resolver) -> None:
        _expect(resolve, self.network, NetworkSegment, "network")


@define(slots=True, frozen=True, kw_only=True)
class ImageRef:
    registry: str = field(validator=instance_of(str))
    tag: str = field(default=constants.IMAGE_TAG, validator=instance_of(str))


@define(slots=True, frozen=True, kw_only=True)
class ConnectionString:
    """Database URL assembled by the engine from the realized endpoint."""

    database: str = field(validator=instance_of(str))
    scheme: str = field(default=constants.JDBC_SCHEME, validator=instance_of(str))


@define(slots=True, frozen=True, kw_only=True)
class SecretRef:
    """Indirect pointer to a credential field, resolved at realization time."""

    credential: str = field(validator=instance_of(str))
    env_name: str = field(validator=instance_of(str))
    field: Optional[str] = field(default=None, validator=optional(instance_of(str)))

    def resolve(self, store: Mapping[str, Any]) -> str:
        """Look the value up in a credential store keyed by credential name.

        Database credentials are stored as ``{field: value}`` mappings,
        generated secrets as a plain string.
        """
        value = store[self.credential]
        if self.field is None:
            return value
        return value[self.field]


EnvironmentValue = Union[str, ConnectionString]


@define(slots=True, frozen=True, kw_only=True)
class TaskSpec(Entity):
    image: ImageRef = field(validator=instance_of(ImageRef))
    cpu: int = field(default=constants.TASK_CPU, converter=int)
    memory_mib: int = field(default=constants.TASK_MEMORY_MIB, converter=int)
    container_port: int = field(default=constants.CONTAINER_PORT, converter=int)
    environment: Mapping[str, EnvironmentValue] = field(
        factory=dict, converter=frozen_mapping
    )
    secrets: tuple[SecretRef, ...] = field(default=(), converter=tuple)

    def __attrs_post_init__(self) -> None:
        allowed = constants.FARGATE_TASK_SIZES.get(self.cpu)
        if allowed is None or self.memory_mib not in allowed:
            raise InvalidPolicyError(
                f"unsupported task size: {self.cpu} cpu units with {self.memory_mib} MiB"
            )
        secret_names = [secret.env_name for secret in self.secrets]
        if len(set(secret_names)) != len(secret_names):
            raise InvalidPolicyError(f"duplicate secret variables in {secret_names}")
        clashes = set(secret_names) & set(self.environment)
        if clashes:
            raise InvalidPolicyError(
                f"variables {sorted(clashes)} are both plain and secret"
            )

    def references(self) -> tuple[str, ...]:
        refs = [self.image.registry]
        refs += [
            value.database
            for value in self.environment.values()
            if isinstance(value, ConnectionString)
        ]
        refs += [secret.credential for secret in self.secrets]
        return tuple(dict.fromkeys(refs))

    def check(self, resolve: Resolver) -> None:
        _expect(resolve, self.image.registry, ContainerRegistry, "image registry")
        for value in self.environment.values():
            if isinstance(value, ConnectionString):
                _expect(resolve, value.database, Database, "connection target")
        for secret in self.secrets:
            _expect(resolve, secret.credential, Credential, "secret")


@define(slots=True, frozen=True, kw_only=True)
class Service(Entity):
    cluster: str = field(validator=instance_of(str))
    task_spec: str = field(validator=instance_of(str))
    desired_replicas: int = field(default=constants.DESIRED_REPLICAS, converter=int)
    health_check: HealthCheckPolicy = field(
        factory=HealthCheckPolicy, validator=instance_of(HealthCheckPolicy)
    )
    boundary: Optional[str] = field(default=None, validator=optional(instance_of(str)))
    placement: str = field(
        default=constants.PRIVATE_SUBNET_NAME, validator=instance_of(str)
    )

    def __attrs_post_init__(self) -> None:
        if self.desired_replicas < 1:
            raise InvalidPolicyError(
                f"service '{self.name}' needs at least one replica, "
                f"got {self.desired_replicas}"
            )

    def references(self) -> tuple[str, ...]:
        refs = (self.cluster, self.task_spec)
        return refs + (self.boundary,) if self.boundary else refs

    def check(self, resolve: Resolver) -> None:
        cluster = _expect(resolve, self.cluster, ComputeCluster, "cluster")
        _expect(resolve, self.task_spec, TaskSpec, "task spec")
        network = resolve(cluster.network)
        _check_private_placement(self, network, self.placement)
        if self.boundary:
            _expect(resolve, self.boundary, SecurityBoundary, "boundary")


# ---------- entry point ----------


@define(slots=True, frozen=True, kw_only=True)
class Listener:
    port: int = field(converter=int)
    target: str = field(validator=instance_of(str))
    protocol: str = field(default="HTTP", validator=instance_of(str))


@define(slots=True, frozen=True, kw_only=True)
class LoadBalancer(Entity):
    network: str = field(validator=instance_of(str))
    listeners: tuple[Listener, ...] = field(converter=tuple)
    public: bool = field(default=True, validator=instance_of(bool))
    boundary: Optional[str] = field(default=None, validator=optional(instance_of(str)))

    def __attrs_post_init__(self) -> None:
        if not self.listeners:
            raise InvalidPolicyError(f"load balancer '{self.name}' has no listeners")
        ports = [listener.port for listener in self.listeners]
        if len(set(ports)) != len(ports):
            raise InvalidPolicyError(
                f"load balancer '{self.name}' declares more than one listener per port: {ports}"
            )

    def references(self) -> tuple[str, ...]:
        refs = [self.network]
        if self.boundary:
            refs.append(self.boundary)
        refs += [listener.target for listener in self.listeners]
        return tuple(dict.fromkeys(refs))

    def check(self, resolve: Resolver) -> None:
        _expect(resolve, self.network, NetworkSegment, "network")
        for listener in self.listeners:
            _expect(resolve, listener.target, Service, "listener target")
        if self.boundary:
            _expect(resolve, self.boundary, SecurityBoundary, "boundary")


@define(slots=True, frozen=True, kw_only=True)
class Output(Entity):
    target: str = field(validator=instance_of(str))
    attribute: str = field(validator=instance_of(str))
    description: str = field(default="", validator=instance_of(str))

    def references(self) -> tuple[str, ...]:
        return (self.target,)


def listening_port(entity: Entity, resolve: Resolver) -> Optional[int]:
    """Port a provider accepts connections on, if it listens at all."""
    if isinstance(entity, Database):
        return entity.port
    if isinstance(entity, Service):
        return resolve(entity.task_spec).container_port
    return None


def boundary_of(entity: Entity) -> Optional[str]:
    return getattr(entity, "boundary", None)
