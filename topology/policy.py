"""Derives the minimal grant for a consumer -> resource relationship.

Storage reads become an AccessGrant for the CDN service principal, bound to
the one distribution that asked for it. Network reachability becomes an
IngressRule between the two security boundaries on the provider's listening
port. Consumers without a boundary get an identity grant instead.
"""
import os
from typing import Union

from aws_lambda_powertools import Logger

import common.constants as constants
from topology.errors import InvalidPolicyError
from topology.graph import GraphBuilder
from topology.models import (
    AccessGrant,
    Database,
    Distribution,
    Entity,
    GrantCondition,
    Handle,
    IngressRule,
    LoadBalancer,
    StorageBucket,
    boundary_of,
    listening_port,
)

logger = Logger(
    service=constants.TOPOLOGY_LOGGER_SERVICE,
    level=os.getenv(constants.LOG_LEVEL_ENV_VAR, "INFO").upper(),
)

Ref = Union[Handle, str]

# Identity actions for consumers that cannot be reached by a network rule.
IDENTITY_ACTIONS = {
    Database: constants.DB_CONNECT_ACTIONS,
}


def derive_storage_grant(
    builder: GraphBuilder, distribution: Ref, bucket: Ref
) -> Handle:
    """Grant ``distribution`` read access to ``bucket``.

    The principal is the CDN service identity and the condition pins the
    grant to this distribution's own identifier, so any other distribution
    presenting the same service identity is refused.
    """
    with builder.step():
        consumer = builder.get(distribution)
        resource = builder.get(bucket)
        if not isinstance(consumer, Distribution):
            raise InvalidPolicyError(f"'{consumer.name}' is not a distribution")
        if not isinstance(resource, StorageBucket):
            raise InvalidPolicyError(f"'{resource.name}' is not a storage bucket")
        if consumer.origin != resource.name:
            raise InvalidPolicyError(
                f"'{consumer.name}' serves '{consumer.origin}', not '{resource.name}'"
            )
        holders = [
            grant.consumer
            for grant in builder.of_type(AccessGrant)
            if grant.resource == resource.name
        ]
        if holders:
            raise InvalidPolicyError(
                f"bucket '{resource.name}' already grants read access to {holders}"
            )
        grant = AccessGrant(
            name=f"{consumer.name}-read-{resource.name}",
            principal=constants.CDN_SERVICE_PRINCIPAL,
            resource=resource.name,
            consumer=consumer.name,
            actions=constants.STORAGE_READ_ACTIONS,
            condition=GrantCondition(
                key=constants.CDN_SOURCE_CONDITION_KEY, source=consumer.name
            ),
        )
        logger.info(
            "Derived storage grant",
            extra={"resource": resource.name, "consumer": consumer.name},
        )
        return builder.declare(grant)


def derive_network_access(builder: GraphBuilder, consumer: Ref, provider: Ref) -> Handle:
    """Let ``consumer`` reach ``provider`` on the provider's listening port.

    Returns the declared IngressRule, or an identity AccessGrant when the
    consumer has no security boundary to use as a source.
    """
    with builder.step():
        source = builder.get(consumer)
        target = builder.get(provider)
        port = listening_port(target, builder.get)
        if port is None:
            raise InvalidPolicyError(f"'{target.name}' does not listen on any port")

        destination = boundary_of(target)
        if destination is None:
            raise InvalidPolicyError(
                f"'{target.name}' has no security boundary to receive traffic"
            )

        source_boundary = boundary_of(source)
        if source_boundary is None:
            return _derive_identity_grant(builder, source, target)

        rule = IngressRule(
            name=f"{source.name}-to-{target.name}",
            source=source_boundary,
            destination=destination,
            port=port,
            description=f"Allow {source.name} to reach {target.name} on TCP/{port}",
        )
        logger.info(
            "Derived ingress rule",
            extra={"source": source.name, "destination": target.name, "port": port},
        )
        return builder.declare(rule, deps=[source.name, target.name])


def derive_public_ingress(builder: GraphBuilder, load_balancer: Ref) -> list[Handle]:
    """Open every listener port of a public load balancer to the internet."""
    with builder.step():
        balancer = builder.get(load_balancer)
        if not isinstance(balancer, LoadBalancer) or not balancer.public:
            raise InvalidPolicyError(
                f"'{balancer.name}' is not a public-facing load balancer"
            )
        if balancer.boundary is None:
            raise InvalidPolicyError(f"'{balancer.name}' has no security boundary")
        handles = []
        for listener in balancer.listeners:
            rule = IngressRule(
                name=f"public-to-{balancer.name}-{listener.port}",
                source_cidr=constants.ANY_IPV4_CIDR,
                destination=balancer.boundary,
                port=listener.port,
                description=f"Allow public {listener.protocol} (TCP/{listener.port})",
            )
            handles.append(builder.declare(rule, deps=[balancer.name]))
        logger.info(
            "Derived public ingress",
            extra={"load_balancer": balancer.name, "ports": [h.name for h in handles]},
        )
        return handles


def _derive_identity_grant(builder: GraphBuilder, consumer: Entity, target: Entity) -> Handle:
    actions = IDENTITY_ACTIONS.get(type(target))
    if actions is None:
        raise InvalidPolicyError(
            f"'{consumer.name}' has no security boundary and '{target.name}' "
            "offers no identity-based access"
        )
    grant = AccessGrant(
        name=f"{consumer.name}-connect-{target.name}",
        principal=consumer.name,
        resource=target.name,
        consumer=consumer.name,
        actions=actions,
    )
    logger.info(
        "Derived identity grant",
        extra={"consumer": consumer.name, "resource": target.name},
    )
    return builder.declare(grant)
