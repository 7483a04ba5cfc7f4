"""Declares the Fake Twitter three-tier topology.

Static frontend in a private bucket behind a CDN, a containerized backend
behind a public load balancer, and a PostgreSQL database only the backend
can reach.
"""
import common.constants as constants
from common.config import TopologyConfig
from topology.credentials import bind_secret
from topology.graph import GraphBuilder, ResourceGraph
from topology.models import (
    ComputeCluster,
    ConnectionString,
    ContainerRegistry,
    Credential,
    CredentialKind,
    Database,
    Distribution,
    ImageRef,
    Listener,
    LoadBalancer,
    NetworkSegment,
    Output,
    SecurityBoundary,
    Service,
    StorageBucket,
    TaskSpec,
)
from topology.policy import (
    derive_network_access,
    derive_public_ingress,
    derive_storage_grant,
)

NETWORK = "app-network"
FRONTEND_BUCKET = "frontend-assets"
FRONTEND_DISTRIBUTION = "frontend-distribution"
DATABASE_CREDENTIAL = "database-credentials"
DATABASE_BOUNDARY = "database-boundary"
DATABASE = "app-database"
BACKEND_REPOSITORY = "backend-repository"
BACKEND_CLUSTER = "backend-cluster"
JWT_SECRET = "jwt-signing-key"
BACKEND_TASK = "backend-task"
BACKEND_BOUNDARY = "backend-service-boundary"
BACKEND_SERVICE = "backend-service"
LOAD_BALANCER_BOUNDARY = "load-balancer-boundary"
LOAD_BALANCER = "backend-load-balancer"


def declare_three_tier_topology(config: TopologyConfig) -> ResourceGraph:
    """Declare every resource and grant, then hand off the finished graph.

    Any failing step raises and no graph is returned.
    """
    builder = GraphBuilder()

    network = builder.declare(
        NetworkSegment(
            name=NETWORK,
            cidr=config.vpc_cidr,
            zones=config.vpc_zones,
            nat_gateways=config.nat_gateways,
        )
    )

    # Frontend
    bucket = builder.declare(
        StorageBucket(name=FRONTEND_BUCKET, removal_policy=config.removal_policy),
        deps=[network],
    )
    distribution = builder.declare(
        Distribution(name=FRONTEND_DISTRIBUTION, origin=bucket.name)
    )
    derive_storage_grant(builder, distribution, bucket)

    # Database
    credential = builder.declare(
        Credential(
            name=DATABASE_CREDENTIAL,
            username=config.db_username,
            removal_policy=config.removal_policy,
        )
    )
    database_boundary = builder.declare(
        SecurityBoundary(
            name=DATABASE_BOUNDARY,
            network=network.name,
            description="Database access, backend service only",
            allow_all_outbound=False,
        )
    )
    database = builder.declare(
        Database(
            name=DATABASE,
            network=network.name,
            credential=credential.name,
            boundary=database_boundary.name,
            storage=config.db_storage_gb,
            engine_version=config.db_engine_version,
            database_name=config.db_name,
            removal_policy=config.removal_policy,
        )
    )

    # Backend
    repository = builder.declare(
        ContainerRegistry(name=BACKEND_REPOSITORY, repository_name=config.image_repository)
    )
    cluster = builder.declare(ComputeCluster(name=BACKEND_CLUSTER, network=network.name))
    jwt_secret = builder.declare(
        Credential(
            name=JWT_SECRET,
            credential_kind=CredentialKind.GENERATED,
            length=64,
            removal_policy=config.removal_policy,
        )
    )
    task = builder.declare(
        TaskSpec(
            name=BACKEND_TASK,
            image=ImageRef(registry=repository.name, tag=config.image_tag),
            cpu=config.task_cpu,
            memory_mib=config.task_memory_mib,
            container_port=config.container_port,
            environment={
                constants.ENV_DATASOURCE_URL: ConnectionString(database=database.name),
            },
        )
    )
    bind_secret(builder, task, credential, "username", constants.ENV_DATASOURCE_USERNAME)
    bind_secret(builder, task, credential, "password", constants.ENV_DATASOURCE_PASSWORD)
    bind_secret(builder, task, jwt_secret, env_name=constants.ENV_JWT_SECRET)

    service_boundary = builder.declare(
        SecurityBoundary(
            name=BACKEND_BOUNDARY,
            network=network.name,
            description="Backend service tasks",
        )
    )
    service = builder.declare(
        Service(
            name=BACKEND_SERVICE,
            cluster=cluster.name,
            task_spec=task.name,
            desired_replicas=config.desired_replicas,
            health_check=config.health_check,
            boundary=service_boundary.name,
        )
    )
    derive_network_access(builder, service, database)

    # Entry point
    balancer_boundary = builder.declare(
        SecurityBoundary(
            name=LOAD_BALANCER_BOUNDARY,
            network=network.name,
            description="Public load balancer",
            allow_all_outbound=False,
        )
    )
    balancer = builder.declare(
        LoadBalancer(
            name=LOAD_BALANCER,
            network=network.name,
            listeners=[Listener(port=config.listener_port, target=service.name)],
            public=True,
            boundary=balancer_boundary.name,
        )
    )
    derive_public_ingress(builder, balancer)
    derive_network_access(builder, balancer, service)

    builder.declare(
        Output(
            name=constants.OUTPUT_FRONTEND_URL,
            target=distribution.name,
            attribute="domain_name",
            description="Domain name of the frontend distribution",
        )
    )
    builder.declare(
        Output(
            name=constants.OUTPUT_BACKEND_URL,
            target=balancer.name,
            attribute="dns_name",
            description="DNS name of the backend load balancer",
        )
    )
    return builder.build()
