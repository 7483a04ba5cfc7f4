from typing import Any, Callable, Optional

from aws_cdk import (
    CfnOutput,
    Duration,
    RemovalPolicy,
    Stack,
    aws_cloudfront as cloudfront,
    aws_ec2 as ec2,
    aws_ecr as ecr,
    aws_ecs as ecs,
    aws_elasticloadbalancingv2 as elbv2,
    aws_iam as iam,
    aws_rds as rds,
    aws_s3 as s3,
    aws_secretsmanager as secretsmanager,
)
from constructs import Construct

import common.constants as constants
from common.stack_context import StackContext
from topology.errors import InvalidPolicyError, TopologyError
from topology.graph import ResourceGraph
from topology.health import HealthCheckPolicy
from topology.models import (
    AccessGrant,
    ComputeCluster,
    ConnectionString,
    ContainerRegistry,
    Credential,
    CredentialKind,
    Database,
    Distribution,
    Entity,
    IngressRule,
    LoadBalancer,
    NetworkSegment,
    Output,
    SecretRef,
    SecurityBoundary,
    Service,
    StorageBucket,
    TaskSpec,
)
from topology.models import RemovalPolicy as TopologyRemovalPolicy
from topology.outputs import OutputSet, ResourceHandles, resolve_outputs

REMOVAL_POLICIES = {
    TopologyRemovalPolicy.DESTROY: RemovalPolicy.DESTROY,
    TopologyRemovalPolicy.RETAIN: RemovalPolicy.RETAIN,
}


class FakeTwitterStack(Stack):
    """Realizes a declared topology graph as CDK constructs.

    The network segment is realized by the networking stack and handed in as
    ``vpc``; every other entity is rendered here in dependency order.
    """

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        graph: ResourceGraph,
        vpc: ec2.IVpc,
        deployment_env: str = constants.DEFAULT_ENV,
        **kwargs,
    ) -> None:
        super().__init__(scope, construct_id, **kwargs)
        self.context = StackContext(scope=self, env=deployment_env)
        self.graph = graph
        self.vpc = vpc
        self.resources: dict[str, Any] = {graph.network.name: vpc}

        self.handles = self.realize(graph)
        self.outputs = self._build_outputs(resolve_outputs(graph, self.handles))

    def realize(self, graph: ResourceGraph) -> ResourceHandles:
        """Render every entity and return the realized attributes per entity."""
        handles: dict[str, dict[str, Any]] = {}
        for name in graph.topological_order():
            entity = graph.get(name)
            builder = self._renderer_for(entity)
            if builder is None:
                continue
            realized = builder(entity)
            if realized:
                handles[name] = realized
        return handles

    def _renderer_for(self, entity: Entity) -> Optional[Callable[[Any], dict]]:
        renderers = {
            NetworkSegment: None,
            Output: None,
            StorageBucket: self._build_bucket,
            Distribution: self._build_distribution,
            AccessGrant: self._build_access_grant,
            Credential: self._build_credential,
            SecurityBoundary: self._build_security_group,
            Database: self._build_database,
            ContainerRegistry: self._build_repository,
            ComputeCluster: self._build_cluster,
            TaskSpec: self._build_task_definition,
            Service: self._build_service,
            LoadBalancer: self._build_load_balancer,
            IngressRule: self._build_ingress_rule,
        }
        try:
            return renderers[type(entity)]
        except KeyError:
            raise TopologyError(f"no renderer for {entity.kind} '{entity.name}'") from None

    # Resource creation

    def _build_bucket(self, bucket: StorageBucket) -> dict:
        """Create the private S3 bucket holding the frontend assets."""
        destroy = bucket.removal_policy is TopologyRemovalPolicy.DESTROY
        self.resources[bucket.name] = s3.Bucket(
            self,
            self.context.build_resource_id(bucket.name),
            removal_policy=REMOVAL_POLICIES[bucket.removal_policy],
            auto_delete_objects=destroy,
            block_public_access=s3.BlockPublicAccess.BLOCK_ALL,
            encryption=s3.BucketEncryption.S3_MANAGED,
            enforce_ssl=True,
        )
        return {"bucket_name": self.resources[bucket.name].bucket_name}

    def _build_distribution(self, distribution: Distribution) -> dict:
        """Create the CloudFront distribution reaching its bucket through OAC."""
        bucket: s3.IBucket = self.resources[distribution.origin]
        oac = cloudfront.CfnOriginAccessControl(
            self,
            self.context.build_resource_id(distribution.name, action="OAC"),
            origin_access_control_config=cloudfront.CfnOriginAccessControl.OriginAccessControlConfigProperty(
                name=self.context.build_resource_name(distribution.name, action="oac"),
                origin_access_control_origin_type="s3",
                signing_behavior="always",
                signing_protocol="sigv4",
                description=f"Origin access control for {distribution.origin}",
            ),
        )
        origin_id = f"{distribution.origin}-origin"
        cdn = cloudfront.CfnDistribution(
            self,
            self.context.build_resource_id(distribution.name),
            distribution_config=cloudfront.CfnDistribution.DistributionConfigProperty(
                enabled=True,
                default_root_object=distribution.root_object,
                origins=[
                    cloudfront.CfnDistribution.OriginProperty(
                        id=origin_id,
                        domain_name=bucket.bucket_regional_domain_name,
                        s3_origin_config=cloudfront.CfnDistribution.S3OriginConfigProperty(
                            origin_access_identity=""
                        ),
                        origin_access_control_id=oac.attr_id,
                    )
                ],
                default_cache_behavior=cloudfront.CfnDistribution.DefaultCacheBehaviorProperty(
                    target_origin_id=origin_id,
                    viewer_protocol_policy=distribution.viewer_policy.value,
                    allowed_methods=["GET", "HEAD"],
                    cached_methods=["GET", "HEAD"],
                    compress=True,
                    cache_policy_id=cloudfront.CachePolicy.CACHING_OPTIMIZED.cache_policy_id,
                ),
                viewer_certificate=cloudfront.CfnDistribution.ViewerCertificateProperty(
                    cloud_front_default_certificate=True,
                ),
            ),
        )
        self.resources[distribution.name] = cdn
        return {"domain_name": cdn.attr_domain_name, "distribution_id": cdn.ref}

    def _build_access_grant(self, grant: AccessGrant) -> dict:
        resource = self.graph.get(grant.resource)
        if isinstance(resource, StorageBucket):
            self._grant_bucket_read(grant)
        elif isinstance(resource, Database):
            self.resources[grant.resource].grant_connect(self._grantee(grant.consumer))
        else:
            raise TopologyError(f"cannot realize grant '{grant.name}' on {resource.kind}")
        return {}

    def _grant_bucket_read(self, grant: AccessGrant) -> None:
        bucket: s3.IBucket = self.resources[grant.resource]
        conditions = None
        if grant.condition is not None:
            source = self.resources[grant.condition.source]
            conditions = {
                "StringEquals": {
                    grant.condition.key: self.context.build_distribution_arn(source.ref)
                }
            }
        bucket.add_to_resource_policy(
            iam.PolicyStatement(
                sid="AllowCloudFrontServicePrincipalReadOnly",
                actions=list(grant.actions),
                resources=[bucket.arn_for_objects("*")],
                principals=[iam.ServicePrincipal(grant.principal)],
                conditions=conditions,
            )
        )

    def _grantee(self, consumer: str) -> iam.IGrantable:
        entity = self.graph.get(consumer)
        if isinstance(entity, Service):
            return self.resources[entity.task_spec].task_role
        raise TopologyError(f"'{consumer}' has no identity to grant to")

    def _build_credential(self, credential: Credential) -> dict:
        if credential.credential_kind is CredentialKind.DATABASE:
            # Generated together with the owning database instance.
            return {}
        secret = secretsmanager.Secret(
            self,
            self.context.build_resource_id(credential.name),
            description=f"Generated secret {credential.name}",
            generate_secret_string=secretsmanager.SecretStringGenerator(
                password_length=credential.length,
                exclude_characters=credential.exclude_characters,
            ),
            removal_policy=REMOVAL_POLICIES[credential.removal_policy],
        )
        self.resources[credential.name] = secret
        return {"secret_arn": secret.secret_arn}

    def _build_security_group(self, boundary: SecurityBoundary) -> dict:
        security_group = ec2.SecurityGroup(
            self,
            self.context.build_resource_id(boundary.name),
            vpc=self.vpc,
            description=boundary.description or f"Security group {boundary.name}",
            allow_all_outbound=boundary.allow_all_outbound,
        )
        self.resources[boundary.name] = security_group
        return {"security_group_id": security_group.security_group_id}

    def _build_ingress_rule(self, rule: IngressRule) -> dict:
        destination: ec2.ISecurityGroup = self.resources[rule.destination]
        if rule.source is not None:
            # Peering on the group itself keeps the rule id stable, so CDK
            # collapses it with rules it adds for load balancer targets.
            peer = self.resources[rule.source]
        else:
            peer = ec2.Peer.ipv4(rule.source_cidr)
        ports = {"tcp": ec2.Port.tcp, "udp": ec2.Port.udp}
        if rule.protocol not in ports:
            raise TopologyError(f"unsupported protocol '{rule.protocol}' in '{rule.name}'")
        destination.add_ingress_rule(peer, ports[rule.protocol](rule.port), rule.description)
        return {}

    def _build_database(self, database: Database) -> dict:
        """Create the PostgreSQL instance in the private subnets."""
        if database.engine != constants.DB_ENGINE:
            raise TopologyError(f"unsupported database engine '{database.engine}'")
        credential = self.graph.get(database.credential)
        major_version = database.engine_version.split(".")[0]
        destroy = database.removal_policy is TopologyRemovalPolicy.DESTROY
        instance = rds.DatabaseInstance(
            self,
            self.context.build_resource_id(database.name),
            engine=rds.DatabaseInstanceEngine.postgres(
                version=rds.PostgresEngineVersion.of(database.engine_version, major_version)
            ),
            vpc=self.vpc,
            vpc_subnets=ec2.SubnetSelection(subnet_group_name=database.placement),
            security_groups=(
                [self.resources[database.boundary]] if database.boundary else None
            ),
            publicly_accessible=False,
            credentials=rds.Credentials.from_generated_secret(
                credential.username,
                exclude_characters=credential.exclude_characters,
            ),
            instance_type=ec2.InstanceType(database.instance_class),
            multi_az=False,
            allocated_storage=database.storage.initial,
            max_allocated_storage=database.storage.max,
            database_name=database.database_name,
            port=database.port,
            storage_encrypted=True,
            removal_policy=REMOVAL_POLICIES[database.removal_policy],
            deletion_protection=not destroy,
        )
        instance.secret.apply_removal_policy(REMOVAL_POLICIES[credential.removal_policy])
        self.resources[database.name] = instance
        self.resources[credential.name] = instance.secret
        return {
            "endpoint_address": instance.db_instance_endpoint_address,
            "endpoint_port": instance.db_instance_endpoint_port,
        }

    def _build_repository(self, registry: ContainerRegistry) -> dict:
        if registry.imported:
            repository = ecr.Repository.from_repository_name(
                self,
                self.context.build_resource_id(registry.name),
                registry.repository_name,
            )
        else:
            repository = ecr.Repository(
                self,
                self.context.build_resource_id(registry.name),
                repository_name=registry.repository_name,
                removal_policy=RemovalPolicy.DESTROY,
            )
        self.resources[registry.name] = repository
        return {"repository_uri": repository.repository_uri}

    def _build_cluster(self, cluster: ComputeCluster) -> dict:
        ecs_cluster = ecs.Cluster(
            self,
            self.context.build_resource_id(cluster.name),
            vpc=self.vpc,
            cluster_name=self.context.build_resource_name(cluster.name),
        )
        self.resources[cluster.name] = ecs_cluster
        return {"cluster_name": ecs_cluster.cluster_name}

    def _build_task_definition(self, task: TaskSpec) -> dict:
        """Create the Fargate task definition for the backend container.

        Secrets are passed as references; ECS fetches them when the task starts.
        """
        task_definition = ecs.FargateTaskDefinition(
            self,
            self.context.build_resource_id(task.name),
            family=self.context.build_resource_name(task.name),
            cpu=task.cpu,
            memory_limit_mib=task.memory_mib,
        )
        task_definition.add_container(
            self.context.build_resource_id(task.name, action="Container"),
            image=ecs.ContainerImage.from_ecr_repository(
                self.resources[task.image.registry], task.image.tag
            ),
            port_mappings=[
                ecs.PortMapping(container_port=task.container_port, protocol=ecs.Protocol.TCP)
            ],
            environment={
                name: self._environment_value(value)
                for name, value in task.environment.items()
            },
            secrets={ref.env_name: self._container_secret(ref) for ref in task.secrets},
            logging=ecs.LogDrivers.aws_logs(
                stream_prefix=constants.LOG_STREAM_PREFIX,
                log_group=self.context.build_log_group(task.name),
            ),
        )
        self.resources[task.name] = task_definition
        return {"task_definition_arn": task_definition.task_definition_arn}

    def _environment_value(self, value) -> str:
        if not isinstance(value, ConnectionString):
            return value
        database: Database = self.graph.get(value.database)
        instance: rds.DatabaseInstance = self.resources[value.database]
        return (
            f"{value.scheme}://{instance.db_instance_endpoint_address}:"
            f"{instance.db_instance_endpoint_port}/{database.database_name}"
        )

    def _container_secret(self, ref: SecretRef) -> ecs.Secret:
        secret = self.resources[ref.credential]
        if ref.field is None:
            return ecs.Secret.from_secrets_manager(secret)
        return ecs.Secret.from_secrets_manager(secret, ref.field)

    def _build_service(self, service: Service) -> dict:
        fargate_service = ecs.FargateService(
            self,
            self.context.build_resource_id(service.name),
            service_name=self.context.build_resource_name(service.name),
            cluster=self.resources[service.cluster],
            task_definition=self.resources[service.task_spec],
            desired_count=service.desired_replicas,
            assign_public_ip=False,
            security_groups=(
                [self.resources[service.boundary]] if service.boundary else None
            ),
            vpc_subnets=ec2.SubnetSelection(subnet_group_name=service.placement),
            circuit_breaker=ecs.DeploymentCircuitBreaker(rollback=True),
            health_check_grace_period=Duration.seconds(
                constants.HEALTH_CHECK_GRACE_PERIOD_SECONDS
            ),
        )
        self.resources[service.name] = fargate_service
        return {"service_name": fargate_service.service_name}

    def _build_load_balancer(self, balancer: LoadBalancer) -> dict:
        """Create the ALB and route each listener to its service.

        The target group carries the service's health-check policy; the load
        balancer drops targets that fail it.
        """
        alb = elbv2.ApplicationLoadBalancer(
            self,
            self.context.build_resource_id(balancer.name),
            vpc=self.vpc,
            internet_facing=balancer.public,
            security_group=(
                self.resources[balancer.boundary] if balancer.boundary else None
            ),
            vpc_subnets=ec2.SubnetSelection(
                subnet_type=(
                    ec2.SubnetType.PUBLIC if balancer.public else ec2.SubnetType.PRIVATE_WITH_EGRESS
                )
            ),
        )
        for listener in balancer.listeners:
            service: Service = self.graph.get(listener.target)
            task: TaskSpec = self.graph.get(service.task_spec)
            policy = service.health_check
            alb_listener = alb.add_listener(
                self.context.build_resource_id(balancer.name, action=f"Listener{listener.port}"),
                port=listener.port,
                protocol=getattr(elbv2.ApplicationProtocol, listener.protocol),
                # Ingress is opened explicitly by the derived public rules.
                open=False,
            )
            alb_listener.add_targets(
                self.context.build_resource_id(service.name, action="Targets"),
                port=task.container_port,
                protocol=elbv2.ApplicationProtocol.HTTP,
                targets=[self.resources[service.name]],
                health_check=self._target_group_health_check(service.name, policy),
            )
        self.resources[balancer.name] = alb
        return {"dns_name": alb.load_balancer_dns_name}

    @staticmethod
    def _target_group_health_check(
        service_name: str, policy: HealthCheckPolicy
    ) -> elbv2.HealthCheck:
        """Translate the policy, refusing values ELBv2 would reject at deploy."""
        for setting, (low, high) in constants.TARGET_GROUP_HEALTH_CHECK_RANGES.items():
            value = getattr(policy, setting)
            if not low <= value <= high:
                raise InvalidPolicyError(
                    f"health check {setting} of '{service_name}' is {value}; "
                    f"target groups accept {low} to {high}"
                )
        return elbv2.HealthCheck(
            enabled=True,
            path=policy.path,
            healthy_http_codes=policy.healthy_http_codes,
            interval=Duration.seconds(policy.interval),
            timeout=Duration.seconds(policy.timeout),
            healthy_threshold_count=policy.healthy_threshold,
            unhealthy_threshold_count=policy.unhealthy_threshold,
        )

    def _build_outputs(self, outputs: OutputSet) -> OutputSet:
        for output in self.graph.of_type(Output):
            CfnOutput(
                self,
                output.name,
                value=outputs[output.name],
                description=output.description,
            )
        return outputs
