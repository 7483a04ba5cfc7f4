from typing import Any, Mapping

import pytest
from aws_cdk.assertions import Match, Template

import common.constants as constants
from common.config import TopologyConfig
from governance_checks import (
    assert_cloudfront_compliance,
    assert_database_isolation,
    assert_ecs_compliance,
    assert_rds_compliance,
    assert_s3_compliance,
)
from stack_test_helpers import (
    IngressTestCase,
    UpdateDeletePolicyTestCase,
    build_templates,
    find_logical_id,
    find_resources_by_type,
    get_single_resource_id,
    json_template,
    template,
    templates,
)
from topology.errors import InvalidPolicyError

DATABASE_BOUNDARY = "FakeTwitterDatabaseBoundary"
SERVICE_BOUNDARY = "FakeTwitterBackendServiceBoundary"
LOAD_BALANCER_BOUNDARY = "FakeTwitterLoadBalancerBoundary"
JWT_SECRET_ID = "FakeTwitterJwtSigningKey"

# ----------------------------- Resource count smoke test ------------------------

RESOURCES = [
    ("AWS::CloudFront::Distribution", 1),
    ("AWS::CloudFront::OriginAccessControl", 1),
    ("AWS::EC2::SecurityGroup", 3),
    ("AWS::EC2::SecurityGroupIngress", 2),
    ("AWS::ECS::Cluster", 1),
    ("AWS::ECS::Service", 1),
    ("AWS::ECS::TaskDefinition", 1),
    ("AWS::ElasticLoadBalancingV2::Listener", 1),
    ("AWS::ElasticLoadBalancingV2::LoadBalancer", 1),
    ("AWS::ElasticLoadBalancingV2::TargetGroup", 1),
    ("AWS::Logs::LogGroup", 1),
    ("AWS::RDS::DBInstance", 1),
    ("AWS::S3::Bucket", 1),
    ("AWS::S3::BucketPolicy", 1),
    ("AWS::SecretsManager::Secret", 2),
]


@pytest.mark.parametrize("resource_type,expected", RESOURCES)
def test_resource_count(template: Template, resource_type: str, expected: int):
    template.resource_count_is(resource_type, expected)


# ------------------- Update/Delete Policy tests -------------------
UPDATE_DELETE_POLICY_CASE = [
    UpdateDeletePolicyTestCase(
        id="AWS::RDS::DBInstance", update_policy="Delete", delete_policy="Delete"
    ),
    UpdateDeletePolicyTestCase(
        id="AWS::S3::Bucket", update_policy="Delete", delete_policy="Delete"
    ),
]


@pytest.mark.parametrize("case", UPDATE_DELETE_POLICY_CASE, ids=lambda test: test.id)
def test_resource_level_properties(
    template: Template,
    json_template: Mapping[str, Any],
    case: UpdateDeletePolicyTestCase,
):
    resource_type = find_resources_by_type(template, case.id)
    logical_id = get_single_resource_id(resource_type, case.id)

    assert json_template["Resources"][logical_id]["DeletionPolicy"] == case.delete_policy
    assert (
        json_template["Resources"][logical_id]["UpdateReplacePolicy"]
        == case.update_policy
    )


def test_retain_policy_keeps_data_stores():
    _, retained = build_templates(TopologyConfig(removal_policy="retain"))
    resources = retained.to_json()["Resources"]

    for resource_type in ("AWS::RDS::DBInstance", "AWS::S3::Bucket"):
        logical_id = get_single_resource_id(
            find_resources_by_type(retained, resource_type), resource_type
        )
        assert resources[logical_id]["DeletionPolicy"] == "Retain"
    retained.has_resource_properties("AWS::RDS::DBInstance", {"DeletionProtection": True})

    for prefix in (JWT_SECRET_ID, "FakeTwitterAppDatabaseSecret"):
        logical_id = find_logical_id(retained, "AWS::SecretsManager::Secret", prefix)
        assert resources[logical_id]["DeletionPolicy"] == "Retain"


def test_generated_secret_follows_removal_policy(
    template: Template, json_template: Mapping[str, Any]
):
    logical_id = find_logical_id(template, "AWS::SecretsManager::Secret", JWT_SECRET_ID)

    assert json_template["Resources"][logical_id]["DeletionPolicy"] == "Delete"


def test_invalid_topology_never_reaches_synthesis():
    with pytest.raises(InvalidPolicyError):
        build_templates(TopologyConfig(desired_replicas=0))


# ------------------- Frontend tests -------------------
def test_bucket_enforces_strict_access(template: Template):
    template.has_resource_properties(
        "AWS::S3::Bucket",
        {
            "PublicAccessBlockConfiguration": {
                "BlockPublicAcls": True,
                "BlockPublicPolicy": True,
                "IgnorePublicAcls": True,
                "RestrictPublicBuckets": True,
            },
            "BucketEncryption": {
                "ServerSideEncryptionConfiguration": [
                    {"ServerSideEncryptionByDefault": {"SSEAlgorithm": "AES256"}}
                ]
            },
        },
    )
    assert_s3_compliance(template)


def test_bucket_policy_admits_only_its_distribution(template: Template):
    distribution_id = find_logical_id(
        template, "AWS::CloudFront::Distribution", "FakeTwitterFrontendDistribution"
    )
    template.has_resource_properties(
        "AWS::S3::BucketPolicy",
        {
            "PolicyDocument": {
                "Statement": Match.array_with(
                    [
                        Match.object_like(
                            {
                                "Sid": "AllowCloudFrontServicePrincipalReadOnly",
                                "Effect": "Allow",
                                "Action": "s3:GetObject",
                                "Principal": {"Service": "cloudfront.amazonaws.com"},
                                "Condition": {
                                    "StringEquals": {
                                        "AWS:SourceArn": {
                                            "Fn::Join": [
                                                "",
                                                Match.array_with(
                                                    [{"Ref": distribution_id}]
                                                ),
                                            ]
                                        }
                                    }
                                },
                            }
                        )
                    ]
                )
            }
        },
    )


def test_distribution_reaches_bucket_through_origin_access_control(template: Template):
    oac_id = get_single_resource_id(
        find_resources_by_type(template, "AWS::CloudFront::OriginAccessControl")
    )
    template.has_resource_properties(
        "AWS::CloudFront::OriginAccessControl",
        {
            "OriginAccessControlConfig": Match.object_like(
                {
                    "OriginAccessControlOriginType": "s3",
                    "SigningBehavior": "always",
                    "SigningProtocol": "sigv4",
                }
            )
        },
    )
    template.has_resource_properties(
        "AWS::CloudFront::Distribution",
        {
            "DistributionConfig": Match.object_like(
                {
                    "Enabled": True,
                    "DefaultRootObject": "index.html",
                    "DefaultCacheBehavior": Match.object_like(
                        {"ViewerProtocolPolicy": "redirect-to-https"}
                    ),
                    "Origins": [
                        Match.object_like(
                            {"OriginAccessControlId": {"Fn::GetAtt": [oac_id, "Id"]}}
                        )
                    ],
                }
            )
        },
    )
    assert_cloudfront_compliance(template)


# ------------------- Database tests -------------------
def test_database_properties(template: Template):
    template.has_resource_properties(
        "AWS::RDS::DBInstance",
        {
            "Engine": "postgres",
            "EngineVersion": "15",
            "DBInstanceClass": "db.t3.micro",
            "DBName": constants.DB_NAME,
            "AllocatedStorage": "20",
            "MaxAllocatedStorage": 100,
            "PubliclyAccessible": False,
            "StorageEncrypted": True,
        },
    )


def test_database_is_isolated(template: Template):
    assert_database_isolation(template, DATABASE_BOUNDARY)
    assert_rds_compliance(template)


# ------------------- Security group tests -------------------
INGRESS_TEST_CASES = (
    IngressTestCase(
        id="service_to_database",
        destination=DATABASE_BOUNDARY,
        source=SERVICE_BOUNDARY,
        port=constants.DB_PORT,
    ),
    IngressTestCase(
        id="load_balancer_to_service",
        destination=SERVICE_BOUNDARY,
        source=LOAD_BALANCER_BOUNDARY,
        port=constants.CONTAINER_PORT,
    ),
)


@pytest.mark.parametrize("case", INGRESS_TEST_CASES, ids=lambda test: test.id)
def test_ingress_between_boundaries(template: Template, case: IngressTestCase):
    destination = find_logical_id(template, "AWS::EC2::SecurityGroup", case.destination)
    source = find_logical_id(template, "AWS::EC2::SecurityGroup", case.source)

    rules = find_resources_by_type(
        template,
        "AWS::EC2::SecurityGroupIngress",
        props={"Properties": {"GroupId": {"Fn::GetAtt": [destination, "GroupId"]}}},
    )
    assert len(rules) == 1
    props = next(iter(rules.values()))["Properties"]
    assert props["SourceSecurityGroupId"] == {"Fn::GetAtt": [source, "GroupId"]}
    assert (props["IpProtocol"], props["FromPort"], props["ToPort"]) == (
        "tcp",
        case.port,
        case.port,
    )


def test_only_load_balancer_is_public(template: Template):
    groups = find_resources_by_type(template, "AWS::EC2::SecurityGroup")
    open_groups = {
        logical_id
        for logical_id, group in groups.items()
        for rule in group["Properties"].get("SecurityGroupIngress", [])
        if rule.get("CidrIp") == "0.0.0.0/0"
    }

    assert len(open_groups) == 1
    assert next(iter(open_groups)).startswith(LOAD_BALANCER_BOUNDARY)
    template.has_resource_properties(
        "AWS::EC2::SecurityGroup",
        {
            "SecurityGroupIngress": [
                Match.object_like(
                    {
                        "CidrIp": "0.0.0.0/0",
                        "IpProtocol": "tcp",
                        "FromPort": constants.LISTENER_PORT,
                        "ToPort": constants.LISTENER_PORT,
                    }
                )
            ]
        },
    )


# ------------------- Backend tests -------------------
def test_task_definition_size(template: Template):
    template.has_resource_properties(
        "AWS::ECS::TaskDefinition",
        {
            "Cpu": "256",
            "Memory": "512",
            "NetworkMode": "awsvpc",
            "RequiresCompatibilities": ["FARGATE"],
        },
    )


def test_container_receives_secrets_by_reference(json_template: Mapping[str, Any]):
    task_definitions = [
        resource
        for resource in json_template["Resources"].values()
        if resource["Type"] == "AWS::ECS::TaskDefinition"
    ]
    container = task_definitions[0]["Properties"]["ContainerDefinitions"][0]

    assert container["PortMappings"] == [
        {"ContainerPort": constants.CONTAINER_PORT, "Protocol": "tcp"}
    ]
    secrets = {secret["Name"]: secret["ValueFrom"] for secret in container["Secrets"]}
    assert set(secrets) == {
        constants.ENV_DATASOURCE_USERNAME,
        constants.ENV_DATASOURCE_PASSWORD,
        constants.ENV_JWT_SECRET,
    }
    environment = {item["Name"]: item["Value"] for item in container["Environment"]}
    assert set(environment) == {constants.ENV_DATASOURCE_URL}
    assert "jdbc:postgresql://" in str(environment[constants.ENV_DATASOURCE_URL])


def test_container_logs_to_its_log_group(template: Template):
    template.has_resource_properties(
        "AWS::Logs::LogGroup",
        {
            "LogGroupName": "/ecs/fake-twitter-backend-task-dev",
            "RetentionInDays": 365,
        },
    )


def test_service_runs_in_private_subnets(template: Template):
    template.has_resource_properties(
        "AWS::ECS::Service",
        {
            "DesiredCount": constants.DESIRED_REPLICAS,
            "LaunchType": "FARGATE",
            "HealthCheckGracePeriodSeconds": constants.HEALTH_CHECK_GRACE_PERIOD_SECONDS,
            "NetworkConfiguration": {
                "AwsvpcConfiguration": Match.object_like({"AssignPublicIp": "DISABLED"})
            },
            "DeploymentConfiguration": Match.object_like(
                {"DeploymentCircuitBreaker": {"Enable": True, "Rollback": True}}
            ),
        },
    )
    assert_ecs_compliance(template)


def test_target_group_health_check(template: Template):
    template.has_resource_properties(
        "AWS::ElasticLoadBalancingV2::TargetGroup",
        {
            "Port": constants.CONTAINER_PORT,
            "Protocol": "HTTP",
            "TargetType": "ip",
            "HealthCheckEnabled": True,
            "HealthCheckPath": "/health",
            "HealthCheckIntervalSeconds": 30,
            "HealthCheckTimeoutSeconds": 5,
            "HealthyThresholdCount": 2,
            "UnhealthyThresholdCount": 3,
            "Matcher": {"HttpCode": "200"},
        },
    )


def test_load_balancer_is_internet_facing(template: Template):
    template.has_resource_properties(
        "AWS::ElasticLoadBalancingV2::LoadBalancer",
        {"Scheme": "internet-facing", "Type": "application"},
    )
    template.has_resource_properties(
        "AWS::ElasticLoadBalancingV2::Listener",
        {"Port": constants.LISTENER_PORT, "Protocol": "HTTP"},
    )


# ------------------- Output tests -------------------
def test_outputs_expose_both_endpoints(template: Template):
    distribution_id = find_logical_id(
        template, "AWS::CloudFront::Distribution", "FakeTwitterFrontendDistribution"
    )
    balancer_id = find_logical_id(
        template, "AWS::ElasticLoadBalancingV2::LoadBalancer", "FakeTwitterBackendLoadBalancer"
    )

    template.has_output(
        constants.OUTPUT_FRONTEND_URL,
        {"Value": {"Fn::GetAtt": [distribution_id, "DomainName"]}},
    )
    template.has_output(
        constants.OUTPUT_BACKEND_URL,
        {"Value": {"Fn::GetAtt": [balancer_id, "DNSName"]}},
    )


@pytest.mark.parametrize(
    "health_check",
    [
        {"healthyThreshold": 1},
        {"unhealthyThreshold": 11},
        {"interval": 400, "timeout": 5},
        {"interval": 30, "timeout": 1},
    ],
    ids=["healthy-threshold", "unhealthy-threshold", "interval", "timeout"],
)
def test_health_check_outside_target_group_limits_is_refused(health_check):
    with pytest.raises(InvalidPolicyError, match="target groups accept"):
        build_templates(TopologyConfig(health_check=health_check))
