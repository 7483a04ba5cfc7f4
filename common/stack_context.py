import re
from typing import Optional

from attrs import define, field
from aws_cdk import RemovalPolicy, Stack, aws_logs as logs

import common.constants as constants


def to_pascal_case(value: str) -> str:
    return "".join(part[:1].upper() + part[1:] for part in re.split(r"[-_\s]+", value) if part)


@define(slots=True, frozen=True)
class StackContext:
    """Naming and ARN helpers bound to one stack and deployment environment."""

    scope: Stack
    env: str = field(
        default=constants.DEFAULT_ENV,
        metadata={"description": "Deployment environment (dev, staging, prod)"},
    )
    service: str = field(default=constants.SERVICE_NAME, init=False)

    @property
    def aws_account_id(self) -> str:
        return Stack.of(self.scope).account

    @property
    def aws_region(self) -> str:
        return Stack.of(self.scope).region

    # ---------- naming ----------
    def build_resource_name(self, resource_type: str, action: Optional[str] = None) -> str:
        """Physical name, e.g. ``fake-twitter-backend-cluster-dev``.

        ``action`` is appended after the type:
        ``fake-twitter-frontend-distribution-oac-dev``.
        """
        parts = [self.service, resource_type, action, self.env]
        return "-".join(part for part in parts if part).lower()

    def build_resource_id(self, resource_type: str, action: Optional[str] = None) -> str:
        """Construct id, e.g. ``FakeTwitterBackendCluster`` or
        ``FakeTwitterFrontendDistributionOAC``."""
        parts = [self.service, resource_type, action]
        return "".join(to_pascal_case(part) for part in parts if part)

    # ---------- arns ----------
    def build_distribution_arn(self, distribution_id: str) -> str:
        return f"arn:aws:cloudfront::{self.aws_account_id}:distribution/{distribution_id}"

    # ---------- logging ----------
    def build_log_group(self, task_name: str) -> logs.LogGroup:
        """Log group for an ECS task's ``awslogs`` driver, kept for a year."""
        return logs.LogGroup(
            self.scope,
            self.build_resource_id(task_name, action="LogGroup"),
            log_group_name=f"/ecs/{self.build_resource_name(task_name)}",
            removal_policy=RemovalPolicy.DESTROY,
            retention=logs.RetentionDays.ONE_YEAR,
        )
