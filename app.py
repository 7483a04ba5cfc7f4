#!/usr/bin/env python3
"""AWS CDK entrypoint for provisioning the Fake Twitter infrastructure.

The topology is declared once from the CDK context (see ``cdk.json``) and
realized as a networking stack and an application stack sharing a single
deployment environment sourced from the CDK CLI defaults. Override the
environment variables to target a different account or region.
"""
import os

import aws_cdk as cdk
from aws_cdk import Environment

from fake_twitter.assembly import build_stacks

app = cdk.App()

env = Environment(
    account=os.getenv("CDK_DEFAULT_ACCOUNT"),
    region=os.getenv("CDK_DEFAULT_REGION"),
)

build_stacks(app, env=env)

app.synth()
