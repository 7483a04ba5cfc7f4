from typing import Optional

from aws_cdk import App, Environment

from common.config import TopologyConfig
from fake_twitter.fake_twitter_stack import FakeTwitterStack
from networking.networking_stack import NetworkingStack
from topology.blueprint import declare_three_tier_topology


def build_stacks(
    app: App,
    config: Optional[TopologyConfig] = None,
    env: Optional[Environment] = None,
) -> tuple[NetworkingStack, FakeTwitterStack]:
    """Declare the topology once and realize it across both stacks.

    Declaration errors surface here, before any construct is created.
    """
    config = config or TopologyConfig.from_context(app.node)
    graph = declare_three_tier_topology(config)

    networking_stack = NetworkingStack(
        app, "FakeTwitterNetworkingStack", network=graph.network, env=env
    )
    app_stack = FakeTwitterStack(
        app,
        "FakeTwitterStack",
        graph=graph,
        vpc=networking_stack.vpc,
        deployment_env=config.env,
        env=env,
    )
    app_stack.add_dependency(networking_stack)
    return networking_stack, app_stack
