from aws_cdk import Stack, aws_ec2 as ec2
from constructs import Construct

from common import constants
from topology.errors import InvalidPolicyError
from topology.models import NetworkSegment, SubnetKind

SUBNET_TYPES = {
    SubnetKind.PUBLIC: ec2.SubnetType.PUBLIC,
    # Egress through NAT only, no route from the internet gateway.
    SubnetKind.PRIVATE: ec2.SubnetType.PRIVATE_WITH_EGRESS,
}


class NetworkingStack(Stack):

    def __init__(
        self, scope: Construct, construct_id: str, network: NetworkSegment, **kwargs
    ) -> None:
        super().__init__(scope, construct_id, **kwargs)
        self.network = network
        self.check_zones()
        self.vpc = self.create_vpc()

    def check_zones(self) -> None:
        # Environment-agnostic stacks resolve only two zones.
        available = len(self.availability_zones)
        if self.network.zones > available:
            raise InvalidPolicyError(
                f"network '{self.network.name}' spans {self.network.zones} zones but "
                f"only {available} availability zones are known for this stack; "
                "set an explicit account and region"
            )

    def create_vpc(self) -> ec2.Vpc:
        return ec2.Vpc(
            self,
            "FakeTwitterVPC",
            vpc_name=constants.VPC_NAME,
            max_azs=self.network.zones,
            nat_gateways=self.network.nat_gateways,
            ip_addresses=ec2.IpAddresses.cidr(self.network.cidr),
            subnet_configuration=[
                ec2.SubnetConfiguration(
                    name=tier.name,
                    subnet_type=SUBNET_TYPES[tier.kind],
                    cidr_mask=tier.cidr_mask,
                )
                for tier in self.network.tiers
            ],
        )
