from typing import Any, Mapping

from attrs import define, field
from attrs.validators import instance_of

import common.constants as constants
from topology.errors import InvalidPolicyError


@define(slots=True, frozen=True, kw_only=True)
class HealthCheckPolicy:
    """Health check declared on the Service to LoadBalancer edge.

    The load balancer probes ``path`` every ``interval`` seconds and gives up
    on a probe after ``timeout`` seconds. A target leaves rotation after
    ``unhealthy_threshold`` consecutive failures and comes back after
    ``healthy_threshold`` consecutive successes. Removing targets is the load
    balancer's job; this object only carries the policy.
    """

    path: str = field(default=constants.HEALTH_CHECK_PATH, validator=instance_of(str))
    healthy_http_codes: str = field(
        default=constants.HEALTH_CHECK_HTTP_CODES, validator=instance_of(str)
    )
    interval: int = field(default=constants.HEALTH_CHECK_INTERVAL_SECONDS, converter=int)
    timeout: int = field(default=constants.HEALTH_CHECK_TIMEOUT_SECONDS, converter=int)
    healthy_threshold: int = field(default=constants.HEALTHY_THRESHOLD, converter=int)
    unhealthy_threshold: int = field(
        default=constants.UNHEALTHY_THRESHOLD, converter=int
    )

    def __attrs_post_init__(self) -> None:
        if not self.path.startswith("/"):
            raise InvalidPolicyError(
                f"health check path must be absolute, got '{self.path}'"
            )
        if self.timeout < 1:
            raise InvalidPolicyError("health check timeout must be at least 1 second")
        # A probe must not re-fire before the previous one could time out.
        if self.interval <= self.timeout:
            raise InvalidPolicyError(
                f"health check interval ({self.interval}s) must be greater than "
                f"its timeout ({self.timeout}s)"
            )
        if self.healthy_threshold < 1:
            raise InvalidPolicyError("healthy threshold must be at least 1")
        if self.unhealthy_threshold < 1:
            raise InvalidPolicyError("unhealthy threshold must be at least 1")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "HealthCheckPolicy":
        """Build a policy from the ``healthCheck`` context block.

        Missing keys keep their defaults.
        """
        keys = {
            "path": "path",
            "healthyHttpCodes": "healthy_http_codes",
            "interval": "interval",
            "timeout": "timeout",
            "healthyThreshold": "healthy_threshold",
            "unhealthyThreshold": "unhealthy_threshold",
        }
        unknown = set(data) - set(keys)
        if unknown:
            raise InvalidPolicyError(
                f"unknown health check settings: {', '.join(sorted(unknown))}"
            )
        return cls(**{keys[key]: value for key, value in data.items()})
