import os
from typing import Optional, Union

from aws_lambda_powertools import Logger

import common.constants as constants
from topology.errors import CredentialNotReadyError, InvalidPolicyError
from topology.graph import GraphBuilder
from topology.models import Credential, Handle, SecretRef, TaskSpec

logger = Logger(
    service=constants.TOPOLOGY_LOGGER_SERVICE,
    level=os.getenv(constants.LOG_LEVEL_ENV_VAR, "INFO").upper(),
)

Ref = Union[Handle, str]


def bind_secret(
    builder: GraphBuilder,
    task_spec: Ref,
    credential: Ref,
    field: Optional[str] = None,
    env_name: Optional[str] = None,
) -> SecretRef:
    """Inject a credential field into a task spec as a secret reference.

    Only the reference lands in the graph; the engine resolves the value when
    it starts the container. Database credentials expose ``username`` and
    ``password`` and must already be generated by their owning database.
    Standalone generated secrets are bound whole (``field=None``). Any
    failure aborts the builder.
    """
    with builder.step():
        task = builder.get(task_spec)
        secret = builder.get(credential)
        if not isinstance(task, TaskSpec):
            raise InvalidPolicyError(f"'{task.name}' is not a task spec")
        if not isinstance(secret, Credential):
            raise InvalidPolicyError(f"'{secret.name}' is not a credential")
        if not secret.ready:
            raise CredentialNotReadyError(secret.name)
        if secret.fields and field not in secret.fields:
            raise InvalidPolicyError(
                f"credential '{secret.name}' has no field {field!r}; "
                f"expected one of {secret.fields}"
            )
        if not secret.fields and field is not None:
            raise InvalidPolicyError(f"credential '{secret.name}' is bound whole, not by field")

        ref = SecretRef(
            credential=secret.name,
            field=field,
            env_name=env_name or _default_env_name(secret, field),
        )
        # The task also waits on whoever generates the credential.
        deps = [secret.owner] if secret.owner else []
        builder.evolve(task.name, deps=deps, secrets=task.secrets + (ref,))
        logger.info(
            "Bound secret",
            extra={"task_spec": task.name, "credential": secret.name, "env_name": ref.env_name},
        )
        return ref


def _default_env_name(secret: Credential, field: Optional[str]) -> str:
    base = secret.name.replace("-", "_").upper()
    return f"{base}_{field.upper()}" if field else base
