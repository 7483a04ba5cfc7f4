"""Errors raised while declaring the topology graph.

Every error is raised synchronously from a declaration step and aborts the
whole declaration pass. Nothing here is retried; retries belong to the engine
that realizes the graph.
"""


class TopologyError(Exception):
    """Base class for all declaration failures."""


class UnresolvedReferenceError(TopologyError):
    """A dependency or reference names an entity that was not declared yet."""

    def __init__(self, entity: str, reference: str):
        self.entity = entity
        self.reference = reference
        super().__init__(
            f"'{entity}' references '{reference}' which has not been declared"
        )


class DuplicateDeclarationError(TopologyError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"'{name}' is already declared in this graph")


class CredentialNotReadyError(TopologyError):
    """A secret was bound before the owning resource generated the credential."""

    def __init__(self, credential: str):
        self.credential = credential
        super().__init__(
            f"credential '{credential}' has not been generated by an owning resource"
        )


class InvalidPolicyError(TopologyError, ValueError):
    """A declared policy violates one of the topology invariants."""


class UnrealizedResourceError(TopologyError):
    def __init__(self, resource: str, attribute: str):
        self.resource = resource
        self.attribute = attribute
        super().__init__(
            f"'{resource}' has no realized attribute '{attribute}'"
        )


class DeclarationAbortedError(TopologyError):
    """The builder saw a failed declaration step and will not hand off a graph."""
