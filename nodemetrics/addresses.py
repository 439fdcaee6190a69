"""Choosing the address used to connect to a node."""

from __future__ import annotations

from collections.abc import Iterable

from nodemetrics.types import Node, NodeAddressType

# Prefer overrides to others, internal to external, and DNS to IPs.
DEFAULT_ADDRESS_TYPE_PRIORITY: tuple[NodeAddressType, ...] = (
    NodeAddressType.HOSTNAME,
    NodeAddressType.INTERNAL_DNS,
    NodeAddressType.INTERNAL_IP,
    NodeAddressType.EXTERNAL_DNS,
    NodeAddressType.EXTERNAL_IP,
)


class PriorityNodeAddressResolver:
    """Resolve node addresses by a priority list of address types.

    Within one type, addresses are taken in the order the node reports them.
    """

    def __init__(
        self, type_priority: Iterable[NodeAddressType] = DEFAULT_ADDRESS_TYPE_PRIORITY
    ) -> None:
        self.type_priority = tuple(type_priority)

    def node_address(self, node: Node) -> str:
        """Return the preferred address; raises LookupError if none matches."""
        for addr_type in self.type_priority:
            for addr in node.addresses:
                if addr.type == addr_type:
                    return addr.address
        names = [t.value for t in self.type_priority]
        raise LookupError(f"no address matched types {names}")