"""
Interface control via netlink.

Reads and sets the MTU of a live interface with pyroute2, and auto-detects
the WireGuard interface when none is configured.
"""

import logging
from typing import Optional, Protocol

from pyroute2 import IPRoute
from pyroute2.netlink.exceptions import NetlinkError
from prometheus_client import Gauge

from .exceptions import ValidationError

# Configure logging
logger = logging.getLogger(__name__)

# Prometheus metrics
INTERFACE_MTU = Gauge('wg_mtu_interface_mtu', 'Interface MTU size', ['interface'])


class InterfaceControl(Protocol):
    """Collaborator that reads and mutates a live interface MTU."""

    def get_mtu(self, interface: str) -> int:
        ...

    def set_mtu(self, interface: str, value: int) -> bool:
        ...


class IPRouteInterface:
    """InterfaceControl backed by a pyroute2 IPRoute socket."""

    def __init__(self, ipr: Optional[IPRoute] = None):
        self.ip = ipr or IPRoute()

    def _index(self, interface: str) -> int:
        indices = self.ip.link_lookup(ifname=interface)
        if not indices:
            raise ValidationError("Unknown interface", interface=interface)
        return indices[0]

    def get_mtu(self, interface: str) -> int:
        """
        Get the current MTU of an interface.

        Raises:
            ValidationError: if the interface does not exist
        """
        idx = self._index(interface)
        links = self.ip.get_links(idx)
        if not links:
            raise ValidationError("Interface has no link information", interface=interface)
        mtu = links[0].get_attr('IFLA_MTU')
        INTERFACE_MTU.labels(interface=interface).set(mtu)
        return int(mtu)

    def set_mtu(self, interface: str, value: int) -> bool:
        """
        Set the MTU of an interface.

        Returns:
            True on success, False if the kernel rejected the change
        """
        try:
            idx = self._index(interface)
            self.ip.link('set', index=idx, mtu=int(value))
        except (NetlinkError, OSError, ValidationError) as e:
            logger.error(f"Failed to set MTU {value} on interface {interface}: {e}")
            return False
        INTERFACE_MTU.labels(interface=interface).set(value)
        logger.debug(f"Interface {interface} MTU set to {value}")
        return True

    def is_wireguard(self, interface: str) -> bool:
        try:
            idx = self._index(interface)
        except ValidationError:
            return False
        links = self.ip.get_links(idx)
        return bool(links) and _link_kind(links[0]) == 'wireguard'

    def close(self) -> None:
        self.ip.close()


def _link_kind(link) -> Optional[str]:
    linkinfo = link.get_attr('IFLA_LINKINFO')
    if linkinfo is None:
        return None
    return linkinfo.get_attr('IFLA_INFO_KIND')


def detect_wireguard_interface(ipr: Optional[IPRoute] = None) -> str:
    """
    Return the name of the first WireGuard interface.

    Raises:
        ValidationError: if no WireGuard interface exists
    """
    ip = ipr or IPRoute()
    try:
        for link in ip.get_links():
            if _link_kind(link) == 'wireguard':
                name = link.get_attr('IFLA_IFNAME')
                logger.info(f"Auto-detected WireGuard interface: {name}")
                return name
    finally:
        if ipr is None:
            ip.close()
    raise ValidationError("No WireGuard interface detected")
