"""Unit tests for the pyroute2 interface control, against a fake netlink socket."""

import pytest
from pyroute2.netlink.exceptions import NetlinkError

from mtu_tuner.exceptions import ValidationError
from mtu_tuner.interface import IPRouteInterface, detect_wireguard_interface


class FakeAttrs:
    def __init__(self, **attrs):
        self.attrs = attrs

    def get_attr(self, name):
        return self.attrs.get(name)


def make_link(name, mtu, kind=None):
    linkinfo = FakeAttrs(IFLA_INFO_KIND=kind) if kind else None
    return FakeAttrs(IFLA_IFNAME=name, IFLA_MTU=mtu, IFLA_LINKINFO=linkinfo)


class FakeIPRoute:
    """Just enough of pyroute2.IPRoute for MTU reads and writes."""

    def __init__(self, links, reject_mtu=None):
        self.links = links
        self.reject_mtu = reject_mtu
        self.closed = False

    def link_lookup(self, ifname):
        return [i for i, link in enumerate(self.links, 1) if link.get_attr('IFLA_IFNAME') == ifname]

    def get_links(self, *indices):
        if not indices:
            return list(self.links)
        return [self.links[i - 1] for i in indices]

    def link(self, command, index, mtu):
        if mtu == self.reject_mtu:
            raise NetlinkError(22, "Invalid argument")
        self.links[index - 1].attrs['IFLA_MTU'] = mtu

    def close(self):
        self.closed = True


@pytest.fixture
def ipr():
    return FakeIPRoute([make_link("lo", 65536), make_link("eth0", 1500),
                        make_link("wg0", 1420, kind="wireguard")])


class TestIPRouteInterface:
    """MTU reads and writes through netlink."""

    def test_get_mtu(self, ipr):
        assert IPRouteInterface(ipr).get_mtu("wg0") == 1420

    def test_unknown_interface(self, ipr):
        with pytest.raises(ValidationError) as exc_info:
            IPRouteInterface(ipr).get_mtu("wg9")
        assert exc_info.value.interface == "wg9"

    def test_set_mtu(self, ipr):
        control = IPRouteInterface(ipr)
        assert control.set_mtu("wg0", 1380)
        assert control.get_mtu("wg0") == 1380

    def test_rejected_set_returns_false(self, ipr):
        ipr.reject_mtu = 1280
        control = IPRouteInterface(ipr)
        assert not control.set_mtu("wg0", 1280)
        assert control.get_mtu("wg0") == 1420

    def test_set_on_unknown_interface_returns_false(self, ipr):
        assert not IPRouteInterface(ipr).set_mtu("wg9", 1400)

    def test_is_wireguard(self, ipr):
        control = IPRouteInterface(ipr)
        assert control.is_wireguard("wg0")
        assert not control.is_wireguard("eth0")
        assert not control.is_wireguard("wg9")

    def test_close(self, ipr):
        IPRouteInterface(ipr).close()
        assert ipr.closed


class TestDetection:
    def test_detects_first_wireguard_link(self, ipr):
        assert detect_wireguard_interface(ipr) == "wg0"
        assert not ipr.closed

    def test_no_wireguard_link(self):
        with pytest.raises(ValidationError):
            detect_wireguard_interface(FakeIPRoute([make_link("eth0", 1500)]))
