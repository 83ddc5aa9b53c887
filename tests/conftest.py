"""Shared fixtures: a scripted in-memory host standing in for the OS."""
from dataclasses import replace
from typing import Optional

import pytest

from gadget_link.backends.base import HostBackend
from gadget_link.reconcile.errors import ActionFailed
from gadget_link.reconcile.schema import (
    Action,
    ActionKind,
    AdapterState,
    IPMethod,
    LinkStatus,
    RouteEntry,
    ServiceState,
    SharingRole,
)
from gadget_link.utils.connection import CommandResult, CommandRunner

ICS_GATEWAY = "192.168.137.1"


class FakeHost(HostBackend):
    """In-memory host that applies actions to its own adapter list.

    Knobs:
        start_fails: services that refuse to start
        fail_kinds: action kinds that always fail
        sticky_link_local: adapters that keep a 169.254.x.x address no matter what
        create_resolves: whether created connections show up in the inventory
        dhcp_leases: address an adapter picks up when it is (re)activated
    """

    type_name = "fake"

    def __init__(
        self,
        adapters: list[AdapterState],
        services: Optional[dict[str, bool]] = None,
        host_type: str = "windows-ics",
    ):
        super().__init__(runner=None, settle_seconds=0)
        self.type_name = host_type
        self.adapters = list(adapters)
        self.services = {
            name: ServiceState(name, running, "active" if running else "inactive")
            for name, running in (services or {}).items()
        }
        self.start_fails: set[str] = set()
        self.fail_kinds: set[ActionKind] = set()
        self.sticky_link_local: set[str] = set()
        self.create_resolves = True
        self.dhcp_leases: dict[str, str] = {}
        self.executed: list[Action] = []
        self.restarts: list[str] = []
        self.inventory_reads = 0
        self.settles = 0

    @property
    def host(self) -> str:
        return "fakehost"

    def close(self) -> None:
        pass

    def settle(self) -> None:
        self.settles += 1

    # Queries

    def list_adapters(self) -> list[AdapterState]:
        self.inventory_reads += 1
        return list(self.adapters)

    def get_service(self, name: str) -> ServiceState:
        return self.services.get(name, ServiceState(name, False, "not-found"))

    def list_routes(self) -> list[RouteEntry]:
        routes = []
        for a in self.adapters:
            if not a.ipv4_address or a.route_metric is None:
                continue
            if a.uuid is not None and not a.active:
                continue
            gateway = a.ipv4_address.rsplit(".", 1)[0] + ".1"
            routes.append(RouteEntry("0.0.0.0/0", a.interface or a.name, a.route_metric, gateway))
            if a.prefix_length:
                routes.append(RouteEntry(f"{a.ipv4_address}/{a.prefix_length}",
                                         a.interface or a.name, a.route_metric))
        return routes

    # Actions

    def commands_for(self, action: Action) -> list[list[str]]:
        return [["fake", action.kind.value, action.adapter]]

    def execute(self, action: Action) -> str:
        self.executed.append(action)
        if action.kind in self.fail_kinds:
            raise ActionFailed(action.kind, "scripted failure", action.adapter)

        kind = action.kind
        params = action.params
        if kind == ActionKind.START_SERVICE:
            if action.adapter in self.start_fails:
                raise ActionFailed(kind, "service refused to start", action.adapter)
            self.services[action.adapter] = ServiceState(action.adapter, True, "active")
        elif kind == ActionKind.SET_MANAGED:
            self._update(lambda a: a.interface == params["interface"], managed=True)
        elif kind == ActionKind.CREATE_CONNECTION:
            if self.create_resolves:
                self.adapters.append(AdapterState(
                    name=action.adapter,
                    uuid=f"{action.adapter}-created",
                    interface=params.get("interface"),
                    kind=params["type"],
                ))
        elif kind == ActionKind.DELETE_CONNECTION:
            self.adapters = [a for a in self.adapters if a.uuid != action.handle]
        elif kind == ActionKind.BIND_INTERFACE:
            self._update_target(action, interface=params["interface"])
        elif kind == ActionKind.DISABLE_SHARING:
            self._update(lambda a: a.name == action.adapter, sharing=SharingRole.NONE)
        elif kind == ActionKind.ENABLE_SHARING:
            self._update(lambda a: a.name == params["public"], sharing=SharingRole.PUBLIC)
            self._update(lambda a: a.name == params["private"], sharing=SharingRole.PRIVATE)
            self._assign_ics_address(params["private"])
        elif kind == ActionKind.SET_IP_METHOD:
            changes = {}
            for key in ("ipv4_method", "ipv6_method"):
                if key in params:
                    changes[key] = IPMethod(params[key])
            if "never_default" in params:
                changes["never_default"] = params["never_default"]
            self._update_target(action, **changes)
        elif kind == ActionKind.SET_AUTOCONNECT:
            self._update_target(action, **params)
        elif kind == ActionKind.SET_METRIC:
            self._update_target(action, route_metric=params["metric"])
        elif kind == ActionKind.RESTART_ADAPTER:
            self.restarts.append(action.adapter)
            self._update_target(action, active=True, link=LinkStatus.UP)
            if any(a.name == action.adapter and a.sharing == SharingRole.PRIVATE for a in self.adapters):
                self._assign_ics_address(action.adapter)
            if action.adapter in self.dhcp_leases:
                self._update_target(action, ipv4_address=self.dhcp_leases[action.adapter], prefix_length=24)
        return ""

    def _assign_ics_address(self, name: str) -> None:
        if name in self.sticky_link_local:
            self._update(lambda a: a.name == name, ipv4_address="169.254.20.7", prefix_length=16)
        else:
            self._update(lambda a: a.name == name, ipv4_address=ICS_GATEWAY, prefix_length=24)

    def _update_target(self, action: Action, **changes) -> None:
        if action.handle:
            self._update(lambda a: a.uuid == action.handle, **changes)
        else:
            self._update(lambda a: a.name == action.adapter, **changes)

    def _update(self, match, **changes) -> None:
        self.adapters = [replace(a, **changes) if match(a) else a for a in self.adapters]

    def mutations(self) -> list[ActionKind]:
        return [a.kind for a in self.executed]


class ScriptedRunner(CommandRunner):
    """Command runner that answers from canned output and records calls.

    ``responses`` maps an argv tuple to a CommandResult or output string;
    ``handler`` gets the argv for anything not in ``responses``.
    """

    def __init__(self, responses=None, handler=None, sudo: bool = False):
        super().__init__(sudo=sudo)
        self.responses = dict(responses or {})
        self.handler = handler
        self.calls: list[tuple[list[str], bool]] = []

    @property
    def host(self) -> str:
        return "scripted"

    def run(self, argv, privileged: bool = False) -> CommandResult:
        argv = list(argv)
        self.calls.append((argv, privileged))
        response = self.responses.get(tuple(argv))
        if response is None and self.handler is not None:
            response = self.handler(argv)
        if response is None:
            response = ""
        if isinstance(response, str):
            return CommandResult(success=True, output=response, host=self.host,
                                 command=" ".join(argv))
        return response

    def privileged_calls(self) -> list[list[str]]:
        return [argv for argv, privileged in self.calls if privileged]


def windows_adapter(name: str, address: Optional[str] = None, **kwargs) -> AdapterState:
    defaults = dict(
        link=LinkStatus.UP,
        ipv4_address=address,
        prefix_length=24 if address else None,
        interface=name,
        ipv4_method=IPMethod.AUTO,
    )
    defaults.update(kwargs)
    return AdapterState(name=name, **defaults)


def nm_profile(name: str, uuid: str, interface: Optional[str] = None, **kwargs) -> AdapterState:
    defaults = dict(
        link=LinkStatus.UP,
        interface=interface,
        kind="ethernet",
        active=True,
        ipv4_method=IPMethod.AUTO,
        ipv6_method=IPMethod.AUTO,
        never_default=False,
        autoconnect=True,
        autoconnect_priority=0,
    )
    defaults.update(kwargs)
    return AdapterState(name=name, uuid=uuid, **defaults)


@pytest.fixture
def windows_host():
    """Laptop with Wi-Fi uplink, the Pi's RNDIS adapter and a third NIC."""
    return FakeHost(
        adapters=[
            windows_adapter("Wi-Fi", "10.0.0.23", route_metric=35),
            windows_adapter("Ethernet 2", "169.254.33.9", prefix_length=16, route_metric=25),
            windows_adapter("Ethernet", "192.168.1.50", route_metric=25),
        ],
        services={"SharedAccess": True},
        host_type="windows-ics",
    )


@pytest.fixture
def pi_host():
    """Pi Zero with Wi-Fi profile and a bare, unmanaged usb0 gadget device."""
    host = FakeHost(
        adapters=[
            nm_profile("preconfigured", "wifi-uuid", "wlan0", kind="wifi",
                       ipv4_address="10.0.0.42", prefix_length=24, route_metric=600,
                       ipv6_method=IPMethod.AUTO),
            AdapterState(name="usb0", interface="usb0", kind="ethernet",
                         link=LinkStatus.UP, managed=False),
        ],
        services={"NetworkManager": True},
        host_type="networkmanager",
    )
    # Windows ICS hands out leases from 192.168.137.0/24
    host.dhcp_leases["usb0"] = "192.168.137.42"
    return host
