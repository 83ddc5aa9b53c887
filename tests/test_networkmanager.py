"""Tests for the NetworkManager backend against captured nmcli/ip output."""
import json

import pytest

from gadget_link.backends import NetworkManagerBackend
from gadget_link.backends.networkmanager import split_terse
from gadget_link.reconcile import (
    Action,
    ActionFailed,
    ActionKind,
    InventoryError,
    IPMethod,
    LinkStatus,
    OutcomeStatus,
    Reconciler,
    ServiceUnavailable,
    resolve_route,
)
from gadget_link.utils.connection import COMMAND_NOT_FOUND, CommandResult

from conftest import ScriptedRunner

DEVICE_STATUS = ("nmcli", "-t", "-f", "DEVICE,TYPE,STATE", "device", "status")
ADDRESSES = ("ip", "-j", "-4", "addr", "show")
CONNECTIONS = ("nmcli", "-t", "-f", "NAME,UUID,TYPE,DEVICE,ACTIVE", "connection", "show")
ROUTES = ("ip", "-j", "-4", "route", "show")


def _settings_argv(uuid):
    return (
        "nmcli", "-t", "-f",
        "connection.interface-name,connection.autoconnect,connection.autoconnect-priority,"
        "ipv4.method,ipv4.route-metric,ipv4.never-default,ipv6.method",
        "connection", "show", "uuid", uuid,
    )


PI_RESPONSES = {
    DEVICE_STATUS: "wlan0:wifi:connected\nusb0:ethernet:unmanaged\nlo:loopback:unmanaged\n",
    ADDRESSES: json.dumps([
        {"ifname": "lo", "addr_info": [{"family": "inet", "local": "127.0.0.1", "prefixlen": 8}]},
        {"ifname": "wlan0", "addr_info": [{"family": "inet", "local": "10.0.0.42", "prefixlen": 24}]},
    ]),
    CONNECTIONS: "preconfigured:7c1a-wifi:802-11-wireless:wlan0:yes\nlo:11aa-lo:loopback:lo:yes\n",
    _settings_argv("7c1a-wifi"): (
        "connection.interface-name:\n"
        "connection.autoconnect:yes\n"
        "connection.autoconnect-priority:0\n"
        "ipv4.method:auto\n"
        "ipv4.route-metric:-1\n"
        "ipv4.never-default:no\n"
        "ipv6.method:auto\n"
    ),
}


@pytest.fixture
def runner():
    return ScriptedRunner(PI_RESPONSES)


@pytest.fixture
def backend(runner):
    return NetworkManagerBackend(runner, settle_seconds=0)


class TestSplitTerse:
    """Tests for nmcli terse output splitting."""

    def test_plain_fields(self):
        assert split_terse("usb0:ethernet:connected") == ["usb0", "ethernet", "connected"]

    def test_escaped_colon(self):
        assert split_terse(r"Cafe\:Guest:abcd:wifi") == ["Cafe:Guest", "abcd", "wifi"]

    def test_empty_trailing_field(self):
        assert split_terse("usb0:abcd:ethernet::no") == ["usb0", "abcd", "ethernet", "", "no"]


class TestNetworkManagerInventory:
    """Tests for list_adapters and friends."""

    def test_profile_and_bare_device(self, backend):
        """Wi-Fi profile plus bare unmanaged usb0; loopback ignored."""
        adapters = backend.list_adapters()

        assert [a.name for a in adapters] == ["preconfigured", "usb0"]
        wifi, usb0 = adapters

        assert wifi.uuid == "7c1a-wifi"
        assert wifi.kind == "wifi"
        assert wifi.interface == "wlan0"
        assert wifi.active
        assert wifi.link == LinkStatus.UP
        assert wifi.ipv4_address == "10.0.0.42"
        assert wifi.prefix_length == 24
        assert wifi.route_metric is None
        assert wifi.ipv4_method == IPMethod.AUTO
        assert wifi.never_default is False
        assert wifi.autoconnect is True

        assert usb0.uuid is None
        assert not usb0.managed
        assert usb0.ipv4_address is None

    def test_missing_nmcli(self):
        runner = ScriptedRunner({
            DEVICE_STATUS: CommandResult(success=False, error="command not found: nmcli",
                                         returncode=COMMAND_NOT_FOUND),
        })

        with pytest.raises(InventoryError, match="nmcli"):
            NetworkManagerBackend(runner).list_adapters()

    def test_malformed_connection_line(self):
        responses = dict(PI_RESPONSES)
        responses[CONNECTIONS] = "garbage\n"

        with pytest.raises(InventoryError, match="Malformed"):
            NetworkManagerBackend(ScriptedRunner(responses)).list_adapters()

    def test_service_state(self, runner, backend):
        runner.responses[("systemctl", "is-active", "NetworkManager")] = "active"
        runner.responses[("systemctl", "is-active", "dnsmasq")] = CommandResult(
            success=False, output="inactive", returncode=3
        )

        assert backend.get_service("NetworkManager").running
        stopped = backend.get_service("dnsmasq")
        assert not stopped.running
        assert stopped.detail == "inactive"

    def test_routes_prefer_usb0(self, runner, backend):
        """Default routes with metrics 100/600 resolve to usb0."""
        runner.responses[ROUTES] = json.dumps([
            {"dst": "default", "gateway": "10.0.0.1", "dev": "wlan0", "metric": 600},
            {"dst": "default", "gateway": "192.168.137.1", "dev": "usb0", "metric": 100},
            {"dst": "10.0.0.0/24", "dev": "wlan0", "metric": 600},
        ])

        routes = backend.list_routes()

        assert routes[0].destination == "0.0.0.0/0"
        assert resolve_route(routes, "1.1.1.1").adapter == "usb0"
        assert resolve_route(routes, "10.0.0.7").adapter == "wlan0"


class TestNetworkManagerCommands:
    """Tests for action rendering and execution."""

    def test_set_metric_uses_uuid(self, backend):
        action = Action(ActionKind.SET_METRIC, "usb0", {"metric": 100}, handle="abcd")

        assert backend.commands_for(action) == [
            ["nmcli", "connection", "modify", "uuid", "abcd", "ipv4.route-metric", "100"]
        ]

    def test_set_metric_by_name_without_handle(self, backend):
        action = Action(ActionKind.SET_METRIC, "preconfigured", {"metric": 600})

        assert backend.commands_for(action)[0][3:5] == ["id", "preconfigured"]

    def test_create_connection(self, backend):
        action = Action(ActionKind.CREATE_CONNECTION, "usb0", {"type": "ethernet", "interface": "usb0"})

        assert backend.commands_for(action) == [
            ["nmcli", "connection", "add", "type", "ethernet", "ifname", "usb0", "con-name", "usb0"]
        ]

    def test_ip_settings(self, backend):
        action = Action(
            ActionKind.SET_IP_METHOD, "usb0",
            {"ipv4_method": "auto", "ipv6_method": "ignore", "never_default": False},
            handle="abcd",
        )

        assert backend.commands_for(action)[0][5:] == [
            "ipv4.method", "auto", "ipv4.never-default", "no", "ipv6.method", "ignore",
        ]

    def test_autoconnect_settings(self, backend):
        action = Action(
            ActionKind.SET_AUTOCONNECT, "usb0",
            {"autoconnect": True, "autoconnect_priority": 100},
            handle="abcd",
        )

        assert backend.commands_for(action)[0][5:] == [
            "connection.autoconnect", "yes", "connection.autoconnect-priority", "100",
        ]

    def test_set_managed(self, backend):
        action = Action(ActionKind.SET_MANAGED, "usb0", {"interface": "usb0", "managed": True})

        assert backend.commands_for(action) == [["nmcli", "device", "set", "usb0", "managed", "yes"]]

    def test_execute_runs_privileged(self, runner, backend):
        backend.execute(Action(ActionKind.SET_METRIC, "usb0", {"metric": 100}, handle="abcd"))

        assert runner.privileged_calls() == [
            ["nmcli", "connection", "modify", "uuid", "abcd", "ipv4.route-metric", "100"]
        ]

    def test_execute_failure_raises(self, runner, backend):
        argv = ("nmcli", "connection", "modify", "uuid", "abcd", "ipv4.route-metric", "100")
        runner.responses[argv] = CommandResult(
            success=False, error="Error: unknown connection 'abcd'.", returncode=10,
            command=" ".join(argv),
        )

        with pytest.raises(ActionFailed, match="unknown connection"):
            backend.execute(Action(ActionKind.SET_METRIC, "usb0", {"metric": 100}, handle="abcd"))

    def test_restart_ignores_down_failure(self, runner, backend):
        """down/flush may fail on an inactive connection; up must succeed."""
        runner.responses[("nmcli", "connection", "down", "uuid", "abcd")] = CommandResult(
            success=False, error="not an active connection", returncode=10
        )
        action = Action(ActionKind.RESTART_ADAPTER, "usb0", {"interface": "usb0"}, handle="abcd")

        backend.execute(action)

        assert runner.privileged_calls() == [
            ["nmcli", "connection", "down", "uuid", "abcd"],
            ["ip", "addr", "flush", "dev", "usb0"],
            ["nmcli", "connection", "up", "uuid", "abcd"],
        ]

    def test_restart_up_failure_raises(self, runner, backend):
        runner.responses[("nmcli", "connection", "up", "uuid", "abcd")] = CommandResult(
            success=False, error="no device found", returncode=10
        )

        with pytest.raises(ActionFailed):
            backend.execute(Action(ActionKind.RESTART_ADAPTER, "usb0", handle="abcd"))

    def test_sharing_unsupported(self, backend):
        action = Action(ActionKind.ENABLE_SHARING, "Wi-Fi", {"public": "Wi-Fi", "private": "usb0"})

        with pytest.raises(ActionFailed, match="not supported"):
            backend.commands_for(action)


class StoppedNetworkManager:
    """Pi whose NetworkManager is down until systemctl starts it."""

    def __init__(self, start_succeeds: bool = True):
        self.running = False
        self.start_succeeds = start_succeeds

    def __call__(self, argv):
        if argv == ["systemctl", "start", "NetworkManager"]:
            if not self.start_succeeds:
                return CommandResult(success=False, error="Job for NetworkManager.service failed.",
                                     command=" ".join(argv), returncode=1)
            self.running = True
            return ""
        if argv == ["systemctl", "is-active", "NetworkManager"]:
            if self.running:
                return "active"
            return CommandResult(success=False, output="inactive", returncode=3)
        if argv[0] == "nmcli" and not self.running:
            return CommandResult(success=False, error="Error: NetworkManager is not running.",
                                 command=" ".join(argv), returncode=8)
        return PI_RESPONSES.get(tuple(argv), "")


PI_METRIC_ONLY = {
    "host": {"type": "networkmanager"},
    "services": ["NetworkManager"],
    "priority": {"preconfigured": 600},
}


class TestStoppedNetworkManager:
    """Reconciling a Pi while NetworkManager is stopped."""

    def test_started_before_inventory_read(self):
        """nmcli only works once the service runs, so the start comes first."""
        host = StoppedNetworkManager()
        runner = ScriptedRunner(handler=host)

        result = Reconciler(NetworkManagerBackend(runner, settle_seconds=0)).reconcile(PI_METRIC_ONLY)

        assert result.success
        assert host.running
        argvs = [argv for argv, _ in runner.calls]
        start = argvs.index(["systemctl", "start", "NetworkManager"])
        assert list(DEVICE_STATUS) not in argvs[:start]
        assert runner.privileged_calls()[0] == ["systemctl", "start", "NetworkManager"]
        kinds = [o.action.kind for o in result.outcomes if o.status == OutcomeStatus.APPLIED]
        assert kinds[:2] == [ActionKind.START_SERVICE, ActionKind.SET_METRIC]
        assert result.changes_made[0].startswith("start_service NetworkManager")

    def test_start_failure_raises_service_unavailable(self):
        host = StoppedNetworkManager(start_succeeds=False)
        runner = ScriptedRunner(handler=host)

        with pytest.raises(ServiceUnavailable, match="NetworkManager"):
            Reconciler(NetworkManagerBackend(runner, settle_seconds=0)).reconcile(PI_METRIC_ONLY)

        assert runner.privileged_calls() == [["systemctl", "start", "NetworkManager"]]
        assert list(DEVICE_STATUS) not in [argv for argv, _ in runner.calls]

    def test_dry_run_does_not_start(self):
        """A preview never starts services; the stopped service surfaces as an inventory error."""
        host = StoppedNetworkManager()
        runner = ScriptedRunner(handler=host)

        with pytest.raises(InventoryError, match="not running"):
            Reconciler(NetworkManagerBackend(runner, settle_seconds=0)).reconcile(
                PI_METRIC_ONLY, dry_run=True
            )

        assert runner.privileged_calls() == []
