"""NetworkManager backend for the Raspberry Pi side.

Drives ``nmcli`` in terse mode for connection profiles and ``ip -j`` for
addresses and routes. Works locally or over SSH depending on the runner.

Each connection profile becomes one AdapterState (uuid set). Devices that
have no profile at all (typically usb0 before NetworkManager manages it)
are reported as bare entries so the planner can see their managed flag.
"""
import json
import logging
from typing import Optional

from ..reconcile.errors import ActionFailed, InventoryError
from ..reconcile.schema import (
    Action,
    ActionKind,
    AdapterState,
    IPMethod,
    LinkStatus,
    RouteEntry,
    ServiceState,
)
from ..utils.connection import CommandResult
from ..utils.logging_config import timed
from .base import HostBackend

logger = logging.getLogger(__name__)

PROFILE_FIELDS = (
    "connection.interface-name",
    "connection.autoconnect",
    "connection.autoconnect-priority",
    "ipv4.method",
    "ipv4.route-metric",
    "ipv4.never-default",
    "ipv6.method",
)

# nmcli connection TYPE -> short kind
CONNECTION_KINDS = {
    "802-3-ethernet": "ethernet",
    "ethernet": "ethernet",
    "802-11-wireless": "wifi",
    "wifi": "wifi",
    "loopback": "loopback",
    "bridge": "bridge",
}

SKIPPED_DEVICE_TYPES = {"loopback", "bridge", "tun", "wifi-p2p"}


def split_terse(line: str) -> list[str]:
    """Split one line of ``nmcli -t`` output.

    Terse mode separates fields with ':' and escapes literal ':' and '\\'
    inside values with a backslash.
    """
    fields = []
    current = []
    escaped = False
    for char in line:
        if escaped:
            current.append(char)
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == ":":
            fields.append("".join(current))
            current = []
        else:
            current.append(char)
    fields.append("".join(current))
    return fields


def _yes_no(value: Optional[bool]) -> str:
    return "yes" if value else "no"


def _parse_yes_no(value: str) -> Optional[bool]:
    if value == "yes":
        return True
    if value == "no":
        return False
    return None


def _parse_int(value: str) -> Optional[int]:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    # NetworkManager reports -1 for "use the default"
    return None if number < 0 else number


def _parse_method(value: str) -> Optional[IPMethod]:
    try:
        return IPMethod(value)
    except ValueError:
        return None


def _device_link(state: str) -> LinkStatus:
    if state == "connected" or state.startswith("connecting"):
        return LinkStatus.UP
    if state == "unmanaged":
        return LinkStatus.UNKNOWN
    return LinkStatus.DOWN


class NetworkManagerBackend(HostBackend):
    """Host backend driving NetworkManager via nmcli."""

    type_name = "networkmanager"

    # === Queries ===

    @timed("inventory_read")
    def list_adapters(self) -> list[AdapterState]:
        devices = self._device_status()
        addresses = self._addresses()
        profiles = self._profiles()

        adapters = []
        bound_devices = set()
        for profile in profiles:
            settings = self._profile_settings(profile["uuid"])
            interface = profile["device"] or settings.get("connection.interface-name") or None
            if interface:
                bound_devices.add(interface)
            device = devices.get(interface or "", {})
            address, prefix = addresses.get(interface, (None, None)) if profile["active"] else (None, None)

            adapters.append(AdapterState(
                name=profile["name"],
                uuid=profile["uuid"],
                kind=profile["kind"],
                interface=interface,
                active=profile["active"],
                link=_device_link(device.get("state", "")) if device else LinkStatus.DOWN,
                managed=device.get("state") != "unmanaged" if device else True,
                ipv4_address=address,
                prefix_length=prefix,
                route_metric=_parse_int(settings.get("ipv4.route-metric", "")),
                ipv4_method=_parse_method(settings.get("ipv4.method", "")),
                ipv6_method=_parse_method(settings.get("ipv6.method", "")),
                never_default=_parse_yes_no(settings.get("ipv4.never-default", "")),
                autoconnect=_parse_yes_no(settings.get("connection.autoconnect", "")),
                autoconnect_priority=_parse_int(settings.get("connection.autoconnect-priority", "")),
            ))

        for name, device in devices.items():
            if name in bound_devices or device["type"] in SKIPPED_DEVICE_TYPES:
                continue
            address, prefix = addresses.get(name, (None, None))
            adapters.append(AdapterState(
                name=name,
                interface=name,
                kind=CONNECTION_KINDS.get(device["type"], device["type"]),
                link=_device_link(device["state"]),
                managed=device["state"] != "unmanaged",
                ipv4_address=address,
                prefix_length=prefix,
            ))

        return adapters

    def get_service(self, name: str) -> ServiceState:
        result = self.runner.run(["systemctl", "is-active", name])
        if result.not_found:
            raise InventoryError(f"systemctl is not available on {self.host}")
        state = result.output.strip() or "unknown"
        return ServiceState(name=name, running=state == "active", detail=state)

    def list_routes(self) -> list[RouteEntry]:
        data = self._query_json(["ip", "-j", "-4", "route", "show"])
        routes = []
        for route in data:
            dst = route.get("dst", "")
            if not dst or not route.get("dev"):
                continue
            routes.append(RouteEntry(
                destination="0.0.0.0/0" if dst == "default" else dst,
                adapter=route["dev"],
                metric=int(route.get("metric", 0)),
                gateway=route.get("gateway"),
            ))
        return routes

    # === Actions ===

    def commands_for(self, action: Action) -> list[list[str]]:
        params = action.params
        kind = action.kind

        if kind == ActionKind.START_SERVICE:
            return [["systemctl", "start", action.adapter]]

        if kind == ActionKind.SET_MANAGED:
            return [["nmcli", "device", "set", params["interface"], "managed",
                     _yes_no(params.get("managed", True))]]

        if kind == ActionKind.CREATE_CONNECTION:
            return [["nmcli", "connection", "add", "type", params["type"],
                     "ifname", params["interface"], "con-name", action.adapter]]

        if kind == ActionKind.DELETE_CONNECTION:
            return [["nmcli", "connection", "delete", "uuid", action.handle or ""]]

        if kind == ActionKind.BIND_INTERFACE:
            return [self._modify(action, ["connection.interface-name", params["interface"]])]

        if kind == ActionKind.SET_IP_METHOD:
            settings = []
            if params.get("ipv4_method"):
                settings += ["ipv4.method", params["ipv4_method"]]
            if params.get("never_default") is not None:
                settings += ["ipv4.never-default", _yes_no(params["never_default"])]
            if params.get("ipv6_method"):
                settings += ["ipv6.method", params["ipv6_method"]]
            return [self._modify(action, settings)]

        if kind == ActionKind.SET_AUTOCONNECT:
            settings = []
            if params.get("autoconnect") is not None:
                settings += ["connection.autoconnect", _yes_no(params["autoconnect"])]
            if params.get("autoconnect_priority") is not None:
                settings += ["connection.autoconnect-priority", str(params["autoconnect_priority"])]
            return [self._modify(action, settings)]

        if kind == ActionKind.SET_METRIC:
            return [self._modify(action, ["ipv4.route-metric", str(params["metric"])])]

        if kind == ActionKind.RESTART_ADAPTER:
            commands = [["nmcli", "connection", "down", *self._ref(action)]]
            if params.get("interface"):
                commands.append(["ip", "addr", "flush", "dev", params["interface"]])
            commands.append(["nmcli", "connection", "up", *self._ref(action)])
            return commands

        raise self.unsupported(action)

    def execute(self, action: Action) -> str:
        if action.kind != ActionKind.RESTART_ADAPTER:
            return super().execute(action)

        # down/flush fail harmlessly when the connection is already inactive
        outputs = []
        commands = self.commands_for(action)
        for argv in commands[:-1]:
            result = self.run_privileged(argv)
            if not result.success:
                logger.debug(f"Ignoring failure of '{result.command}': {result.error}")
        self.settle()
        result = self.run_privileged(commands[-1])
        if not result.success:
            raise ActionFailed(action.kind, self._failure_detail(result), action.adapter)
        if result.output:
            outputs.append(result.output)
        return "\n".join(outputs)

    # === Helpers ===

    def _ref(self, action: Action) -> list[str]:
        """nmcli connection reference, preferring the UUID over the name."""
        if action.handle:
            return ["uuid", action.handle]
        return ["id", action.adapter]

    def _modify(self, action: Action, settings: list[str]) -> list[str]:
        return ["nmcli", "connection", "modify", *self._ref(action), *settings]

    def _run_query(self, argv: list[str]) -> CommandResult:
        result = self.runner.run(argv)
        if result.not_found:
            raise InventoryError(f"'{argv[0]}' is not available on {self.host}")
        if not result.success:
            raise InventoryError(f"'{result.command}' failed: {result.error or result.output}")
        return result

    def _query_json(self, argv: list[str]) -> list[dict]:
        result = self._run_query(argv)
        if not result.output:
            return []
        try:
            data = json.loads(result.output)
        except json.JSONDecodeError as e:
            raise InventoryError(f"Malformed JSON from '{result.command}': {e}") from e
        if not isinstance(data, list):
            raise InventoryError(f"Unexpected output from '{result.command}'")
        return data

    def _profiles(self) -> list[dict]:
        result = self._run_query(
            ["nmcli", "-t", "-f", "NAME,UUID,TYPE,DEVICE,ACTIVE", "connection", "show"]
        )
        profiles = []
        for line in result.output.splitlines():
            if not line.strip():
                continue
            fields = split_terse(line)
            if len(fields) != 5:
                raise InventoryError(f"Malformed nmcli connection line: {line!r}")
            name, uuid, conn_type, device, active = fields
            kind = CONNECTION_KINDS.get(conn_type, conn_type)
            if kind == "loopback":
                continue
            profiles.append({
                "name": name,
                "uuid": uuid,
                "kind": kind,
                "device": device if device and device != "--" else None,
                "active": active == "yes",
            })
        return profiles

    def _profile_settings(self, uuid: str) -> dict[str, str]:
        result = self._run_query(
            ["nmcli", "-t", "-f", ",".join(PROFILE_FIELDS), "connection", "show", "uuid", uuid]
        )
        settings = {}
        for line in result.output.splitlines():
            key, sep, value = line.partition(":")
            if not sep:
                raise InventoryError(f"Malformed nmcli setting line: {line!r}")
            settings[key] = value.replace("\\:", ":")
        return settings

    def _device_status(self) -> dict[str, dict]:
        result = self._run_query(
            ["nmcli", "-t", "-f", "DEVICE,TYPE,STATE", "device", "status"]
        )
        devices = {}
        for line in result.output.splitlines():
            if not line.strip():
                continue
            fields = split_terse(line)
            if len(fields) != 3:
                raise InventoryError(f"Malformed nmcli device line: {line!r}")
            name, dev_type, state = fields
            devices[name] = {"type": dev_type, "state": state}
        return devices

    def _addresses(self) -> dict[str, tuple[Optional[str], Optional[int]]]:
        addresses = {}
        for entry in self._query_json(["ip", "-j", "-4", "addr", "show"]):
            for info in entry.get("addr_info", []):
                if info.get("family") == "inet":
                    addresses[entry.get("ifname")] = (info.get("local"), info.get("prefixlen"))
                    break
        return addresses
