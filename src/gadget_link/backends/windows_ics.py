"""Windows Internet Connection Sharing backend.

All commands are PowerShell scripts run in a subprocess and require
Administrator privileges. ICS is driven through the ``HNetCfg.HNetShare``
COM object: sharing type 0 is the public (upstream) side, 1 the private
side that receives 192.168.137.1 and hands out DHCP leases.
"""
import json
import logging

from ..reconcile.errors import ActionFailed, InventoryError
from ..reconcile.schema import (
    Action,
    ActionKind,
    AdapterState,
    IPMethod,
    LinkStatus,
    RouteEntry,
    ServiceState,
    SharingRole,
)
from ..utils.connection import CommandResult
from ..utils.logging_config import timed
from .base import HostBackend

logger = logging.getLogger(__name__)

ICS_SERVICE = "SharedAccess"

ICS_PUBLIC = 0
ICS_PRIVATE = 1

# Shared prelude: resolve an INetSharingConfiguration by connection name
_SHARING_PRELUDE = (
    "$ErrorActionPreference = 'Stop'; "
    "$share = New-Object -ComObject HNetCfg.HNetShare; "
    "function Get-SharingConfig($name) { "
    "foreach ($c in $share.EnumEveryConnection) { "
    "if ($share.NetConnectionProps.Invoke($c).Name -eq $name) { "
    "return $share.INetSharingConfigurationForINetConnection.Invoke($c) } }; "
    "throw \"Adapter not found: $name\" }; "
)

_LIST_ADAPTERS = (
    "$ErrorActionPreference = 'Stop'; "
    "$share = New-Object -ComObject HNetCfg.HNetShare; "
    "$ics = @{}; "
    "foreach ($c in $share.EnumEveryConnection) { "
    "$p = $share.NetConnectionProps.Invoke($c); "
    "$cfg = $share.INetSharingConfigurationForINetConnection.Invoke($c); "
    "$ics[$p.Name] = $(if ($cfg.SharingEnabled) { [int]$cfg.SharingConnectionType } else { -1 }) }; "
    "@(Get-NetAdapter | ForEach-Object { "
    "$ip = Get-NetIPAddress -InterfaceIndex $_.ifIndex -AddressFamily IPv4 "
    "-ErrorAction SilentlyContinue | Select-Object -First 1; "
    "$if = Get-NetIPInterface -InterfaceIndex $_.ifIndex -AddressFamily IPv4 "
    "-ErrorAction SilentlyContinue | Select-Object -First 1; "
    "[pscustomobject]@{ "
    "Name = $_.Name; Status = [string]$_.Status; "
    "IPAddress = $ip.IPAddress; PrefixLength = $ip.PrefixLength; "
    "InterfaceMetric = $if.InterfaceMetric; Dhcp = [string]$if.Dhcp; "
    "Sharing = $(if ($ics.ContainsKey($_.Name)) { $ics[$_.Name] } else { -1 }) } }) "
    "| ConvertTo-Json -Depth 3"
)

_LIST_ROUTES = (
    "@(Get-NetRoute -AddressFamily IPv4 | Select-Object DestinationPrefix, NextHop, "
    "InterfaceAlias, RouteMetric) | ConvertTo-Json -Depth 3"
)

_ROLES = {ICS_PUBLIC: SharingRole.PUBLIC, ICS_PRIVATE: SharingRole.PRIVATE}


def ps_quote(value: str) -> str:
    """Quote a string as a PowerShell single-quoted literal."""
    return "'" + str(value).replace("'", "''") + "'"


def powershell(script: str) -> list[str]:
    return ["powershell", "-NoProfile", "-NonInteractive", "-Command", script]


def _link(status: str) -> LinkStatus:
    if status == "Up":
        return LinkStatus.UP
    if status in ("Disconnected", "Disabled", "Not Present"):
        return LinkStatus.DOWN
    return LinkStatus.UNKNOWN


class WindowsICSBackend(HostBackend):
    """Host backend for the Windows side (ICS, adapter metrics)."""

    type_name = "windows-ics"

    # === Queries ===

    @timed("inventory_read")
    def list_adapters(self) -> list[AdapterState]:
        adapters = []
        for nic in self._query_json(_LIST_ADAPTERS):
            name = nic.get("Name")
            if not name:
                raise InventoryError(f"Adapter entry without a name: {nic}")

            dhcp = nic.get("Dhcp") or ""
            adapters.append(AdapterState(
                name=name,
                interface=name,
                link=_link(nic.get("Status") or ""),
                ipv4_address=nic.get("IPAddress") or None,
                prefix_length=nic.get("PrefixLength"),
                route_metric=nic.get("InterfaceMetric"),
                sharing=_ROLES.get(nic.get("Sharing", -1), SharingRole.NONE),
                ipv4_method={"Enabled": IPMethod.AUTO, "Disabled": IPMethod.MANUAL}.get(dhcp),
                active=nic.get("Status") == "Up",
            ))
        return adapters

    def get_service(self, name: str) -> ServiceState:
        script = (
            f"Get-Service -Name {ps_quote(name)} | "
            "Select-Object Name, @{n='Status';e={[string]$_.Status}} | ConvertTo-Json"
        )
        result = self.runner.run(powershell(script))
        if result.not_found:
            raise InventoryError(f"PowerShell is not available on {self.host}")
        if not result.success:
            return ServiceState(name=name, running=False, detail=result.error or "not installed")
        try:
            data = json.loads(result.output)
        except json.JSONDecodeError as e:
            raise InventoryError(f"Malformed service status for {name}: {e}") from e
        status = data.get("Status", "Unknown")
        return ServiceState(name=name, running=status == "Running", detail=status)

    def list_routes(self) -> list[RouteEntry]:
        interface_metrics = {a.name: a.route_metric or 0 for a in self.list_adapters()}
        routes = []
        for route in self._query_json(_LIST_ROUTES):
            alias = route.get("InterfaceAlias")
            if not alias:
                continue
            gateway = route.get("NextHop")
            # Windows picks routes by route metric + interface metric
            routes.append(RouteEntry(
                destination=route.get("DestinationPrefix", ""),
                adapter=alias,
                metric=int(route.get("RouteMetric") or 0) + interface_metrics.get(alias, 0),
                gateway=None if gateway in (None, "0.0.0.0") else gateway,
            ))
        return routes

    # === Actions ===

    def commands_for(self, action: Action) -> list[list[str]]:
        params = action.params
        kind = action.kind
        name = ps_quote(action.adapter)

        if kind == ActionKind.START_SERVICE:
            return [powershell(f"Start-Service -Name {name}")]

        if kind == ActionKind.DISABLE_SHARING:
            return [powershell(
                _SHARING_PRELUDE
                + f"$cfg = Get-SharingConfig {name}; "
                "if ($cfg.SharingEnabled) { $cfg.DisableSharing() }"
            )]

        if kind == ActionKind.ENABLE_SHARING:
            public = ps_quote(params["public"])
            private = ps_quote(params["private"])
            return [powershell(
                _SHARING_PRELUDE
                + f"$pub = Get-SharingConfig {public}; "
                f"$priv = Get-SharingConfig {private}; "
                f"if (-not ($pub.SharingEnabled -and $pub.SharingConnectionType -eq {ICS_PUBLIC})) {{ "
                f"if ($pub.SharingEnabled) {{ $pub.DisableSharing() }}; $pub.EnableSharing({ICS_PUBLIC}) }}; "
                f"if (-not ($priv.SharingEnabled -and $priv.SharingConnectionType -eq {ICS_PRIVATE})) {{ "
                f"if ($priv.SharingEnabled) {{ $priv.DisableSharing() }}; $priv.EnableSharing({ICS_PRIVATE}) }}"
            )]

        if kind == ActionKind.SET_METRIC:
            return [powershell(
                f"Set-NetIPInterface -InterfaceAlias {name} -AddressFamily IPv4 "
                f"-InterfaceMetric {int(params['metric'])}"
            )]

        if kind == ActionKind.SET_IP_METHOD:
            method = params.get("ipv4_method")
            if method == IPMethod.AUTO.value:
                dhcp = "Enabled"
            elif method == IPMethod.MANUAL.value:
                dhcp = "Disabled"
            else:
                raise ActionFailed(kind, f"ipv4 method '{method}' is not supported on Windows", action.adapter)
            return [powershell(
                f"Set-NetIPInterface -InterfaceAlias {name} -AddressFamily IPv4 -Dhcp {dhcp}"
            )]

        if kind == ActionKind.RESTART_ADAPTER:
            return [
                powershell(f"Disable-NetAdapter -Name {name} -Confirm:$false"),
                powershell(f"Enable-NetAdapter -Name {name} -Confirm:$false"),
            ]

        raise self.unsupported(action)

    def execute(self, action: Action) -> str:
        if action.kind != ActionKind.RESTART_ADAPTER:
            return super().execute(action)

        disable, enable = self.commands_for(action)
        result = self.run_privileged(disable)
        if not result.success:
            raise ActionFailed(action.kind, self._failure_detail(result), action.adapter)
        self.settle()
        result = self.run_privileged(enable)
        if not result.success:
            raise ActionFailed(action.kind, self._failure_detail(result), action.adapter)
        return result.output

    # === Helpers ===

    def _query_json(self, script: str) -> list[dict]:
        result: CommandResult = self.runner.run(powershell(script))
        if result.not_found:
            raise InventoryError(f"PowerShell is not available on {self.host}")
        if not result.success:
            raise InventoryError(f"PowerShell query failed: {result.error or result.output}")
        if not result.output.strip():
            return []
        try:
            data = json.loads(result.output)
        except json.JSONDecodeError as e:
            raise InventoryError(f"Malformed PowerShell JSON: {e}") from e

        # A single object is not wrapped in a list by ConvertTo-Json
        if isinstance(data, dict):
            data = [data]
        if not isinstance(data, list):
            raise InventoryError("Unexpected PowerShell output")
        return data
