"""Built-in topologies for the two sides of the USB gadget link."""
import copy

from ..reconcile.schema import ICS_SUBNET

# Pi Zero 2 W: prefer the USB gadget (DHCP from Windows ICS), Wi-Fi as fallback
PI_USB_PRIORITY = {
    "host": {"type": "networkmanager", "sudo": True},
    "services": ["NetworkManager"],
    "duplicates": "warn",
    "priority": {
        "usb0": 100,
        "preconfigured": 600,
    },
    "adapters": {
        "usb0": {
            "interface": "usb0",
            "create": "ethernet",
            "ipv4_method": "auto",
            "ipv6_method": "ignore",
            "never_default": False,
            "autoconnect": True,
            "autoconnect_priority": 100,
            "expect_subnet": ICS_SUBNET,
        },
        "preconfigured": {
            "ipv6_method": "auto",
            "never_default": False,
            "autoconnect": True,
            "optional": True,
        },
    },
    "gadget": {
        "enabled": True,
        "config_txt": "/boot/firmware/config.txt",
        "cmdline_txt": "/boot/firmware/cmdline.txt",
    },
}

# Windows PC: share Wi-Fi to the RNDIS adapter the Pi shows up as
WINDOWS_ICS = {
    "host": {"type": "windows-ics"},
    "services": ["SharedAccess"],
    "sharing": {
        "public": "Wi-Fi",
        "private": "Ethernet 2",
        "expected_subnet": ICS_SUBNET,
    },
}

PRESETS = {
    "pi-usb-priority": PI_USB_PRIORITY,
    "windows-ics": WINDOWS_ICS,
}


def get_preset(name: str) -> dict:
    """Return a private copy of a built-in topology."""
    if name not in PRESETS:
        raise KeyError(f"Unknown preset: {name}. Available: {', '.join(PRESETS)}")
    return copy.deepcopy(PRESETS[name])
