"""USB gadget boot configuration for the Raspberry Pi.

The Pi only shows up as an Ethernet adapter on the PC when the dwc2 overlay
is loaded and the g_ether module is requested on the kernel command line.
Both edits are idempotent; changing either one requires a reboot.
"""
import logging
import re
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

CONFIG_TXT = "/boot/firmware/config.txt"
CMDLINE_TXT = "/boot/firmware/cmdline.txt"

DWC2_OVERLAY = "dtoverlay=dwc2"
MODULES_LOAD = "modules-load=dwc2,g_ether"

# Matches the overlay on its own line, with parameters, or with a trailing comment
_OVERLAY_RE = re.compile(r"^\s*dtoverlay=dwc2(,|\s*(#|$))", re.MULTILINE)


@dataclass
class GadgetConfigResult:
    """What ensure_gadget_boot_config changed."""
    changed: list[str] = field(default_factory=list)
    backups: list[str] = field(default_factory=list)

    @property
    def reboot_required(self) -> bool:
        return bool(self.changed)


def has_dwc2_overlay(text: str) -> bool:
    return bool(_OVERLAY_RE.search(text))


def has_modules_load(text: str) -> bool:
    return MODULES_LOAD in text


def ensure_gadget_boot_config(
    config_txt: str = CONFIG_TXT,
    cmdline_txt: str = CMDLINE_TXT,
) -> GadgetConfigResult:
    """
    Enable the USB Ethernet gadget in the Pi boot files.

    Args:
        config_txt: Path to the firmware config.txt
        cmdline_txt: Path to the single-line kernel cmdline.txt

    Returns:
        GadgetConfigResult listing changed files and backups

    Raises:
        FileNotFoundError: If either boot file is missing
    """
    result = GadgetConfigResult()

    config_path = Path(config_txt)
    config_text = config_path.read_text()
    if not has_dwc2_overlay(config_text):
        with config_path.open("a") as f:
            if config_text and not config_text.endswith("\n"):
                f.write("\n")
            f.write(f"{DWC2_OVERLAY}\n")
        logger.info(f"Added {DWC2_OVERLAY} to {config_path}")
        result.changed.append(str(config_path))

    cmdline_path = Path(cmdline_txt)
    cmdline_text = cmdline_path.read_text()
    if not has_modules_load(cmdline_text):
        backup = cmdline_path.with_name(f"{cmdline_path.name}.bak.{int(time.time())}")
        shutil.copy2(cmdline_path, backup)
        result.backups.append(str(backup))

        # cmdline.txt must stay one line; append to the first
        lines = cmdline_text.split("\n")
        lines[0] = f"{lines[0].rstrip()} {MODULES_LOAD}"
        cmdline_path.write_text("\n".join(lines))
        logger.info(f"Added {MODULES_LOAD} to {cmdline_path} (backup {backup})")
        result.changed.append(str(cmdline_path))

    if result.reboot_required:
        logger.warning("USB gadget boot configuration changed; reboot required")
    return result
