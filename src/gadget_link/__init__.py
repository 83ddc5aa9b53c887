"""gadgetlink - idempotent network setup for a USB gadget link.

Shares a Windows PC's internet connection to a Raspberry Pi over its USB
Ethernet gadget, and makes the Pi prefer that link over Wi-Fi.
"""
from .reconcile import Reconciler

__version__ = "0.1.0"

__all__ = ["Reconciler", "__version__"]
