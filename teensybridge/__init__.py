"""Bridge Teensy cockpit controls to simulator variables and Raspberry Pi buttons."""

__version__ = "1.2.1"

__all__ = ["fs2020", "gpio", "io", "jetbridge", "mapping", "pi", "teensy", "usb"]