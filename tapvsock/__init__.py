"""User-space networking for virtual machines: port forwarding, UDP proxying, DNS and frame transport."""

__version__ = "0.1.0"