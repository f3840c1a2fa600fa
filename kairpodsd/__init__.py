"""AirPods management: AAP packets, device state, L2CAP channel and battery drain estimation."""

__version__ = "0.2.1"