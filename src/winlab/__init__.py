"""Windows host deployment and Hyper-V VM provisioning from hardware templates."""

__version__ = "0.1.0"
