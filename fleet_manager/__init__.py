"""Provisioning and node bootstrap for k3s fleets on Fly.io machines."""

__version__ = "0.1.0"
