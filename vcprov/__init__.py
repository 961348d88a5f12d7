"""Provision Chef onto vSphere guests through the guest operations channel."""

__version__ = '0.1.0'
