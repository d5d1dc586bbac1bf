"""Core framework components."""

from .value_objects import ClusterId, InstancePorts, PortBlock

__all__ = ["ClusterId", "InstancePorts", "PortBlock"]
