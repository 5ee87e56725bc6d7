"""
Custom exceptions for wormwatch.

Provides specific exception types for better error handling and debugging.
"""


class WormwatchError(Exception):
    """Base exception for all wormwatch errors."""
    pass


# ---------------- Configuration Errors ----------------

class ConfigError(WormwatchError):
    """Invalid configuration value or file."""
    pass


# ---------------- Protocol Errors ----------------

class ProtocolError(WormwatchError):
    """Base class for protocol-related errors."""
    pass


class PacketParseError(ProtocolError):
    """Failed to parse packet structure."""
    pass


# ---------------- Routing Errors ----------------

class RoutingError(WormwatchError):
    """Base class for routing errors."""
    pass


class NoRouteError(RoutingError):
    """No route to the destination could be found."""

    def __init__(self, destination: str, reason: str = "no route"):
        self.destination = destination
        self.reason = reason
        super().__init__(f"{reason} to {destination}")


# ---------------- Queue Errors ----------------

class QueueError(WormwatchError):
    """Base class for pending-output queue errors."""
    pass


class QueueFullError(QueueError):
    """Pending-output queue cannot hold another packet."""
    pass


# ---------------- Transport Errors ----------------

class TransportError(WormwatchError):
    """Base class for transport errors."""
    pass


class InterfaceError(TransportError):
    """Interface not found or not usable."""
    pass


# ---------------- Validation Errors ----------------

class ValidationError(WormwatchError):
    """Input validation failed."""
    pass


class InvalidAddressError(ValidationError):
    """Address is not a valid dotted-quad IPv4 address."""

    def __init__(self, value):
        self.value = value
        super().__init__(f"Invalid IPv4 address: {value!r}")
