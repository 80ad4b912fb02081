"""VMess, VLESS and WebSocket framing, forwarder groups, rule routing and a DHCP pool."""

__version__ = "0.1.0"